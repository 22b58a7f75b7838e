"""Rollout state machine: deploy a revision, verify health, commit or roll back."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Set

from ecs_manage.config.models import DeploymentPolicy, RolloutSettings
from ecs_manage.orchestrator.health import HealthSample, SampleVerdict, evaluate_sample
from ecs_manage.platform.base import DeploymentLimits, PlatformClient
from ecs_manage.state.fetcher import StateSnapshotFetcher
from ecs_manage.state.models import ServiceId, ServiceState, TaskDefinitionRevision
from ecs_manage.utils.clock import Clock, Deadline, SystemClock
from ecs_manage.utils.errors import (
    EcsManageError,
    ErrorContext,
    HealthCheckFailedError,
    PlatformUnavailableError,
    RollbackFailedError,
    SpecInvalidError,
    StateError,
    TimeoutExceededError,
    error_handler,
)
from ecs_manage.utils.logging import get_logger
from ecs_manage.utils.retry import RetryStrategy

logger = get_logger(__name__)


class RolloutPhase(Enum):
    """Phases of a rollout session."""
    PENDING = "pending"
    DEPLOYING = "deploying"
    VERIFYING = "verifying"
    COMMITTED = "committed"
    ROLLING_BACK = "rolling_back"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RolloutPhase.SUCCEEDED, RolloutPhase.FAILED)


# Every legal edge of the state machine
TRANSITIONS: Dict[RolloutPhase, Set[RolloutPhase]] = {
    RolloutPhase.PENDING: {RolloutPhase.DEPLOYING, RolloutPhase.FAILED},
    RolloutPhase.DEPLOYING: {RolloutPhase.VERIFYING, RolloutPhase.ROLLING_BACK, RolloutPhase.FAILED},
    RolloutPhase.VERIFYING: {RolloutPhase.COMMITTED, RolloutPhase.ROLLING_BACK},
    RolloutPhase.COMMITTED: {RolloutPhase.SUCCEEDED},
    RolloutPhase.ROLLING_BACK: {RolloutPhase.FAILED},
    RolloutPhase.SUCCEEDED: set(),
    RolloutPhase.FAILED: set(),
}


class RollbackTrigger(Enum):
    """Why a rollout entered ROLLING_BACK."""
    HEALTH_CHECK_FAILED = "health_check_failed"
    ATTEMPTS_EXHAUSTED = "attempts_exhausted"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    UPDATE_FAILED = "update_failed"
    OBSERVATION_FAILED = "observation_failed"


ROLLBACK_REASONS = {
    RollbackTrigger.HEALTH_CHECK_FAILED: "health check failed, rolled back",
    RollbackTrigger.ATTEMPTS_EXHAUSTED: "health check attempts exhausted, rolled back",
    RollbackTrigger.TIMEOUT: "timed out, rolled back",
    RollbackTrigger.CANCELLED: "cancelled, rolled back",
    RollbackTrigger.UPDATE_FAILED: "deployment update failed, rolled back",
    RollbackTrigger.OBSERVATION_FAILED: "service could not be observed, rolled back",
}


@dataclass
class PhaseTransition:
    """One recorded edge of a session's history."""
    from_phase: RolloutPhase
    to_phase: RolloutPhase
    at: float
    reason: Optional[str] = None


@dataclass
class RolloutSession:
    """State of one rollout; lives for a single invocation only."""

    service_id: ServiceId
    target: Optional[TaskDefinitionRevision]
    previous_revision: Optional[str]
    desired_count: int
    previous_desired_count: int
    policy: DeploymentPolicy = field(default_factory=DeploymentPolicy)
    health_check_grace_period: float = 0.0
    start_time: float = 0.0
    phase: RolloutPhase = RolloutPhase.PENDING
    limits: Optional[DeploymentLimits] = None
    attempt_count: int = 0
    last_observed_state: Optional[ServiceState] = None
    last_sample: Optional[HealthSample] = None
    deployed_at: Optional[float] = None
    rollback_trigger: Optional[RollbackTrigger] = None
    escalated: bool = False
    reason: Optional[str] = None
    error: Optional[EcsManageError] = None
    transitions: List[PhaseTransition] = field(default_factory=list)
    known_crashes: Set[str] = field(default_factory=set)

    def transition(self, to_phase: RolloutPhase, at: float, reason: Optional[str] = None) -> None:
        """Move to ``to_phase``.

        Raises:
            StateError: If the edge is not part of the state machine
        """
        if to_phase not in TRANSITIONS[self.phase]:
            raise StateError(
                f"Illegal rollout transition {self.phase.value} -> {to_phase.value}",
                context=ErrorContext(service=str(self.service_id), operation='transition')
            )

        logger.info(
            f"Rollout {self.phase.value} -> {to_phase.value}"
            + (f": {reason}" if reason else "")
        )
        self.transitions.append(PhaseTransition(self.phase, to_phase, at, reason))
        self.phase = to_phase
        if reason:
            self.reason = reason

    @property
    def phases(self) -> List[RolloutPhase]:
        """Phases visited, in order."""
        if not self.transitions:
            return [self.phase]
        return [self.transitions[0].from_phase] + [t.to_phase for t in self.transitions]

    @property
    def succeeded(self) -> bool:
        return self.phase == RolloutPhase.SUCCEEDED

    @property
    def rolled_back(self) -> bool:
        """Target failed and the previous revision was restored."""
        return (
            self.phase == RolloutPhase.FAILED
            and self.rollback_trigger is not None
            and not self.escalated
        )


@dataclass
class VerificationResult:
    """Outcome of one verification loop."""
    passed: bool
    reason: str
    trigger: Optional[RollbackTrigger] = None
    error: Optional[EcsManageError] = None


class RolloutController:
    """Drives a service onto a target revision.

    Each non-terminal phase has exactly one handler; ``run`` dispatches on
    the current phase until the session is terminal.
    """

    def __init__(
        self,
        platform: PlatformClient,
        settings: Optional[RolloutSettings] = None,
        clock: Optional[Clock] = None,
        fetcher: Optional[StateSnapshotFetcher] = None,
        retry_strategy: Optional[RetryStrategy] = None
    ):
        """Initialize rollout controller.

        Args:
            platform: Platform client
            settings: Polling, health and retry settings
            clock: Time source for polling and backoff
            fetcher: Snapshot fetcher, built from the platform if omitted
            retry_strategy: Backoff for transient platform errors
        """
        self.platform = platform
        self.settings = settings or RolloutSettings()
        self.clock = clock or SystemClock()
        self.retry_strategy = retry_strategy or RetryStrategy(
            max_retries=self.settings.platform_retries,
            base_delay=self.settings.platform_retry_delay,
            max_delay=self.settings.platform_max_retry_delay,
            jitter=self.settings.jitter,
            clock=self.clock
        )
        self.fetcher = fetcher or StateSnapshotFetcher(platform, self.retry_strategy)
        self.poll_backoff = RetryStrategy(
            max_retries=self.settings.max_attempts,
            base_delay=self.settings.poll_interval,
            max_delay=self.settings.max_poll_interval,
            exponential_base=self.settings.backoff_multiplier,
            jitter=self.settings.jitter,
            clock=self.clock
        )
        self._handlers: Dict[RolloutPhase, Callable[[RolloutSession, Deadline], None]] = {
            RolloutPhase.PENDING: self._on_pending,
            RolloutPhase.DEPLOYING: self._on_deploying,
            RolloutPhase.VERIFYING: self._on_verifying,
            RolloutPhase.COMMITTED: self._on_committed,
            RolloutPhase.ROLLING_BACK: self._on_rolling_back,
        }

    def start(
        self,
        service_id: ServiceId,
        target: Optional[TaskDefinitionRevision],
        current_state: ServiceState,
        desired_count: Optional[int] = None,
        policy: Optional[DeploymentPolicy] = None,
        health_check_grace_period: float = 0.0
    ) -> RolloutSession:
        """Create a PENDING session from the service's current snapshot.

        Args:
            service_id: Service being rolled out
            target: Resolved target revision
            current_state: Snapshot taken before any change
            desired_count: Task count during the rollout, defaults to current
            policy: Surge/unavailable policy
            health_check_grace_period: Seconds after the update during which
                crashes do not count toward the crash streak

        Returns:
            New RolloutSession
        """
        count = current_state.desired_count if desired_count is None else desired_count
        return RolloutSession(
            service_id=service_id,
            target=target,
            previous_revision=current_state.active_revision,
            desired_count=count,
            previous_desired_count=current_state.desired_count,
            policy=policy or DeploymentPolicy(),
            health_check_grace_period=health_check_grace_period,
            start_time=self.clock.now(),
            last_observed_state=current_state,
            known_crashes={t.task_id for t in current_state.tasks if t.crashed or t.image_pull_failed}
        )

    def run(self, session: RolloutSession, deadline: Optional[Deadline] = None) -> RolloutSession:
        """Drive a session to SUCCEEDED or FAILED.

        Args:
            session: Session created by ``start``
            deadline: Invocation deadline; expiry forces a rollback

        Returns:
            The same session, now terminal
        """
        deadline = deadline or Deadline(self.clock, self.settings.timeout)

        while not session.phase.is_terminal:
            handler = self._handlers.get(session.phase)
            if handler is None:
                raise StateError(f"No handler for rollout phase {session.phase.value}")
            handler(session, deadline)

        return session

    def _on_pending(self, session: RolloutSession, deadline: Deadline) -> None:
        if session.target is None or session.desired_count < 0:
            self._fail(session, SpecInvalidError(
                'Rollout needs a resolved target revision and a desired count',
                context=self._context(session, 'pending')
            ))
            return

        limits = DeploymentLimits.from_policy(session.policy, session.desired_count)
        if not limits.can_progress:
            self._fail(session, SpecInvalidError(
                f"Deployment policy allows neither surge nor unavailable tasks "
                f"at desired count {session.desired_count}",
                context=self._context(session, 'pending'),
                suggestions=['Raise max_surge_percent or max_unavailable_percent']
            ))
            return

        session.limits = limits
        session.transition(
            RolloutPhase.DEPLOYING,
            self.clock.now(),
            f"deploying {session.target.key} (from {session.previous_revision})"
        )

    def _on_deploying(self, session: RolloutSession, deadline: Deadline) -> None:
        retry = self.retry_strategy.with_deadline(deadline)
        try:
            retry.execute_with_retry(
                self.platform.update_service,
                session.service_id,
                session.target.key,
                session.desired_count,
                session.limits
            )
        except PlatformUnavailableError as e:
            # The update may have landed; restore the previous revision
            session.rollback_trigger = RollbackTrigger.UPDATE_FAILED
            session.error = e
            session.transition(RolloutPhase.ROLLING_BACK, self.clock.now(), f"update failed: {e.message}")
            return
        except EcsManageError as e:
            self._fail(session, e, f"deployment rejected: {e.message}")
            return

        session.deployed_at = self.clock.now()
        session.transition(RolloutPhase.VERIFYING, session.deployed_at, 'update acknowledged')

    def _on_verifying(self, session: RolloutSession, deadline: Deadline) -> None:
        result = self._verify(session, session.target.key, session.desired_count, deadline)

        if result.passed:
            session.transition(RolloutPhase.COMMITTED, self.clock.now(), result.reason)
            return

        session.rollback_trigger = result.trigger
        session.error = result.error
        session.transition(RolloutPhase.ROLLING_BACK, self.clock.now(), result.reason)

    def _on_committed(self, session: RolloutSession, deadline: Deadline) -> None:
        session.transition(
            RolloutPhase.SUCCEEDED,
            self.clock.now(),
            f"{session.target.key} committed"
        )

    def _on_rolling_back(self, session: RolloutSession, deadline: Deadline) -> None:
        # Rollback gets its own budget; the invocation deadline may be spent
        rollback_deadline = deadline.child(self.settings.rollback_timeout)

        if session.previous_revision is None:
            self._escalate(session, 'no previous revision to roll back to')
            return

        limits = DeploymentLimits.from_policy(session.policy, session.previous_desired_count)
        retry = self.retry_strategy.with_deadline(rollback_deadline)

        logger.warning(f"Rolling back to {session.previous_revision}")
        try:
            retry.execute_with_retry(
                self.platform.update_service,
                session.service_id,
                session.previous_revision,
                session.previous_desired_count,
                limits
            )
        except EcsManageError as e:
            self._escalate(session, f"rollback update failed: {e.message}", e)
            return

        session.deployed_at = self.clock.now()
        result = self._verify(
            session,
            session.previous_revision,
            session.previous_desired_count,
            rollback_deadline
        )

        if not result.passed:
            self._escalate(session, f"rollback did not stabilize: {result.reason}", result.error)
            return

        session.transition(
            RolloutPhase.FAILED,
            self.clock.now(),
            ROLLBACK_REASONS[session.rollback_trigger]
        )

    def _verify(
        self,
        session: RolloutSession,
        target: str,
        desired_count: int,
        deadline: Deadline
    ) -> VerificationResult:
        """Poll until the target is healthy for a sustained window or fails.

        Healthy samples are counted at the base poll interval; while the
        service is still converging the interval backs off exponentially.
        A sample that is not healthy resets the sustained window.
        """
        settings = self.settings
        attempts = 0
        backoff_attempt = 0
        healthy_samples = 0
        healthy_since: Optional[float] = None
        crash_streak = 0

        while True:
            if deadline.expired():
                cancelled = deadline.cancelled()
                what = 'cancelled' if cancelled else 'timed out'
                return VerificationResult(
                    False,
                    f"{what} verifying {target}",
                    RollbackTrigger.CANCELLED if cancelled else RollbackTrigger.TIMEOUT,
                    TimeoutExceededError(
                        f"Invocation {what} while verifying {target}",
                        context=self._context(session, 'verify', target)
                    )
                )

            if attempts >= settings.max_attempts:
                return VerificationResult(
                    False,
                    f"{target} not healthy after {attempts} samples",
                    RollbackTrigger.ATTEMPTS_EXHAUSTED,
                    HealthCheckFailedError(
                        f"{target} did not become healthy within {attempts} samples",
                        context=self._context(session, 'verify', target)
                    )
                )

            attempts += 1
            session.attempt_count += 1
            try:
                sample = self._sample(session, target, desired_count, deadline)
            except EcsManageError as e:
                return VerificationResult(
                    False,
                    f"could not observe {session.service_id}: {e.message}",
                    RollbackTrigger.OBSERVATION_FAILED,
                    e
                )

            if sample is None:
                healthy_since, healthy_samples = None, 0
            elif sample.verdict == SampleVerdict.FATAL:
                return VerificationResult(
                    False,
                    sample.reason,
                    RollbackTrigger.HEALTH_CHECK_FAILED,
                    HealthCheckFailedError(sample.reason, context=self._context(session, 'verify', target))
                )
            elif sample.verdict == SampleVerdict.HEALTHY:
                now = self.clock.now()
                crash_streak = 0
                if healthy_since is None:
                    healthy_since = now
                healthy_samples += 1
                if (healthy_samples >= settings.min_healthy_samples
                        and now - healthy_since >= settings.sustain_window):
                    return VerificationResult(
                        True,
                        f"{target} healthy for {healthy_samples} samples over {now - healthy_since:.0f}s"
                    )
            else:
                if healthy_since is not None:
                    logger.info(f"Sustained-healthy window for {target} reset: {sample.reason}")
                healthy_since, healthy_samples = None, 0

                # A replacement task reporting UNKNOWN health does not break
                # the streak; only a sample without new crashes does.
                if sample.crashed:
                    if not self._in_grace_period(session):
                        crash_streak += 1
                    if crash_streak >= settings.crash_threshold:
                        reason = f"tasks crash-looping for {crash_streak} consecutive samples"
                        return VerificationResult(
                            False,
                            reason,
                            RollbackTrigger.HEALTH_CHECK_FAILED,
                            HealthCheckFailedError(
                                f"{target}: {reason}",
                                context=self._context(session, 'verify', target)
                            )
                        )
                else:
                    crash_streak = 0

            if healthy_since is not None:
                delay = settings.poll_interval
            else:
                delay = self.poll_backoff.get_delay(backoff_attempt)
                backoff_attempt += 1

            deadline.sleep(delay)

    def _sample(
        self,
        session: RolloutSession,
        target: str,
        desired_count: int,
        deadline: Deadline
    ) -> Optional[HealthSample]:
        """Fetch and evaluate one snapshot; None when the service could not be read."""
        try:
            state = self.fetcher.fetch(session.service_id, deadline=deadline)
        except PlatformUnavailableError as e:
            logger.warning(f"Could not sample {session.service_id}: {e.message}")
            return None

        sample = evaluate_sample(
            state,
            target,
            desired_count,
            self.settings.require_health_checks,
            session.known_crashes
        )
        session.last_observed_state = state
        session.last_sample = sample
        session.known_crashes.update(sample.crashed_task_ids)

        logger.info(f"Sample {session.attempt_count} of {target}: {sample.verdict.value} ({sample.reason})")
        return sample

    def _in_grace_period(self, session: RolloutSession) -> bool:
        if session.deployed_at is None or session.health_check_grace_period <= 0:
            return False
        return self.clock.now() - session.deployed_at < session.health_check_grace_period

    def _fail(
        self,
        session: RolloutSession,
        error: EcsManageError,
        reason: Optional[str] = None
    ) -> None:
        session.error = error
        error_handler.log_error(error)
        session.transition(RolloutPhase.FAILED, self.clock.now(), reason or error.message)

    def _escalate(
        self,
        session: RolloutSession,
        detail: str,
        cause: Optional[Exception] = None
    ) -> None:
        """Terminal failure with the service left in an unknown state."""
        session.escalated = True
        session.error = RollbackFailedError(
            f"Rollback of {session.service_id} failed: {detail}",
            context=self._context(session, 'rollback', session.previous_revision),
            cause=cause,
            suggestions=[
                'Inspect the service deployments in the ECS console',
                f"Restore {session.previous_revision or 'a known-good revision'} manually",
            ]
        )
        error_handler.log_error(session.error)
        session.transition(RolloutPhase.FAILED, self.clock.now(), f"rollback failed: {detail}")

    @staticmethod
    def _context(
        session: RolloutSession,
        operation: str,
        revision: Optional[str] = None
    ) -> ErrorContext:
        return ErrorContext(
            service=str(session.service_id),
            revision=revision or (session.target.key if session.target else None),
            operation=operation
        )
