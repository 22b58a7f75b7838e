"""Reconciliation driver: compares desired specs with observed state and acts."""

import threading
from collections import Counter
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from ecs_manage.config.models import RolloutSettings, ScalingPolicy, ServiceSpec
from ecs_manage.orchestrator.resolver import TaskDefinitionResolver
from ecs_manage.orchestrator.rollout import RolloutController, RolloutPhase, RolloutSession
from ecs_manage.orchestrator.scaling import ScalingController, ScalingResult, check_bounds
from ecs_manage.platform.base import PlatformClient
from ecs_manage.state.fetcher import StateSnapshotFetcher
from ecs_manage.state.models import ServiceId, ServiceState, TaskDefinitionRevision
from ecs_manage.utils.clock import Clock, Deadline, SystemClock
from ecs_manage.utils.errors import (
    EcsManageError,
    ErrorContext,
    RollbackFailedError,
    SpecInvalidError,
    error_handler,
)
from ecs_manage.utils.logging import LogContext, get_logger
from ecs_manage.utils.retry import RetryStrategy

logger = get_logger(__name__)


class OutcomeStatus(Enum):
    """Terminal status of one invocation."""
    SUCCESS = "success"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"
    ROLLBACK_FAILED = "rollback_failed"

    @property
    def exit_code(self) -> int:
        return _EXIT_CODES[self]


_EXIT_CODES = {
    OutcomeStatus.SUCCESS: 0,
    OutcomeStatus.FAILED: 1,
    OutcomeStatus.ROLLED_BACK: 2,
    OutcomeStatus.ROLLBACK_FAILED: 3,
}


@dataclass
class ReconciliationOutcome:
    """Everything an operator needs to know about one invocation."""

    service_id: str
    status: OutcomeStatus = OutcomeStatus.FAILED
    phase: Optional[RolloutPhase] = None
    revision: Optional[str] = None
    previous_revision: Optional[str] = None
    initial_count: Optional[int] = None
    desired_count: Optional[int] = None
    running_count: Optional[int] = None
    duration: float = 0.0  # seconds
    reason: str = ""
    error: Optional[EcsManageError] = None
    escalated: bool = False
    actions: List[str] = field(default_factory=list)

    def is_success(self) -> bool:
        """Check if the invocation succeeded."""
        return self.status == OutcomeStatus.SUCCESS

    @property
    def exit_code(self) -> int:
        return self.status.exit_code

    def to_dict(self) -> Dict[str, Any]:
        """Convert outcome to dictionary for JSON output."""
        return {
            'service': self.service_id,
            'status': self.status.value,
            'phase': self.phase.value if self.phase else None,
            'revision': self.revision,
            'previous_revision': self.previous_revision,
            'initial_count': self.initial_count,
            'desired_count': self.desired_count,
            'running_count': self.running_count,
            'duration': round(self.duration, 3),
            'reason': self.reason,
            'escalated': self.escalated,
            'actions': self.actions,
            'error': self.error.to_dict() if self.error else None,
        }


def overall_exit_code(outcomes: List[ReconciliationOutcome]) -> int:
    """Most severe exit code across outcomes, 0 when there are none."""
    return max((outcome.exit_code for outcome in outcomes), default=0)


# Type alias for per-service completion callback
OutcomeCallback = Callable[[ReconciliationOutcome], None]


class ReconciliationDriver:
    """Runs one reconciliation per service per invocation.

    Every public entry point returns an outcome; exceptions raised while
    reconciling are converted to FAILED (or ROLLBACK_FAILED) outcomes.
    """

    def __init__(
        self,
        platform: PlatformClient,
        settings: Optional[RolloutSettings] = None,
        clock: Optional[Clock] = None,
        retry_strategy: Optional[RetryStrategy] = None
    ):
        """Initialize reconciliation driver.

        Args:
            platform: Platform client shared by every invocation
            settings: Rollout settings
            clock: Time source
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
        self.fetcher = StateSnapshotFetcher(platform, self.retry_strategy)

    def reconcile(
        self,
        spec: ServiceSpec,
        cancel_event: Optional[threading.Event] = None,
        timeout: Optional[float] = None
    ) -> ReconciliationOutcome:
        """Bring one service to its desired revision and count.

        Args:
            spec: Desired service state
            cancel_event: Set to cancel; a running rollout is rolled back
            timeout: Wall-clock limit, defaults to ``settings.timeout``

        Returns:
            ReconciliationOutcome
        """
        service_id = ServiceId(cluster=spec.cluster, name=spec.name)
        outcome = ReconciliationOutcome(service_id=str(service_id), desired_count=spec.desired_count)
        deadline = Deadline(self.clock, timeout or self.settings.timeout, cancel_event)

        with LogContext(service=str(service_id), operation='reconcile'):
            logger.info(f"Reconciling {service_id}")
            self._guard(outcome, deadline, self._reconcile, spec, service_id, deadline, outcome)
            self._log_outcome(outcome)

        return outcome

    def reconcile_all(
        self,
        specs: List[ServiceSpec],
        max_workers: int = 4,
        cancel_event: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
        callback: Optional[OutcomeCallback] = None
    ) -> List[ReconciliationOutcome]:
        """Reconcile independent services in parallel.

        Args:
            specs: Services to reconcile; each service at most once
            max_workers: Maximum number of parallel reconciliations
            cancel_event: Shared cancel event
            timeout: Per-invocation wall-clock limit
            callback: Called with each outcome as it completes

        Returns:
            Outcomes in the order of ``specs``

        Raises:
            SpecInvalidError: If a service appears more than once
        """
        counts = Counter(spec.service_key for spec in specs)
        duplicates = sorted(key for key, n in counts.items() if n > 1)
        if duplicates:
            raise SpecInvalidError(
                f"Services requested more than once: {', '.join(duplicates)}",
                context=ErrorContext(operation='reconcile_all'),
                suggestions=['Each service may be reconciled once per invocation']
            )

        if not specs:
            return []

        logger.info(f"Reconciling {len(specs)} service(s) with {max_workers} worker(s)")
        outcomes: Dict[str, ReconciliationOutcome] = {}

        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            future_to_key = {
                executor.submit(self.reconcile, spec, cancel_event, timeout): spec.service_key
                for spec in specs
            }

            for future in as_completed(future_to_key):
                key = future_to_key[future]
                outcomes[key] = future.result()
                if callback:
                    callback(outcomes[key])

        return [outcomes[spec.service_key] for spec in specs]

    def scale(
        self,
        service_id: ServiceId,
        target: int,
        policy: Optional[ScalingPolicy] = None,
        cancel_event: Optional[threading.Event] = None,
        timeout: Optional[float] = None
    ) -> ReconciliationOutcome:
        """Change only the desired count of a service.

        Args:
            service_id: Service to scale
            target: Requested desired count
            policy: Bounds and step policy
            cancel_event: Set to stop between polls
            timeout: Wall-clock limit, defaults to ``settings.timeout``

        Returns:
            ReconciliationOutcome
        """
        outcome = ReconciliationOutcome(service_id=str(service_id), desired_count=target)
        deadline = Deadline(self.clock, timeout or self.settings.timeout, cancel_event)

        with LogContext(service=str(service_id), operation='scale'):
            self._guard(outcome, deadline, self._scale_only, service_id, target, policy, deadline, outcome)
            self._log_outcome(outcome)

        return outcome

    def _guard(self, outcome: ReconciliationOutcome, deadline: Deadline, func, *args) -> None:
        """Run ``func`` and fold any exception into ``outcome``."""
        try:
            func(*args)
        except Exception as e:
            error = error_handler.handle_exception(e, ErrorContext(service=outcome.service_id))
            error_handler.log_error(error)
            outcome.error = error
            outcome.reason = error.message
            if isinstance(error, RollbackFailedError):
                outcome.status = OutcomeStatus.ROLLBACK_FAILED
                outcome.escalated = True
            else:
                outcome.status = OutcomeStatus.FAILED
        finally:
            outcome.duration = deadline.elapsed()

    def _reconcile(
        self,
        spec: ServiceSpec,
        service_id: ServiceId,
        deadline: Deadline,
        outcome: ReconciliationOutcome
    ) -> None:
        check_bounds(service_id, spec.desired_count, spec.scaling)

        state = self.fetcher.fetch(service_id, deadline=deadline)
        outcome.previous_revision = state.active_revision
        outcome.revision = state.active_revision
        outcome.initial_count = state.desired_count
        outcome.running_count = state.running_count

        family = spec.task_definition.family
        limit = self.settings.revision_lookup_limit
        revisions = self.fetcher.fetch_revisions(family, limit, deadline)

        resolver = TaskDefinitionResolver(self.platform, self.retry_strategy.with_deadline(deadline))
        target = resolver.resolve(
            spec,
            revisions,
            refresh=lambda: self.fetcher.fetch_revisions(family, limit, deadline),
            prefer=state.active_revision
        )
        for registered in resolver.registrations:
            outcome.actions.append(f"registered {registered.key}")

        if target.key == state.active_revision and spec.desired_count == state.desired_count:
            outcome.status = OutcomeStatus.SUCCESS
            outcome.revision = target.key
            outcome.reason = 'already up to date'
            return

        if target.key != state.active_revision:
            session = self._rollout(spec, service_id, target, state, deadline)
            self._apply_session(session, outcome)
            if not session.succeeded:
                return

        if spec.desired_count != state.desired_count:
            scaler = ScalingController(self.platform, self.clock, self.fetcher, self.retry_strategy)
            result = scaler.scale(service_id, state.desired_count, spec.desired_count, spec.scaling, deadline)
            self._apply_scaling(result, outcome)
            if not result.success:
                return

        outcome.status = OutcomeStatus.SUCCESS
        outcome.reason = '; '.join(outcome.actions) or 'reconciled'

    def _rollout(
        self,
        spec: ServiceSpec,
        service_id: ServiceId,
        target: TaskDefinitionRevision,
        state: ServiceState,
        deadline: Deadline
    ) -> RolloutSession:
        """Roll out ``target`` at the service's current desired count."""
        controller = RolloutController(
            self.platform,
            self.settings,
            clock=self.clock,
            fetcher=self.fetcher,
            retry_strategy=self.retry_strategy
        )
        grace = spec.health_check_grace_period or (state.health_check_grace_period or 0)
        session = controller.start(
            service_id,
            target,
            state,
            desired_count=state.desired_count,
            policy=spec.deployment,
            health_check_grace_period=grace
        )
        return controller.run(session, deadline)

    @staticmethod
    def _apply_session(session: RolloutSession, outcome: ReconciliationOutcome) -> None:
        outcome.phase = session.phase
        outcome.escalated = session.escalated
        if session.last_observed_state is not None:
            outcome.running_count = session.last_observed_state.running_count

        if session.succeeded:
            outcome.revision = session.target.key
            outcome.actions.append(f"rolled out {session.target.key}")
            return

        outcome.error = session.error
        outcome.reason = session.reason or 'rollout failed'
        if session.escalated:
            outcome.status = OutcomeStatus.ROLLBACK_FAILED
            outcome.revision = None
            outcome.actions.append(f"rollback to {session.previous_revision} failed")
        elif session.rolled_back:
            outcome.status = OutcomeStatus.ROLLED_BACK
            outcome.actions.append(f"rolled back to {session.previous_revision}")
        else:
            outcome.status = OutcomeStatus.FAILED

    @staticmethod
    def _apply_scaling(result: ScalingResult, outcome: ReconciliationOutcome) -> None:
        for step in result.steps:
            suffix = '' if step.stabilized else ' (not stabilized)'
            outcome.actions.append(f"scaled to {step.count}{suffix}")

        if result.error is not None:
            outcome.status = OutcomeStatus.FAILED
            outcome.error = result.error
            outcome.reason = f"scaling stopped at {result.final_count}: {result.error.message}"

    def _scale_only(
        self,
        service_id: ServiceId,
        target: int,
        policy: Optional[ScalingPolicy],
        deadline: Deadline,
        outcome: ReconciliationOutcome
    ) -> None:
        policy = policy or ScalingPolicy()
        check_bounds(service_id, target, policy)

        state = self.fetcher.fetch(service_id, include_tasks=False, deadline=deadline)
        outcome.revision = state.active_revision
        outcome.previous_revision = state.active_revision
        outcome.initial_count = state.desired_count
        outcome.running_count = state.running_count

        scaler = ScalingController(self.platform, self.clock, self.fetcher, self.retry_strategy)
        result = scaler.scale(service_id, state.desired_count, target, policy, deadline)
        self._apply_scaling(result, outcome)
        if result.error is not None:
            return

        outcome.status = OutcomeStatus.SUCCESS
        outcome.reason = '; '.join(outcome.actions) or f"already at {target} task(s)"

    @staticmethod
    def _log_outcome(outcome: ReconciliationOutcome) -> None:
        message = f"{outcome.service_id}: {outcome.status.value} in {outcome.duration:.1f}s ({outcome.reason})"
        if outcome.status == OutcomeStatus.SUCCESS:
            logger.info(message)
        elif outcome.status == OutcomeStatus.ROLLBACK_FAILED:
            logger.critical(message)
        else:
            logger.error(message)
