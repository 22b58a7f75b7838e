"""Stepwise desired-count changes within policy bounds."""

from dataclasses import dataclass, field
from typing import List, Optional

from ecs_manage.config.models import ScalingPolicy
from ecs_manage.platform.base import PlatformClient
from ecs_manage.state.fetcher import StateSnapshotFetcher
from ecs_manage.state.models import ServiceId
from ecs_manage.utils.clock import Clock, Deadline, SystemClock
from ecs_manage.utils.errors import (
    EcsManageError,
    ErrorContext,
    OutOfBoundsError,
    TimeoutExceededError,
)
from ecs_manage.utils.logging import get_logger
from ecs_manage.utils.retry import RetryStrategy

logger = get_logger(__name__)


def check_bounds(service_id: ServiceId, count: int, policy: ScalingPolicy) -> None:
    """Raise OutOfBoundsError unless ``count`` lies within the policy bounds."""
    if not policy.contains(count):
        raise OutOfBoundsError(
            f"Desired count {count} is outside [{policy.min_count}, {policy.max_count}]",
            context=ErrorContext(service=str(service_id), operation='scale'),
            suggestions=['Choose a count within the scaling bounds or widen min_count/max_count']
        )


def plan_steps(current: int, target: int, step_size: Optional[int] = None) -> List[int]:
    """Desired counts to apply in order, ending at ``target``.

    Args:
        current: Current desired count
        target: Requested desired count
        step_size: Largest change per step, None for a single step

    Returns:
        Intermediate counts followed by the target; empty when already there
    """
    if current == target:
        return []
    if not step_size:
        return [target]

    direction = 1 if target > current else -1
    steps = []
    count = current
    while count != target:
        count += direction * step_size
        if (direction > 0 and count > target) or (direction < 0 and count < target):
            count = target
        steps.append(count)
    return steps


@dataclass
class ScalingStep:
    """One applied desired-count change."""
    count: int
    stabilized: bool = False
    duration: float = 0.0


@dataclass
class ScalingResult:
    """Result of scaling a service."""

    service_id: ServiceId
    initial_count: int
    target_count: int
    steps: List[ScalingStep] = field(default_factory=list)
    error: Optional[EcsManageError] = None

    @property
    def success(self) -> bool:
        return self.error is None and self.final_count == self.target_count

    @property
    def final_count(self) -> int:
        """Last desired count the platform acknowledged."""
        return self.steps[-1].count if self.steps else self.initial_count

    @property
    def unstabilized_steps(self) -> List[int]:
        return [step.count for step in self.steps if not step.stabilized]


class ScalingController:
    """Changes a service's desired count, optionally in bounded steps."""

    def __init__(
        self,
        platform: PlatformClient,
        clock: Optional[Clock] = None,
        fetcher: Optional[StateSnapshotFetcher] = None,
        retry_strategy: Optional[RetryStrategy] = None
    ):
        """Initialize scaling controller.

        Args:
            platform: Platform client
            clock: Time source for polling
            fetcher: Snapshot fetcher, built from the platform if omitted
            retry_strategy: Backoff for transient platform errors
        """
        self.platform = platform
        self.clock = clock or SystemClock()
        self.retry_strategy = retry_strategy or RetryStrategy(clock=self.clock)
        self.fetcher = fetcher or StateSnapshotFetcher(platform, self.retry_strategy)

    def scale(
        self,
        service_id: ServiceId,
        current_count: int,
        target: int,
        policy: Optional[ScalingPolicy] = None,
        deadline: Optional[Deadline] = None
    ) -> ScalingResult:
        """Move a service from ``current_count`` to ``target`` tasks.

        Args:
            service_id: Service to scale
            current_count: Desired count before scaling
            target: Requested desired count
            policy: Bounds and step policy
            deadline: Invocation deadline

        Returns:
            ScalingResult recording every applied step; rejected updates and
            deadline expiry are recorded in ``error``

        Raises:
            OutOfBoundsError: If target is outside the policy bounds
        """
        policy = policy or ScalingPolicy()
        deadline = deadline or Deadline(self.clock, None)

        check_bounds(service_id, target, policy)

        result = ScalingResult(service_id=service_id, initial_count=current_count, target_count=target)

        steps = plan_steps(current_count, target, policy.step_size)
        if not steps:
            logger.info(f"{service_id} already at {target} task(s)")
            return result

        logger.info(f"Scaling {service_id} {current_count} -> {target} in {len(steps)} step(s)")
        retry = self.retry_strategy.with_deadline(deadline)

        for count in steps:
            started = self.clock.now()
            try:
                retry.execute_with_retry(
                    self.platform.update_service, service_id, None, count, None
                )
                step = ScalingStep(count=count)
                result.steps.append(step)
                step.stabilized = self._wait_for_step(service_id, count, policy, deadline)
                step.duration = self.clock.now() - started
            except EcsManageError as e:
                logger.error(f"Scaling {service_id} stopped at {result.final_count}: {e.message}")
                result.error = e
                return result

            if not step.stabilized:
                logger.warning(
                    f"{service_id} did not stabilize at {count} task(s) within "
                    f"{policy.step_timeout:.0f}s; continuing"
                )

        logger.info(f"Scaled {service_id} to {target} task(s)")
        return result

    def _wait_for_step(
        self,
        service_id: ServiceId,
        count: int,
        policy: ScalingPolicy,
        deadline: Deadline
    ) -> bool:
        """Poll until ``count`` tasks run with none pending.

        Returns:
            False when the step timeout elapsed first

        Raises:
            TimeoutExceededError: If the invocation deadline expired
        """
        step_timeout = policy.step_timeout
        remaining = deadline.remaining()
        if remaining is not None:
            step_timeout = min(step_timeout, remaining)
        step_deadline = Deadline(self.clock, step_timeout, deadline.cancel_event)

        while True:
            state = self.fetcher.fetch(service_id, include_tasks=False, deadline=deadline)
            if state.running_count == count and state.pending_count == 0:
                logger.info(f"{service_id} stable at {count} task(s)")
                return True

            logger.debug(
                f"{service_id} at {state.running_count}/{count} running, {state.pending_count} pending"
            )

            if step_deadline.sleep(policy.poll_interval):
                if deadline.expired():
                    raise TimeoutExceededError(
                        f"Deadline expired while scaling {service_id} to {count} task(s)",
                        context=ErrorContext(service=str(service_id), operation='scale')
                    )
                return False
