"""Classification of a service snapshot during rollout verification."""

from dataclasses import dataclass
from enum import Enum
from typing import AbstractSet, Tuple

from ecs_manage.state.models import ServiceState


class SampleVerdict(Enum):
    """What one health sample says about the target revision."""
    HEALTHY = "healthy"  # Converged and every sampled target task healthy
    PROGRESSING = "progressing"  # Not converged yet, nothing wrong observed
    UNHEALTHY = "unhealthy"  # Some target tasks unhealthy or crashed
    CRASHING = "crashing"  # Target tasks crash-looping, none healthy
    FATAL = "fatal"  # Image pull failure or platform marked deployment failed


@dataclass(frozen=True)
class HealthSample:
    """One evaluated snapshot."""
    verdict: SampleVerdict
    reason: str
    running: int = 0
    healthy: int = 0
    crashed: int = 0
    crashed_task_ids: Tuple[str, ...] = ()


def evaluate_sample(
    state: ServiceState,
    target: str,
    desired_count: int,
    require_health_checks: bool = False,
    known_crashes: AbstractSet[str] = frozenset()
) -> HealthSample:
    """Classify a snapshot against the revision being verified.

    Args:
        state: Fresh snapshot including tasks
        target: Revision key being verified
        desired_count: Tasks that must be running at the target
        require_health_checks: Treat UNKNOWN health as not healthy
        known_crashes: Stopped tasks already counted by earlier samples;
            stopped tasks linger in the API for a while after they exit

    Returns:
        HealthSample with a verdict and a short reason
    """
    tasks = state.tasks_at(target)
    running = [t for t in tasks if t.is_running and t.desired_status != 'STOPPED']
    healthy = [t for t in running if t.is_healthy(require_health_checks)]
    unhealthy = [t for t in running if t.health_status == 'UNHEALTHY']
    crashed = [t for t in tasks if t.crashed and t.task_id not in known_crashes]

    counts = dict(
        running=len(running),
        healthy=len(healthy),
        crashed=len(crashed),
        crashed_task_ids=tuple(t.task_id for t in crashed)
    )

    pull_failures = [t for t in tasks if t.image_pull_failed and t.task_id not in known_crashes]
    if pull_failures:
        reason = pull_failures[0].stopped_reason or 'image pull failed'
        return HealthSample(SampleVerdict.FATAL, f"image pull failure: {reason}", **counts)

    deployment = state.deployment_for(target)
    if deployment is not None and deployment.rollout_state == 'FAILED':
        reason = deployment.rollout_state_reason or 'deployment failed'
        return HealthSample(SampleVerdict.FATAL, f"platform marked deployment failed: {reason}", **counts)

    if crashed and not healthy:
        return HealthSample(
            SampleVerdict.CRASHING,
            f"{len(crashed)} task(s) crashed, none healthy",
            **counts
        )

    if unhealthy or crashed:
        return HealthSample(
            SampleVerdict.UNHEALTHY,
            f"{len(unhealthy)} unhealthy and {len(crashed)} crashed task(s)",
            **counts
        )

    converged = (
        state.running_at(target) >= desired_count
        and len(healthy) >= desired_count
        and len(healthy) == len(running)
    )
    if converged:
        return HealthSample(
            SampleVerdict.HEALTHY,
            f"{len(healthy)}/{desired_count} task(s) healthy",
            **counts
        )

    return HealthSample(
        SampleVerdict.PROGRESSING,
        f"{len(healthy)}/{desired_count} task(s) healthy, {state.pending_count} pending",
        **counts
    )
