"""Snapshot models of what the platform currently runs."""

from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from ecs_manage.config.models import TaskTemplate


IMAGE_PULL_MARKERS = (
    "CannotPullContainerError",
    "CannotPullImageManifestError",
    "pull image manifest",
    "pull access denied",
)


class Snapshot(BaseModel):
    """Base for platform snapshots; refreshed by re-fetching, never edited."""

    model_config = ConfigDict(frozen=True)


class ServiceId(Snapshot):
    """Cluster-qualified service name."""

    cluster: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)

    def __str__(self) -> str:
        return f"{self.cluster}/{self.name}"


def revision_key(arn_or_key: Optional[str]) -> Optional[str]:
    """Normalize a task definition ARN to ``family:revision``."""
    if not arn_or_key:
        return None
    return arn_or_key.rsplit("/", 1)[-1]


class TaskDefinitionRevision(Snapshot):
    """Immutable, registered task definition revision."""

    family: str
    revision: int = Field(..., ge=1)
    content_hash: Optional[str] = None
    template: Optional[TaskTemplate] = None
    arn: Optional[str] = None

    @property
    def key(self) -> str:
        return f"{self.family}:{self.revision}"

    def __str__(self) -> str:
        return self.key


class TaskHealth(Snapshot):
    """Health of one running or recently stopped task."""

    task_id: str
    revision: Optional[str] = None
    last_status: str = "PENDING"
    desired_status: str = "RUNNING"
    health_status: str = "UNKNOWN"
    stop_code: Optional[str] = None
    stopped_reason: Optional[str] = None
    container_reasons: Tuple[str, ...] = ()
    exit_codes: Tuple[int, ...] = ()

    @property
    def is_running(self) -> bool:
        return self.last_status == "RUNNING"

    @property
    def is_stopped(self) -> bool:
        return self.last_status in ("STOPPED", "DEPROVISIONING", "STOPPING") \
            or self.desired_status == "STOPPED"

    def is_healthy(self, require_health_checks: bool = False) -> bool:
        """Running and reporting healthy.

        Without health checks ECS reports UNKNOWN; that counts as healthy
        unless health checks are required.
        """
        if not self.is_running or self.desired_status == "STOPPED":
            return False
        if self.health_status == "HEALTHY":
            return True
        return self.health_status == "UNKNOWN" and not require_health_checks

    @property
    def image_pull_failed(self) -> bool:
        reasons = [self.stopped_reason or ""] + list(self.container_reasons)
        return any(marker in reason for reason in reasons for marker in IMAGE_PULL_MARKERS)

    @property
    def crashed(self) -> bool:
        """Stopped because a container exited or never started."""
        if not self.is_stopped:
            return False
        if self.stop_code == "EssentialContainerExited":
            return True
        if self.stop_code == "TaskFailedToStart":
            return True
        if "health check" in (self.stopped_reason or "").lower():
            return True
        # Tasks stopped by scale-in or by hand exit non-zero on SIGTERM
        if self.stop_code in ("ServiceSchedulerInitiated", "UserInitiated"):
            return False
        return any(code != 0 for code in self.exit_codes)


class ServiceDeployment(Snapshot):
    """One entry of a service's deployment list."""

    id: str
    status: str
    revision: Optional[str] = None
    desired_count: int = 0
    running_count: int = 0
    pending_count: int = 0
    failed_tasks: int = 0
    rollout_state: Optional[str] = None
    rollout_state_reason: Optional[str] = None


class ServiceLayout(Snapshot):
    """Launch settings needed to recreate a service in another cluster."""

    launch_type: Optional[str] = None
    platform_version: Optional[str] = None
    load_balancers: List[Dict[str, Any]] = Field(default_factory=list)
    network_configuration: Optional[Dict[str, Any]] = None
    deployment_configuration: Optional[Dict[str, Any]] = None
    placement_constraints: List[Dict[str, Any]] = Field(default_factory=list)
    placement_strategy: List[Dict[str, Any]] = Field(default_factory=list)

    @property
    def is_awsvpc(self) -> bool:
        return bool((self.network_configuration or {}).get("awsvpcConfiguration"))


class ServiceState(Snapshot):
    """Observed state of a service at one point in time."""

    service_id: ServiceId
    status: str = "ACTIVE"
    active_revision: Optional[str] = None
    desired_count: int = Field(0, ge=0)
    running_count: int = Field(0, ge=0)
    pending_count: int = Field(0, ge=0)
    deployments: List[ServiceDeployment] = Field(default_factory=list)
    tasks: List[TaskHealth] = Field(default_factory=list)
    target_groups: List[str] = Field(default_factory=list)
    health_check_grace_period: Optional[int] = None
    layout: ServiceLayout = Field(default_factory=ServiceLayout)

    def deployment_for(self, revision: str) -> Optional[ServiceDeployment]:
        """Deployment running ``revision``, the PRIMARY one when several do."""
        matches = [d for d in self.deployments if d.revision == revision]
        for deployment in matches:
            if deployment.status == "PRIMARY":
                return deployment
        return matches[0] if matches else None

    def running_at(self, revision: str) -> int:
        """Running count reported for the deployment of ``revision``."""
        deployment = self.deployment_for(revision)
        if deployment is not None:
            return deployment.running_count
        if self.active_revision == revision and len(self.deployments) <= 1:
            return self.running_count
        return 0

    def tasks_at(self, revision: str) -> List[TaskHealth]:
        return [task for task in self.tasks if task.revision == revision]
