"""Platform client contract consumed by the reconciliation engine."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional

from ecs_manage.config.models import DeploymentPolicy, TaskTemplate
from ecs_manage.state.models import ServiceId, ServiceState, TaskDefinitionRevision, TaskHealth


@dataclass(frozen=True)
class DeploymentLimits:
    """Task budgets for one rollout, derived from a DeploymentPolicy."""
    desired_count: int
    max_surge: int
    max_unavailable: int
    maximum_percent: int
    minimum_healthy_percent: int

    @classmethod
    def from_policy(cls, policy: DeploymentPolicy, desired_count: int) -> 'DeploymentLimits':
        return cls(
            desired_count=desired_count,
            max_surge=policy.surge_tasks(desired_count),
            max_unavailable=policy.unavailable_tasks(desired_count),
            maximum_percent=policy.maximum_percent,
            minimum_healthy_percent=policy.minimum_healthy_percent
        )

    @property
    def can_progress(self) -> bool:
        """A rollout can replace tasks only with room to add or remove one."""
        return self.desired_count == 0 or self.max_surge > 0 or self.max_unavailable > 0


@dataclass(frozen=True)
class UpdateAck:
    """Platform acknowledgement of an update request."""
    service_id: ServiceId
    revision: Optional[str]
    desired_count: Optional[int]
    deployment_id: Optional[str] = None


class PlatformClient(ABC):
    """Control-plane API used by the fetcher, resolver and controllers.

    Implementations raise ``PlatformUnavailableError`` for transient
    failures and ``PlatformRejectedError`` for requests that will never
    succeed. They must tolerate concurrent calls for different services.
    """

    @abstractmethod
    def describe_service(self, service_id: ServiceId) -> ServiceState:
        """Describe a service without per-task detail."""

    @abstractmethod
    def list_tasks(self, service_id: ServiceId) -> List[str]:
        """IDs of the service's running and recently stopped tasks."""

    @abstractmethod
    def describe_tasks(self, cluster: str, task_ids: List[str]) -> List[TaskHealth]:
        """Health of the given tasks."""

    @abstractmethod
    def list_task_definition_revisions(
        self,
        family: str,
        limit: int
    ) -> List[TaskDefinitionRevision]:
        """Registered revisions of a family, most recent first."""

    @abstractmethod
    def describe_task_definition(self, key: str) -> TaskDefinitionRevision:
        """Describe one revision by ``family:revision`` or ARN."""

    @abstractmethod
    def register_task_definition(
        self,
        template: TaskTemplate,
        content_hash: str
    ) -> TaskDefinitionRevision:
        """Register a new revision carrying its content hash."""

    @abstractmethod
    def update_service(
        self,
        service_id: ServiceId,
        revision: Optional[str] = None,
        desired_count: Optional[int] = None,
        limits: Optional[DeploymentLimits] = None
    ) -> UpdateAck:
        """Point a service at a revision and/or desired count."""

    @abstractmethod
    def list_services(self, cluster: str) -> List[str]:
        """Names of every service in a cluster."""

    @abstractmethod
    def image_exists(self, image: str) -> bool:
        """Whether a container image reference resolves in its registry."""

    @abstractmethod
    def target_group_exists(self, arn: str) -> bool:
        """Whether a load balancer target group exists."""

    @abstractmethod
    def create_service(
        self,
        cluster: str,
        source: ServiceState,
        role: Optional[str] = None
    ) -> ServiceState:
        """Create a service in ``cluster`` shaped like ``source``.

        The new service keeps the source's name, revision, desired count
        and layout.
        """
