"""Cluster-wide service listing, auditing and bulk updates."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from ecs_manage.platform.base import PlatformClient
from ecs_manage.state.fetcher import StateSnapshotFetcher
from ecs_manage.state.models import ServiceId, ServiceLayout, ServiceState
from ecs_manage.utils.clock import Clock, SystemClock
from ecs_manage.utils.errors import EcsManageError
from ecs_manage.utils.logging import get_logger
from ecs_manage.utils.retry import RetryStrategy

logger = get_logger(__name__)


INVALID_IMAGES = "Invalid ECR images"
INVALID_TARGET_GROUPS = "Invalid Target groups"
LESS_THAN_DESIRED = "Less than desired"

# Role used by services behind a load balancer outside awsvpc mode
DEFAULT_ROLE_SUFFIX = "ECSServiceRole"

# Seconds to wait before each service created by a sync
SYNC_PAUSE = 10.0


class ServiceProperty(Enum):
    """Service properties that can be exported."""
    DESIRED_COUNT = "desired-count"
    RUNNING_COUNT = "running-count"
    TASK_DEFINITION = "task-definition"

    def value_of(self, state: ServiceState) -> Any:
        if self == ServiceProperty.DESIRED_COUNT:
            return state.desired_count
        if self == ServiceProperty.RUNNING_COUNT:
            return state.running_count
        return state.active_revision


@dataclass
class AuditResult:
    """Findings for one service; empty findings mean the service is sound."""
    service: ServiceState
    findings: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.findings


@dataclass
class BulkUpdateResult:
    """Result of updating every service in a cluster."""
    cluster: str
    updated: List[str] = field(default_factory=list)
    failed: Dict[str, EcsManageError] = field(default_factory=dict)

    def is_success(self) -> bool:
        return not self.failed


def service_role(
    cluster: str,
    layout: ServiceLayout,
    role_suffix: Optional[str] = None
) -> Optional[str]:
    """IAM role for a service created in ``cluster``.

    Only services registered with a load balancer outside awsvpc mode take
    a service role; it is named ``<cluster>-<suffix>``.
    """
    if not layout.load_balancers or layout.is_awsvpc:
        return None
    return f"{cluster}-{role_suffix or DEFAULT_ROLE_SUFFIX}"


@dataclass
class SyncResult:
    """Result of copying missing services into a destination cluster."""
    source_cluster: str
    destination_cluster: str
    created: List[str] = field(default_factory=list)
    skipped: Dict[str, List[str]] = field(default_factory=dict)
    failed: Dict[str, EcsManageError] = field(default_factory=dict)

    def is_success(self) -> bool:
        return not self.failed


class ServiceInventory:
    """Read and bulk-update every service of a cluster."""

    def __init__(
        self,
        platform: PlatformClient,
        clock: Optional[Clock] = None,
        retry_strategy: Optional[RetryStrategy] = None
    ):
        """Initialize inventory.

        Args:
            platform: Platform client
            clock: Time source for pauses between updates
            retry_strategy: Backoff for throttled calls
        """
        self.platform = platform
        self.clock = clock or SystemClock()
        self.retry_strategy = retry_strategy or RetryStrategy(clock=self.clock)
        self.fetcher = StateSnapshotFetcher(platform, self.retry_strategy)

    def service_names(self, cluster: str) -> List[str]:
        return self.retry_strategy.execute_with_retry(self.platform.list_services, cluster)

    def describe_services(self, cluster: str) -> List[ServiceState]:
        """Snapshot every service in a cluster, without task detail."""
        names = self.service_names(cluster)
        logger.info(f"Describing {len(names)} service(s) in {cluster}")
        return [
            self.fetcher.fetch(ServiceId(cluster=cluster, name=name), include_tasks=False)
            for name in names
        ]

    def audit(self, state: ServiceState) -> AuditResult:
        """Check a service's images, target groups and running count.

        Args:
            state: Service snapshot

        Returns:
            AuditResult listing every failed check
        """
        result = AuditResult(service=state)

        if self._has_invalid_images(state):
            result.findings.append(INVALID_IMAGES)

        if any(not self._call(self.platform.target_group_exists, arn) for arn in state.target_groups):
            result.findings.append(INVALID_TARGET_GROUPS)

        if state.running_count < state.desired_count:
            result.findings.append(LESS_THAN_DESIRED)

        return result

    def audit_cluster(self, cluster: str) -> List[AuditResult]:
        return [self.audit(state) for state in self.describe_services(cluster)]

    def compare(
        self,
        source_cluster: str,
        destination_cluster: str,
        destination: Optional['ServiceInventory'] = None
    ) -> List[ServiceState]:
        """Services present in the source cluster but not in the destination.

        Args:
            source_cluster: Cluster to read services from
            destination_cluster: Cluster to compare against
            destination: Inventory for the destination, e.g. in another
                region; defaults to this one

        Returns:
            Source snapshots whose names are missing from the destination
        """
        destination = destination or self
        present = set(destination.service_names(destination_cluster))
        return [
            state for state in self.describe_services(source_cluster)
            if state.service_id.name not in present
        ]

    def sync(
        self,
        source_cluster: str,
        destination_cluster: str,
        role_suffix: Optional[str] = None,
        destination: Optional['ServiceInventory'] = None,
        pause: float = SYNC_PAUSE
    ) -> SyncResult:
        """Create the source services that the destination cluster lacks.

        Each missing service is audited first and copied only when the
        audit finds nothing. Creates are not retried; a failed create is
        recorded and the sync moves on.

        Args:
            source_cluster: Cluster to copy services from
            destination_cluster: Cluster to create services in
            role_suffix: Suffix of the service role, see ``service_role``
            destination: Inventory for the destination, e.g. in another
                region; defaults to this one
            pause: Seconds to wait before each create

        Returns:
            SyncResult with created, skipped and failed service names
        """
        destination = destination or self
        result = SyncResult(source_cluster=source_cluster, destination_cluster=destination_cluster)

        for state in self.compare(source_cluster, destination_cluster, destination):
            name = state.service_id.name

            audit = self.audit(state)
            if not audit.ok:
                logger.warning(f"Not copying {state.service_id}: {', '.join(audit.findings)}")
                result.skipped[name] = audit.findings
                continue

            if pause > 0:
                self.clock.sleep(pause)

            role = service_role(destination_cluster, state.layout, role_suffix)
            logger.info(f"Creating {destination_cluster}/{name} with role: {role}")
            try:
                destination.platform.create_service(destination_cluster, state, role)
                result.created.append(name)
            except EcsManageError as e:
                logger.error(f"Failed to create {destination_cluster}/{name}: {e.message}")
                result.failed[name] = e

        return result

    def export(self, cluster: str, prop: ServiceProperty) -> Dict[str, Any]:
        """Map each service name to one property value."""
        return {
            state.service_id.name: prop.value_of(state)
            for state in self.describe_services(cluster)
        }

    def update_desired_count(
        self,
        cluster: str,
        count: int,
        pause: float = 0.0
    ) -> BulkUpdateResult:
        """Set the desired count of every service in a cluster.

        Args:
            cluster: Cluster to update
            count: New desired count
            pause: Seconds to wait after each update

        Returns:
            BulkUpdateResult; a rejected update does not stop the others
        """
        result = BulkUpdateResult(cluster=cluster)

        for state in self.describe_services(cluster):
            service_id = state.service_id
            logger.info(
                f"Updating {service_id}'s desired count to {count}. It was {state.desired_count}"
            )
            try:
                self._call(self.platform.update_service, service_id, None, count, None)
                result.updated.append(service_id.name)
            except EcsManageError as e:
                logger.error(f"Failed to update {service_id}: {e.message}")
                result.failed[service_id.name] = e

            if pause > 0:
                self.clock.sleep(pause)

        return result

    def _has_invalid_images(self, state: ServiceState) -> bool:
        if not state.active_revision:
            return False

        revision = self._call(self.platform.describe_task_definition, state.active_revision)
        if revision.template is None:
            return False

        return any(not self._call(self.platform.image_exists, image) for image in revision.template.images())

    def _call(self, func, *args):
        return self.retry_strategy.execute_with_retry(func, *args)
