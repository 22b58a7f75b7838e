"""Fetches and normalizes service snapshots through the platform client."""

from typing import List, Optional

from ecs_manage.platform.base import PlatformClient
from ecs_manage.state.models import ServiceId, ServiceState, TaskDefinitionRevision
from ecs_manage.utils.clock import Deadline
from ecs_manage.utils.logging import get_logger
from ecs_manage.utils.retry import RetryStrategy

logger = get_logger(__name__)


class StateSnapshotFetcher:
    """Reads current service state and known task definition revisions.

    Transient platform failures are retried with backoff; anything else
    propagates to the caller unchanged.
    """

    def __init__(
        self,
        platform: PlatformClient,
        retry_strategy: Optional[RetryStrategy] = None
    ):
        """Initialize fetcher.

        Args:
            platform: Platform client
            retry_strategy: Backoff used for transient failures
        """
        self.platform = platform
        self.retry_strategy = retry_strategy or RetryStrategy()

    def fetch(
        self,
        service_id: ServiceId,
        include_tasks: bool = True,
        deadline: Optional[Deadline] = None
    ) -> ServiceState:
        """Take a snapshot of a service.

        Args:
            service_id: Service to describe
            include_tasks: Whether to describe individual tasks
            deadline: Optional deadline bounding retries

        Returns:
            ServiceState with per-task health when requested
        """
        retry = self.retry_strategy.with_deadline(deadline)

        state = retry.execute_with_retry(self.platform.describe_service, service_id)
        if not include_tasks:
            return state

        task_ids = retry.execute_with_retry(self.platform.list_tasks, service_id)
        tasks = []
        if task_ids:
            tasks = retry.execute_with_retry(
                self.platform.describe_tasks, service_id.cluster, task_ids
            )

        logger.debug(
            f"{service_id}: revision={state.active_revision} desired={state.desired_count} "
            f"running={state.running_count} pending={state.pending_count} tasks={len(tasks)}"
        )

        return state.model_copy(update={'tasks': tasks})

    def fetch_revisions(
        self,
        family: str,
        limit: int = 25,
        deadline: Optional[Deadline] = None
    ) -> List[TaskDefinitionRevision]:
        """Known revisions of a family, most recent first."""
        retry = self.retry_strategy.with_deadline(deadline)
        revisions = retry.execute_with_retry(
            self.platform.list_task_definition_revisions, family, limit
        )
        return sorted(revisions, key=lambda r: r.revision, reverse=True)
