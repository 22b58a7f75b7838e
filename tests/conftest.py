"""Shared fixtures: a manual clock and an in-memory ECS stand-in."""

import threading
from collections import defaultdict
from typing import Callable, Dict, List, Optional, Sequence

import pytest

from ecs_manage.config.models import ContainerSpec, RolloutSettings, ServiceSpec, TaskTemplate
from ecs_manage.orchestrator.resolver import compute_content_hash
from ecs_manage.platform.base import DeploymentLimits, PlatformClient, UpdateAck
from ecs_manage.state.models import (
    ServiceDeployment,
    ServiceId,
    ServiceLayout,
    ServiceState,
    TaskDefinitionRevision,
    TaskHealth,
)
from ecs_manage.utils.clock import Clock


class ManualClock(Clock):
    """Clock that only moves when something sleeps on it."""

    def __init__(self, start: float = 1000.0):
        self.time = start
        self.sleeps: List[float] = []
        self.on_sleep: Optional[Callable[["ManualClock"], None]] = None

    def now(self) -> float:
        return self.time

    def sleep(self, seconds, cancel_event=None) -> bool:
        if cancel_event is not None and cancel_event.is_set():
            return True
        self.sleeps.append(seconds)
        self.time += max(seconds, 0)
        if self.on_sleep is not None:
            self.on_sleep(self)
        return bool(cancel_event is not None and cancel_event.is_set())


def healthy_task(task_id: str, revision: str, health: str = "HEALTHY") -> TaskHealth:
    return TaskHealth(
        task_id=task_id,
        revision=revision,
        last_status="RUNNING",
        desired_status="RUNNING",
        health_status=health,
    )


def unhealthy_task(task_id: str, revision: str) -> TaskHealth:
    return healthy_task(task_id, revision, health="UNHEALTHY")


def pending_task(task_id: str, revision: str) -> TaskHealth:
    return TaskHealth(task_id=task_id, revision=revision, last_status="PROVISIONING")


def crashed_task(task_id: str, revision: str) -> TaskHealth:
    return TaskHealth(
        task_id=task_id,
        revision=revision,
        last_status="STOPPED",
        desired_status="STOPPED",
        stop_code="EssentialContainerExited",
        stopped_reason="Essential container in task exited",
        exit_codes=(1,),
    )


def pull_failed_task(task_id: str, revision: str) -> TaskHealth:
    return TaskHealth(
        task_id=task_id,
        revision=revision,
        last_status="STOPPED",
        desired_status="STOPPED",
        stop_code="TaskFailedToStart",
        stopped_reason="CannotPullContainerError: pull image manifest has been retried 5 time(s)",
    )


class FakePlatformClient(PlatformClient):
    """In-memory platform that records calls and replays scripted task health.

    Without a script a revision converges immediately: every desired task
    runs and reports healthy. A script is a list of task lists, one per
    snapshot of the service; the last entry repeats.
    """

    def __init__(self):
        self.services: Dict[str, ServiceState] = {}
        self.revisions: Dict[str, List[TaskDefinitionRevision]] = defaultdict(list)
        self.scripts: Dict[str, List[List[TaskHealth]]] = {}
        self.count_scripts: Dict[str, List[tuple]] = {}
        self.failures: Dict[str, List[Optional[Exception]]] = defaultdict(list)
        self.missing_images = set()
        self.missing_target_groups = set()
        self.calls: List[tuple] = []
        self._samples: Dict[str, int] = defaultdict(int)
        self._tasks: Dict[str, List[TaskHealth]] = {}
        self._lock = threading.Lock()

    # Setup helpers

    def add_service(
        self,
        cluster: str = "prod",
        name: str = "web",
        revision: Optional[str] = "web:1",
        desired_count: int = 2,
        target_groups: Sequence[str] = (),
        layout: Optional[ServiceLayout] = None
    ) -> ServiceId:
        service_id = ServiceId(cluster=cluster, name=name)
        self.services[str(service_id)] = ServiceState(
            service_id=service_id,
            active_revision=revision,
            desired_count=desired_count,
            running_count=desired_count,
            target_groups=list(target_groups),
            layout=layout or ServiceLayout(),
        )
        return service_id

    def add_revision(
        self,
        template: TaskTemplate,
        revision: Optional[int] = None,
        tagged: bool = True
    ) -> TaskDefinitionRevision:
        known = self.revisions[template.family]
        number = revision or (max((r.revision for r in known), default=0) + 1)
        registered = TaskDefinitionRevision(
            family=template.family,
            revision=number,
            content_hash=compute_content_hash(template) if tagged else None,
            template=template,
            arn=f"arn:aws:ecs:us-east-1:123456789012:task-definition/{template.family}:{number}",
        )
        known.append(registered)
        return registered

    def script(self, revision: str, *samples: List[TaskHealth]) -> None:
        self.scripts[revision] = list(samples)

    def script_counts(self, service_id: ServiceId, *counts: tuple) -> None:
        """(running, pending) pairs returned by successive snapshots."""
        self.count_scripts[str(service_id)] = list(counts)

    def fail(self, operation: str, *errors: Optional[Exception]) -> None:
        """Queue outcomes for the next calls; None lets a call through."""
        self.failures[operation].extend(errors)

    def calls_to(self, operation: str) -> List[dict]:
        return [kwargs for name, kwargs in self.calls if name == operation]

    def _record(self, operation: str, **kwargs) -> None:
        with self._lock:
            self.calls.append((operation, kwargs))
            queued = self.failures[operation]
            error = queued.pop(0) if queued else None
        if error is not None:
            raise error

    # PlatformClient

    def describe_service(self, service_id: ServiceId) -> ServiceState:
        self._record("describe_service", service_id=service_id)
        key = str(service_id)
        state = self.services[key]
        revision = state.active_revision

        tasks = self._next_tasks(key, state)
        self._tasks[key] = tasks
        running = len([t for t in tasks if t.is_running and t.desired_status != "STOPPED"])
        pending = 0

        counts = self.count_scripts.get(key)
        if counts:
            running, pending = counts.pop(0) if len(counts) > 1 else counts[0]

        deployments = []
        if revision is not None:
            deployments = [ServiceDeployment(
                id="ecs-svc/1",
                status="PRIMARY",
                revision=revision,
                desired_count=state.desired_count,
                running_count=running,
                pending_count=pending,
            )]

        return state.model_copy(update={
            "running_count": running,
            "pending_count": pending,
            "deployments": deployments,
        })

    def _next_tasks(self, key: str, state: ServiceState) -> List[TaskHealth]:
        revision = state.active_revision
        if revision is None:
            return []
        script = self.scripts.get(revision)
        if not script:
            return [healthy_task(f"{revision}-{i}", revision) for i in range(state.desired_count)]
        index = self._samples[revision]
        self._samples[revision] += 1
        return script[min(index, len(script) - 1)]

    def list_tasks(self, service_id: ServiceId) -> List[str]:
        self._record("list_tasks", service_id=service_id)
        return [t.task_id for t in self._tasks.get(str(service_id), [])]

    def describe_tasks(self, cluster: str, task_ids: List[str]) -> List[TaskHealth]:
        self._record("describe_tasks", cluster=cluster, task_ids=task_ids)
        tasks = [t for tasks in self._tasks.values() for t in tasks]
        return [t for t in tasks if t.task_id in task_ids]

    def list_task_definition_revisions(self, family: str, limit: int) -> List[TaskDefinitionRevision]:
        self._record("list_task_definition_revisions", family=family, limit=limit)
        known = sorted(self.revisions[family], key=lambda r: r.revision, reverse=True)
        return known[:limit]

    def describe_task_definition(self, key: str) -> TaskDefinitionRevision:
        self._record("describe_task_definition", key=key)
        family, _, number = key.rpartition(":")
        for revision in self.revisions[family]:
            if revision.revision == int(number):
                return revision
        raise KeyError(key)

    def register_task_definition(self, template: TaskTemplate, content_hash: str) -> TaskDefinitionRevision:
        self._record("register_task_definition", template=template, content_hash=content_hash)
        return self.add_revision(template)

    def update_service(
        self,
        service_id: ServiceId,
        revision: Optional[str] = None,
        desired_count: Optional[int] = None,
        limits: Optional[DeploymentLimits] = None
    ) -> UpdateAck:
        self._record(
            "update_service",
            service_id=service_id,
            revision=revision,
            desired_count=desired_count,
            limits=limits,
        )
        key = str(service_id)
        update = {}
        if revision is not None:
            update["active_revision"] = revision
        if desired_count is not None:
            update["desired_count"] = desired_count
        self.services[key] = self.services[key].model_copy(update=update)
        return UpdateAck(service_id=service_id, revision=revision, desired_count=desired_count)

    def list_services(self, cluster: str) -> List[str]:
        self._record("list_services", cluster=cluster)
        return [s.service_id.name for s in self.services.values() if s.service_id.cluster == cluster]

    def image_exists(self, image: str) -> bool:
        self._record("image_exists", image=image)
        return image not in self.missing_images

    def target_group_exists(self, arn: str) -> bool:
        self._record("target_group_exists", arn=arn)
        return arn not in self.missing_target_groups

    def create_service(
        self,
        cluster: str,
        source: ServiceState,
        role: Optional[str] = None
    ) -> ServiceState:
        self._record("create_service", cluster=cluster, source=source, role=role)
        service_id = ServiceId(cluster=cluster, name=source.service_id.name)
        created = source.model_copy(update={"service_id": service_id, "running_count": 0})
        self.services[str(service_id)] = created
        return created


def make_template(
    family: str = "web",
    image: str = "123456789012.dkr.ecr.us-east-1.amazonaws.com/web@sha256:aaaa",
    environment: Optional[Dict[str, str]] = None,
    **kwargs
) -> TaskTemplate:
    containers = kwargs.pop("containers", None) or [
        ContainerSpec(
            name="app",
            image=image,
            memory=512,
            environment=environment or {"LOG_LEVEL": "info"},
            port_mappings=[8080],
        )
    ]
    return TaskTemplate(family=family, containers=containers, **kwargs)


def make_spec(
    name: str = "web",
    cluster: str = "prod",
    desired_count: int = 2,
    template: Optional[TaskTemplate] = None,
    **kwargs
) -> ServiceSpec:
    return ServiceSpec(
        name=name,
        cluster=cluster,
        desired_count=desired_count,
        task_definition=template or make_template(family=name),
        **kwargs
    )


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def platform():
    return FakePlatformClient()


@pytest.fixture
def settings():
    return RolloutSettings(
        jitter=False,
        platform_retries=2,
        platform_retry_delay=1.0,
        platform_max_retry_delay=5.0,
    )
