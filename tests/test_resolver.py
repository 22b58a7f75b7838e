import pytest

from conftest import make_spec, make_template
from ecs_manage.config.models import ContainerSpec, TaskTemplate
from ecs_manage.orchestrator.resolver import (
    TaskDefinitionResolver,
    compute_content_hash,
    validate_template,
)
from ecs_manage.utils.errors import (
    PlatformRejectedError,
    PlatformUnavailableError,
    SpecInvalidError,
)
from ecs_manage.utils.retry import RetryStrategy

APP = ContainerSpec(name="app", image="repo/app:1", environment={"A": "1", "B": "2"}, port_mappings=[80, 443])
SIDECAR = ContainerSpec(name="sidecar", image="repo/envoy:1.27")


@pytest.fixture
def resolver(platform, clock):
    return TaskDefinitionResolver(platform, RetryStrategy(max_retries=3, jitter=False, clock=clock))


# ---------------------------------------------------------------------
# Content hash
# ---------------------------------------------------------------------

def test_hash_ignores_container_and_environment_order():
    reordered_app = ContainerSpec(
        name="app", image="repo/app:1", environment={"B": "2", "A": "1"}, port_mappings=[443, 80]
    )
    first = make_template(containers=[APP, SIDECAR])
    second = make_template(containers=[SIDECAR, reordered_app])

    assert compute_content_hash(first) == compute_content_hash(second)


def test_hash_changes_with_image_digest():
    old = make_template(image="repo/web@sha256:0001")
    new = make_template(image="repo/web@sha256:0002")

    assert compute_content_hash(old) != compute_content_hash(new)


def test_template_without_containers_is_invalid():
    with pytest.raises(SpecInvalidError):
        validate_template(TaskTemplate(family="web"))


def test_container_without_image_is_invalid():
    template = make_template(containers=[ContainerSpec(name="app")])

    with pytest.raises(SpecInvalidError) as exc:
        validate_template(template)

    assert "app" in exc.value.message


# ---------------------------------------------------------------------
# Reuse and registration
# ---------------------------------------------------------------------

def test_reuses_most_recent_matching_revision(platform, resolver):
    spec = make_spec()
    platform.add_revision(spec.task_definition, revision=1)
    platform.add_revision(make_template(image="repo/web:other"), revision=2)
    platform.add_revision(spec.task_definition, revision=3)

    revision = resolver.resolve(spec, platform.list_task_definition_revisions("web", 25))

    assert revision.key == "web:3"
    assert platform.calls_to("register_task_definition") == []


def test_prefers_revision_the_service_runs(platform, resolver):
    spec = make_spec()
    platform.add_revision(spec.task_definition, revision=1)
    platform.add_revision(spec.task_definition, revision=2)

    revision = resolver.resolve(spec, platform.list_task_definition_revisions("web", 25), prefer="web:1")

    assert revision.key == "web:1"


def test_untagged_revision_matches_by_template(platform, resolver):
    spec = make_spec()
    platform.add_revision(spec.task_definition, revision=7, tagged=False)

    revision = resolver.resolve(spec, platform.list_task_definition_revisions("web", 25))

    assert revision.key == "web:7"


def test_registers_new_content_with_its_hash(platform, resolver):
    spec = make_spec()
    platform.add_revision(make_template(image="repo/web:old"), revision=4)

    revision = resolver.resolve(spec, platform.list_task_definition_revisions("web", 25))

    assert revision.key == "web:5"
    calls = platform.calls_to("register_task_definition")
    assert len(calls) == 1
    assert calls[0]["content_hash"] == compute_content_hash(spec.task_definition)
    assert resolver.registrations == [revision]


def test_same_content_registered_once_per_invocation(platform, resolver):
    spec = make_spec()

    first = resolver.resolve(spec, [])
    second = resolver.resolve(spec, [])

    assert first == second
    assert len(platform.calls_to("register_task_definition")) == 1


def test_failed_registration_that_landed_is_reused(platform, resolver):
    spec = make_spec()
    register = platform.register_task_definition

    def lands_then_times_out(template, content_hash):
        register(template, content_hash)
        raise PlatformUnavailableError("Read timeout on endpoint URL")

    platform.register_task_definition = lands_then_times_out

    revision = resolver.resolve(
        spec, [], refresh=lambda: platform.list_task_definition_revisions("web", 25)
    )

    assert revision.key == "web:1"
    assert len(platform.calls_to("register_task_definition")) == 1
    assert resolver.registrations == [revision]


def test_transient_registration_failure_is_retried(platform, resolver, clock):
    spec = make_spec()
    platform.fail("register_task_definition", PlatformUnavailableError("Throttling"))

    revision = resolver.resolve(
        spec, [], refresh=lambda: platform.list_task_definition_revisions("web", 25)
    )

    assert revision.key == "web:1"
    assert len(platform.calls_to("register_task_definition")) == 2
    assert clock.sleeps == [1.0]


def test_rejected_registration_propagates(platform, resolver):
    platform.fail("register_task_definition", PlatformRejectedError("Invalid memory"))

    with pytest.raises(PlatformRejectedError):
        resolver.resolve(make_spec(), [])
