import json

import pytest

from conftest import crashed_task, make_spec, make_template
from ecs_manage.config.models import ScalingPolicy
from ecs_manage.orchestrator.driver import (
    OutcomeStatus,
    ReconciliationDriver,
    ReconciliationOutcome,
    overall_exit_code,
)
from ecs_manage.orchestrator.rollout import RolloutPhase
from ecs_manage.utils.errors import (
    OutOfBoundsError,
    PlatformRejectedError,
    RollbackFailedError,
    SpecInvalidError,
)

OLD_IMAGE = "123456789012.dkr.ecr.us-east-1.amazonaws.com/web@sha256:0001"
NEW_IMAGE = "123456789012.dkr.ecr.us-east-1.amazonaws.com/web@sha256:0002"


@pytest.fixture
def driver(platform, clock, settings):
    return ReconciliationDriver(platform, settings, clock=clock)


def deployed(platform, desired=2):
    """A running web service on revision 1 with the old image."""
    service_id = platform.add_service(revision="web:1", desired_count=desired)
    platform.add_revision(make_template(image=OLD_IMAGE), revision=1)
    return service_id


def updates(platform):
    return [(c["revision"], c["desired_count"]) for c in platform.calls_to("update_service")]


# ---------------------------------------------------------------------
# Single service
# ---------------------------------------------------------------------

def test_matching_service_is_left_alone(platform, driver):
    deployed(platform, desired=5)
    spec = make_spec(desired_count=5, template=make_template(image=OLD_IMAGE))

    outcome = driver.reconcile(spec)

    assert outcome.status == OutcomeStatus.SUCCESS
    assert outcome.reason == "already up to date"
    assert outcome.revision == "web:1"
    assert outcome.exit_code == 0
    assert platform.calls_to("update_service") == []
    assert platform.calls_to("register_task_definition") == []


def test_image_change_registers_and_rolls_out(platform, driver):
    deployed(platform)
    spec = make_spec(template=make_template(image=NEW_IMAGE))

    outcome = driver.reconcile(spec)

    assert outcome.status == OutcomeStatus.SUCCESS
    assert outcome.phase == RolloutPhase.SUCCEEDED
    assert outcome.revision == "web:2"
    assert outcome.previous_revision == "web:1"
    assert outcome.actions == ["registered web:2", "rolled out web:2"]
    assert len(platform.calls_to("register_task_definition")) == 1
    assert updates(platform) == [("web:2", 2)]


def test_crashing_revision_is_rolled_back(platform, driver):
    deployed(platform)
    platform.script("web:2", *[[crashed_task(f"c{i}", "web:2")] for i in range(5)])

    outcome = driver.reconcile(make_spec(template=make_template(image=NEW_IMAGE)))

    assert outcome.status == OutcomeStatus.ROLLED_BACK
    assert outcome.exit_code == 2
    assert outcome.revision == "web:1"
    assert outcome.reason == "health check failed, rolled back"
    assert outcome.actions[-1] == "rolled back to web:1"
    assert updates(platform) == [("web:2", 2), ("web:1", 2)]


def test_failed_rollback_is_escalated(platform, driver):
    deployed(platform)
    platform.script("web:2", *[[crashed_task(f"c{i}", "web:2")] for i in range(5)])
    platform.fail("update_service", None, PlatformRejectedError("AccessDenied"))

    outcome = driver.reconcile(make_spec(template=make_template(image=NEW_IMAGE)))

    assert outcome.status == OutcomeStatus.ROLLBACK_FAILED
    assert outcome.exit_code == 3
    assert outcome.escalated
    assert outcome.revision is None
    assert isinstance(outcome.error, RollbackFailedError)


def test_rollout_then_scale(platform, driver):
    deployed(platform, desired=2)
    spec = make_spec(desired_count=4, template=make_template(image=NEW_IMAGE))

    outcome = driver.reconcile(spec)

    assert outcome.status == OutcomeStatus.SUCCESS
    assert updates(platform) == [("web:2", 2), (None, 4)]
    assert outcome.initial_count == 2
    assert outcome.desired_count == 4
    assert outcome.actions == ["registered web:2", "rolled out web:2", "scaled to 4"]


def test_count_change_only_scales(platform, driver):
    deployed(platform, desired=2)
    spec = make_spec(desired_count=3, template=make_template(image=OLD_IMAGE))

    outcome = driver.reconcile(spec)

    assert outcome.status == OutcomeStatus.SUCCESS
    assert outcome.phase is None
    assert updates(platform) == [(None, 3)]


def test_out_of_bounds_count_fails_before_any_call(platform, driver):
    deployed(platform)
    spec = make_spec(desired_count=20, scaling=ScalingPolicy(max_count=10))

    outcome = driver.reconcile(spec)

    assert outcome.status == OutcomeStatus.FAILED
    assert isinstance(outcome.error, OutOfBoundsError)
    assert platform.calls == []


def test_rejected_describe_fails(platform, driver):
    deployed(platform)
    platform.fail("describe_service", PlatformRejectedError("Service not found"))

    outcome = driver.reconcile(make_spec())

    assert outcome.status == OutcomeStatus.FAILED
    assert outcome.exit_code == 1
    assert outcome.reason == "Service not found"
    assert platform.calls_to("update_service") == []


def test_outcome_serializes_to_json(platform, driver):
    deployed(platform)

    outcome = driver.reconcile(make_spec(template=make_template(image=NEW_IMAGE)))
    payload = json.loads(json.dumps(outcome.to_dict()))

    assert payload["service"] == "prod/web"
    assert payload["status"] == "success"
    assert payload["phase"] == "succeeded"
    assert payload["error"] is None


# ---------------------------------------------------------------------
# Many services
# ---------------------------------------------------------------------

def test_reconcile_all_keeps_request_order(platform, driver):
    deployed(platform)
    platform.add_service(name="api", revision="api:1")
    platform.add_revision(make_template(family="api"), revision=1)
    specs = [
        make_spec(template=make_template(image=NEW_IMAGE)),
        make_spec(name="api"),
    ]
    completed = []

    outcomes = driver.reconcile_all(specs, max_workers=2, callback=completed.append)

    assert [o.service_id for o in outcomes] == ["prod/web", "prod/api"]
    assert all(o.is_success() for o in outcomes)
    assert outcomes[1].reason == "already up to date"
    assert sorted(o.service_id for o in completed) == ["prod/api", "prod/web"]


def test_duplicate_services_are_rejected(platform, driver):
    with pytest.raises(SpecInvalidError):
        driver.reconcile_all([make_spec(), make_spec()])

    assert platform.calls == []


def test_no_specs_is_a_noop(driver):
    assert driver.reconcile_all([]) == []


# ---------------------------------------------------------------------
# Scale
# ---------------------------------------------------------------------

def test_scale_in_steps(platform, driver):
    service_id = deployed(platform, desired=2)

    outcome = driver.scale(service_id, 5, ScalingPolicy(step_size=2))

    assert outcome.status == OutcomeStatus.SUCCESS
    assert outcome.actions == ["scaled to 4", "scaled to 5"]
    assert updates(platform) == [(None, 4), (None, 5)]


def test_scale_out_of_bounds(platform, driver):
    service_id = deployed(platform)

    outcome = driver.scale(service_id, 50, ScalingPolicy(max_count=10))

    assert outcome.status == OutcomeStatus.FAILED
    assert isinstance(outcome.error, OutOfBoundsError)
    assert platform.calls == []


# ---------------------------------------------------------------------
# Exit codes
# ---------------------------------------------------------------------

def test_overall_exit_code_is_most_severe():
    def outcome(status):
        return ReconciliationOutcome(service_id="prod/web", status=status)

    assert overall_exit_code([]) == 0
    assert overall_exit_code([outcome(OutcomeStatus.SUCCESS)]) == 0
    assert overall_exit_code([
        outcome(OutcomeStatus.SUCCESS),
        outcome(OutcomeStatus.ROLLED_BACK),
        outcome(OutcomeStatus.FAILED),
    ]) == 2
    assert overall_exit_code([
        outcome(OutcomeStatus.ROLLBACK_FAILED),
        outcome(OutcomeStatus.ROLLED_BACK),
    ]) == 3
