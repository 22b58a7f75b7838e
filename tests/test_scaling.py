import pytest

from ecs_manage.config.models import ScalingPolicy
from ecs_manage.orchestrator.scaling import ScalingController, plan_steps
from ecs_manage.utils.clock import Deadline
from ecs_manage.utils.errors import OutOfBoundsError, PlatformRejectedError, TimeoutExceededError
from ecs_manage.utils.retry import RetryStrategy


@pytest.fixture
def scaler(platform, clock):
    return ScalingController(platform, clock, retry_strategy=RetryStrategy(jitter=False, clock=clock))


def counts(platform):
    return [c["desired_count"] for c in platform.calls_to("update_service")]


@pytest.mark.parametrize("current,target,step,expected", [
    (2, 7, 2, [4, 6, 7]),
    (7, 2, 2, [5, 3, 2]),
    (2, 7, None, [7]),
    (0, 3, 5, [3]),
    (3, 3, 2, []),
])
def test_plan_steps(current, target, step, expected):
    assert plan_steps(current, target, step) == expected


def test_out_of_bounds_target_makes_no_calls(platform, scaler):
    service_id = platform.add_service(desired_count=2)

    with pytest.raises(OutOfBoundsError):
        scaler.scale(service_id, 2, 20, ScalingPolicy(max_count=10))

    assert platform.calls == []


def test_target_equal_to_current_is_a_noop(platform, scaler):
    service_id = platform.add_service(desired_count=3)

    result = scaler.scale(service_id, 3, 3, ScalingPolicy())

    assert result.success
    assert result.steps == []
    assert platform.calls == []


def test_scales_in_bounded_steps(platform, scaler):
    service_id = platform.add_service(desired_count=2)

    result = scaler.scale(service_id, 2, 7, ScalingPolicy(step_size=2))

    assert result.success
    assert counts(platform) == [4, 6, 7]
    assert [step.stabilized for step in result.steps] == [True, True, True]
    assert all(c["revision"] is None for c in platform.calls_to("update_service"))


def test_unstabilized_step_is_recorded_and_scaling_continues(platform, scaler, clock):
    service_id = platform.add_service(desired_count=2)
    platform.script_counts(service_id, (2, 1))

    result = scaler.scale(
        service_id, 2, 6, ScalingPolicy(step_size=2, step_timeout=60, poll_interval=15)
    )

    assert counts(platform) == [4, 6]
    assert result.unstabilized_steps == [4, 6]
    assert result.final_count == 6
    assert result.error is None
    assert clock.sleeps == [15.0] * 8


def test_rejected_update_stops_with_partial_progress(platform, scaler):
    service_id = platform.add_service(desired_count=2)
    platform.fail("update_service", None, PlatformRejectedError("Service is draining"))

    result = scaler.scale(service_id, 2, 7, ScalingPolicy(step_size=2))

    assert not result.success
    assert result.final_count == 4
    assert isinstance(result.error, PlatformRejectedError)


def test_deadline_expiry_stops_between_polls(platform, scaler, clock):
    service_id = platform.add_service(desired_count=2)
    platform.script_counts(service_id, (2, 2))

    result = scaler.scale(
        service_id, 2, 4, ScalingPolicy(poll_interval=15), Deadline(clock, 20)
    )

    assert isinstance(result.error, TimeoutExceededError)
    assert clock.sleeps == [15.0, 5.0]
