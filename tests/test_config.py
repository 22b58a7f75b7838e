import textwrap

import pytest
from pydantic import ValidationError

from ecs_manage.config import (
    Config,
    ConfigValidationError,
    DeploymentPolicy,
    RolloutSettings,
    ScalingPolicy,
)


MANIFEST = """
settings:
  cluster: prod
  poll_interval: 10
  max_poll_interval: 60
  timeout: 900

services:
  - name: web
    desired_count: 3
    health_check_grace_period: 60
    task_definition:
      cpu: "256"
      memory: "512"
      network_mode: awsvpc
      containers:
        - name: app
          image: 123456789012.dkr.ecr.us-east-1.amazonaws.com/web@sha256:abcd
          port_mappings: [8080]
          environment:
            LOG_LEVEL: info
    deployment:
      max_surge_percent: 50
      max_unavailable_percent: 0
    scaling:
      min_count: 2
      max_count: 10
      step_size: 2

  - name: worker
    cluster: batch
    desired_count: 1
    task_definition:
      family: worker-task
      containers:
        - name: worker
          image: repo/worker:1.4
"""


def write(tmp_path, content):
    path = tmp_path / "ecs-manage.yaml"
    path.write_text(textwrap.dedent(content))
    return path


def test_load_manifest(tmp_path):
    config = Config(str(write(tmp_path, MANIFEST))).load()

    assert config.settings.poll_interval == 10
    assert config.settings.timeout == 900
    assert [s.service_key for s in config.services] == ["prod/web", "batch/worker"]

    web = config.get_service("web")
    assert web.task_definition.family == "web"
    assert web.task_definition.containers[0].environment == {"LOG_LEVEL": "info"}
    assert web.deployment.max_surge_percent == 50
    assert web.scaling.step_size == 2
    assert config.get_service("batch/worker").task_definition.family == "worker-task"


def test_select_by_name(tmp_path):
    config = Config(str(write(tmp_path, MANIFEST))).load()

    assert [s.name for s in config.select()] == ["web", "worker"]
    assert [s.name for s in config.select(["worker"])] == ["worker"]
    with pytest.raises(KeyError):
        config.select(["missing"])


def test_missing_manifest(tmp_path):
    with pytest.raises(FileNotFoundError):
        Config(str(tmp_path / "nope.yaml")).load()


def test_invalid_yaml(tmp_path):
    path = write(tmp_path, "services: [unclosed\n")

    with pytest.raises(ConfigValidationError) as exc:
        Config(str(path)).load()

    assert "Failed to parse YAML" in str(exc.value)


def test_missing_services():
    with pytest.raises(ConfigValidationError) as exc:
        Config.from_dict({"settings": {}})

    assert any(e["loc"] == ["services"] for e in exc.value.errors)


def test_errors_are_located_per_service():
    data = {
        "services": [
            {"name": "web", "cluster": "prod", "desired_count": -1,
             "task_definition": {"containers": [{"name": "app", "image": "repo/web:1"}]}},
            {"name": "api", "desired_count": 1,
             "task_definition": {"containers": [{"name": "app", "image": "repo/api:1"}]}},
        ]
    }

    with pytest.raises(ConfigValidationError) as exc:
        Config.from_dict(data)

    locations = [tuple(e["loc"][:3]) for e in exc.value.errors]
    assert ("services", 0, "desired_count") in locations
    assert ("services", 1, "cluster") in locations
    assert "services -> 0 -> desired_count" in str(exc.value)


def test_unknown_fields_are_rejected():
    data = {
        "services": [
            {"name": "web", "cluster": "prod", "desired_count": 1, "replicas": 3,
             "task_definition": {"containers": [{"name": "app", "image": "repo/web:1"}]}},
        ]
    }

    with pytest.raises(ConfigValidationError):
        Config.from_dict(data)


def test_duplicate_services_are_rejected():
    service = {"name": "web", "cluster": "prod", "desired_count": 1,
               "task_definition": {"containers": [{"name": "app", "image": "repo/web:1"}]}}

    with pytest.raises(ConfigValidationError) as exc:
        Config.from_dict({"services": [service, dict(service)]})

    assert "defined more than once" in str(exc.value)


# ---------------------------------------------------------------------
# Policies
# ---------------------------------------------------------------------

@pytest.mark.parametrize("desired,surge,unavailable", [
    (3, 2, 1),
    (4, 2, 2),
    (1, 1, 0),
    (0, 0, 0),
])
def test_deployment_budget_rounding(desired, surge, unavailable):
    policy = DeploymentPolicy(max_surge_percent=50, max_unavailable_percent=50)

    assert policy.surge_tasks(desired) == surge
    assert policy.unavailable_tasks(desired) == unavailable


def test_deployment_policy_needs_a_budget():
    with pytest.raises(ValidationError):
        DeploymentPolicy(max_surge_percent=0, max_unavailable_percent=0)


def test_scaling_bounds_ordering():
    with pytest.raises(ValidationError):
        ScalingPolicy(min_count=5, max_count=2)

    policy = ScalingPolicy(min_count=1, max_count=4)
    assert policy.contains(1) and policy.contains(4)
    assert not policy.contains(0) and not policy.contains(5)


def test_poll_interval_cannot_exceed_max():
    with pytest.raises(ValidationError):
        RolloutSettings(poll_interval=200, max_poll_interval=120)
