"""Manifest configuration for ecs-manage."""

from .models import (
    ContainerSpec,
    TaskTemplate,
    DeploymentPolicy,
    ScalingPolicy,
    RolloutSettings,
    ServiceSpec,
)
from .parser import Config, ConfigValidationError, DEFAULT_MANIFEST

__all__ = [
    "ContainerSpec",
    "TaskTemplate",
    "DeploymentPolicy",
    "ScalingPolicy",
    "RolloutSettings",
    "ServiceSpec",
    "Config",
    "ConfigValidationError",
    "DEFAULT_MANIFEST",
]
