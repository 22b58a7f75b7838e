"""Pydantic models for the service manifest schema."""

import math
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class FrozenModel(BaseModel):
    """Base for manifest models; inputs are immutable per invocation."""

    model_config = ConfigDict(frozen=True, extra="forbid")


class ContainerSpec(FrozenModel):
    """One container of a task definition."""

    name: str = Field(..., min_length=1, max_length=255)
    image: Optional[str] = Field(None, description="Image reference, ideally pinned by digest")
    cpu: Optional[int] = Field(None, ge=0)
    memory: Optional[int] = Field(None, ge=4)
    essential: bool = True
    command: List[str] = Field(default_factory=list)
    environment: Dict[str, str] = Field(default_factory=dict)
    port_mappings: List[int] = Field(default_factory=list)

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: Dict[str, str]) -> Dict[str, str]:
        """Validate environment variables."""
        for key in v:
            if not key:
                raise ValueError("Environment variable names must be non-empty")
        return v

    @field_validator("port_mappings")
    @classmethod
    def validate_ports(cls, v: List[int]) -> List[int]:
        """Validate container ports."""
        for port in v:
            if port < 1 or port > 65535:
                raise ValueError(f"Container port out of range: {port}")
        return v


class TaskTemplate(FrozenModel):
    """Desired task definition template."""

    family: str = Field(..., min_length=1, max_length=255, pattern="^[A-Za-z0-9_-]+$")
    containers: List[ContainerSpec] = Field(default_factory=list)
    cpu: Optional[str] = None
    memory: Optional[str] = None
    network_mode: Optional[str] = Field(None, pattern="^(bridge|host|awsvpc|none)$")
    execution_role_arn: Optional[str] = None
    task_role_arn: Optional[str] = None
    requires_compatibilities: List[str] = Field(default_factory=list)

    def images(self) -> List[str]:
        """Image references of all containers that declare one."""
        return [c.image for c in self.containers if c.image]


class DeploymentPolicy(FrozenModel):
    """How many tasks a rollout may add or take away at once."""

    max_surge_percent: int = Field(100, ge=0, le=100)
    max_unavailable_percent: int = Field(0, ge=0, le=100)

    @model_validator(mode="after")
    def validate_budget(self):
        """A rollout needs room to either add or remove tasks."""
        if self.max_surge_percent == 0 and self.max_unavailable_percent == 0:
            raise ValueError(
                "max_surge_percent and max_unavailable_percent cannot both be zero"
            )
        return self

    def surge_tasks(self, desired_count: int) -> int:
        """Extra tasks allowed above desired count (rounded up)."""
        return math.ceil(desired_count * self.max_surge_percent / 100)

    def unavailable_tasks(self, desired_count: int) -> int:
        """Tasks allowed below desired count (rounded down)."""
        return math.floor(desired_count * self.max_unavailable_percent / 100)

    @property
    def maximum_percent(self) -> int:
        return 100 + self.max_surge_percent

    @property
    def minimum_healthy_percent(self) -> int:
        return 100 - self.max_unavailable_percent


class ScalingPolicy(FrozenModel):
    """Bounds and step policy for desired count changes."""

    min_count: int = Field(0, ge=0)
    max_count: int = Field(100, ge=0)
    step_size: Optional[int] = Field(None, ge=1)
    step_timeout: float = Field(300.0, gt=0)
    poll_interval: float = Field(15.0, gt=0)

    @model_validator(mode="after")
    def validate_bounds(self):
        """Validate min/max ordering."""
        if self.min_count > self.max_count:
            raise ValueError(
                f"min_count ({self.min_count}) cannot exceed max_count ({self.max_count})"
            )
        return self

    def contains(self, count: int) -> bool:
        return self.min_count <= count <= self.max_count


class RolloutSettings(FrozenModel):
    """Polling, health and retry settings shared by all services."""

    cluster: Optional[str] = Field(None, description="Default cluster for services")
    poll_interval: float = Field(30.0, gt=0)
    max_poll_interval: float = Field(120.0, gt=0)
    backoff_multiplier: float = Field(1.5, ge=1.0)
    jitter: bool = True
    max_attempts: int = Field(40, ge=1)
    min_healthy_samples: int = Field(3, ge=1)
    sustain_window: float = Field(60.0, ge=0)
    crash_threshold: int = Field(3, ge=1)
    require_health_checks: bool = False
    timeout: float = Field(1800.0, gt=0)
    rollback_timeout: float = Field(900.0, gt=0)
    platform_retries: int = Field(5, ge=0)
    platform_retry_delay: float = Field(1.0, ge=0)
    platform_max_retry_delay: float = Field(20.0, ge=0)
    revision_lookup_limit: int = Field(25, ge=1, le=100)

    @model_validator(mode="after")
    def validate_intervals(self):
        """Validate poll interval ordering."""
        if self.poll_interval > self.max_poll_interval:
            raise ValueError("poll_interval cannot exceed max_poll_interval")
        return self


class ServiceSpec(FrozenModel):
    """Desired state of one ECS service."""

    name: str = Field(..., min_length=1, max_length=255)
    cluster: str = Field(..., min_length=1)
    task_definition: TaskTemplate
    desired_count: int = Field(..., ge=0)
    health_check_grace_period: float = Field(0.0, ge=0)
    deployment: DeploymentPolicy = Field(default_factory=DeploymentPolicy)
    scaling: ScalingPolicy = Field(default_factory=ScalingPolicy)

    @property
    def service_key(self) -> str:
        return f"{self.cluster}/{self.name}"
