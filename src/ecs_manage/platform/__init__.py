"""Platform client contract and its ECS implementation."""

from ecs_manage.platform.base import DeploymentLimits, PlatformClient, UpdateAck
from ecs_manage.platform.ecs import EcsPlatformClient, CONTENT_HASH_TAG

__all__ = [
    'DeploymentLimits',
    'PlatformClient',
    'UpdateAck',
    'EcsPlatformClient',
    'CONTENT_HASH_TAG',
]
