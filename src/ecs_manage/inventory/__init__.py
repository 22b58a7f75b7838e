"""Cluster-wide service inventory."""

from ecs_manage.inventory.services import (
    INVALID_IMAGES,
    INVALID_TARGET_GROUPS,
    LESS_THAN_DESIRED,
    AuditResult,
    BulkUpdateResult,
    ServiceInventory,
    ServiceProperty,
    SyncResult,
    service_role,
)

__all__ = [
    'INVALID_IMAGES',
    'INVALID_TARGET_GROUPS',
    'LESS_THAN_DESIRED',
    'AuditResult',
    'BulkUpdateResult',
    'ServiceInventory',
    'ServiceProperty',
    'SyncResult',
    'service_role',
]
