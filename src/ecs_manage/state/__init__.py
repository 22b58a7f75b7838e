"""Service snapshot models.

The fetcher lives in ``ecs_manage.state.fetcher``; it depends on the
platform contract, which itself is expressed in these models.
"""

from ecs_manage.state.models import (
    ServiceId,
    TaskDefinitionRevision,
    TaskHealth,
    ServiceDeployment,
    ServiceState,
    revision_key,
)

__all__ = [
    'ServiceId',
    'TaskDefinitionRevision',
    'TaskHealth',
    'ServiceDeployment',
    'ServiceState',
    'revision_key',
]
