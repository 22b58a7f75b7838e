"""Reconciliation engine: resolution, rollout, scaling and the driver."""

from ecs_manage.orchestrator.resolver import (
    TaskDefinitionResolver,
    compute_content_hash,
    normalize_template,
    validate_template,
)
from ecs_manage.orchestrator.health import HealthSample, SampleVerdict, evaluate_sample
from ecs_manage.orchestrator.rollout import (
    TRANSITIONS,
    RollbackTrigger,
    RolloutController,
    RolloutPhase,
    RolloutSession,
)
from ecs_manage.orchestrator.scaling import (
    ScalingController,
    ScalingResult,
    ScalingStep,
    check_bounds,
    plan_steps,
)
from ecs_manage.orchestrator.driver import (
    OutcomeStatus,
    ReconciliationDriver,
    ReconciliationOutcome,
    overall_exit_code,
)

__all__ = [
    'TaskDefinitionResolver',
    'compute_content_hash',
    'normalize_template',
    'validate_template',
    'HealthSample',
    'SampleVerdict',
    'evaluate_sample',
    'TRANSITIONS',
    'RollbackTrigger',
    'RolloutController',
    'RolloutPhase',
    'RolloutSession',
    'ScalingController',
    'ScalingResult',
    'ScalingStep',
    'check_bounds',
    'plan_steps',
    'OutcomeStatus',
    'ReconciliationDriver',
    'ReconciliationOutcome',
    'overall_exit_code',
]
