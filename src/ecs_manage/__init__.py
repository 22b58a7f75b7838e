"""ecs-manage: reconcile ECS services with their declared state."""

__version__ = "0.1.1"
