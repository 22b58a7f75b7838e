"""Utility modules for logging, AWS client management, and helpers."""

from ecs_manage.utils.aws_client import AWSClientManager, AWSCredentials
from ecs_manage.utils.clock import Clock, SystemClock, Deadline
from ecs_manage.utils.retry import RetryStrategy
from ecs_manage.utils.errors import (
    ErrorCategory,
    ErrorSeverity,
    ErrorContext,
    EcsManageError,
    ConfigurationError,
    CredentialError,
    StateError,
    SpecInvalidError,
    PlatformUnavailableError,
    PlatformRejectedError,
    HealthCheckFailedError,
    TimeoutExceededError,
    RollbackFailedError,
    OutOfBoundsError,
    ErrorHandler,
    error_handler
)
from ecs_manage.utils.logging import get_logger, setup_logging, LogContext

__all__ = [
    # AWS Client
    'AWSClientManager',
    'AWSCredentials',

    # Time
    'Clock',
    'SystemClock',
    'Deadline',

    # Retry
    'RetryStrategy',

    # Errors
    'ErrorCategory',
    'ErrorSeverity',
    'ErrorContext',
    'EcsManageError',
    'ConfigurationError',
    'CredentialError',
    'StateError',
    'SpecInvalidError',
    'PlatformUnavailableError',
    'PlatformRejectedError',
    'HealthCheckFailedError',
    'TimeoutExceededError',
    'RollbackFailedError',
    'OutOfBoundsError',
    'ErrorHandler',
    'error_handler',

    # Logging
    'get_logger',
    'setup_logging',
    'LogContext',
]
