"""Error taxonomy for reconciliation and platform operations."""

from typing import Optional, Dict, Any, List
from enum import Enum
from dataclasses import dataclass
from botocore.exceptions import (
    ClientError,
    NoCredentialsError,
    PartialCredentialsError,
    EndpointConnectionError,
    ConnectTimeoutError,
    ReadTimeoutError,
)
from ecs_manage.utils.logging import get_logger

logger = get_logger(__name__)


class ErrorCategory(Enum):
    """Categories of errors that can occur while managing services."""
    CONFIGURATION = "configuration"
    SPEC = "spec"
    PLATFORM = "platform"
    NETWORK = "network"
    CREDENTIAL = "credential"
    HEALTH = "health"
    TIMEOUT = "timeout"
    ROLLBACK = "rollback"
    SCALING = "scaling"
    STATE = "state"
    UNKNOWN = "unknown"


class ErrorSeverity(Enum):
    """Severity levels for errors."""
    ESCALATED = "escalated"  # Service left in an unknown state
    CRITICAL = "critical"  # Invocation cannot continue
    ERROR = "error"  # Step failed
    WARNING = "warning"  # Non-fatal issue
    INFO = "info"  # Informational message


@dataclass
class ErrorContext:
    """Context information for an error."""
    service: Optional[str] = None
    revision: Optional[str] = None
    operation: Optional[str] = None
    aws_service: Optional[str] = None
    aws_operation: Optional[str] = None
    error_code: Optional[str] = None
    request_id: Optional[str] = None
    additional_info: Optional[Dict[str, Any]] = None


class EcsManageError(Exception):
    """Base exception for ecs-manage errors."""

    category = ErrorCategory.UNKNOWN
    severity = ErrorSeverity.ERROR
    retryable = False

    def __init__(
        self,
        message: str,
        category: Optional[ErrorCategory] = None,
        severity: Optional[ErrorSeverity] = None,
        context: Optional[ErrorContext] = None,
        cause: Optional[Exception] = None,
        suggestions: Optional[List[str]] = None
    ):
        """Initialize error.

        Args:
            message: Human-readable error message
            category: Error category, defaults to the class category
            severity: Error severity, defaults to the class severity
            context: Additional context about the error
            cause: Original exception that caused this error
            suggestions: List of suggested fixes
        """
        super().__init__(message)
        self.message = message
        if category is not None:
            self.category = category
        if severity is not None:
            self.severity = severity
        self.context = context or ErrorContext()
        self.cause = cause
        self.suggestions = suggestions or []

    @property
    def kind(self) -> str:
        """Short taxonomy name, e.g. ``PlatformRejected``."""
        name = type(self).__name__
        return name[:-len('Error')] if name.endswith('Error') else name

    def to_user_message(self) -> str:
        """Convert error to user-friendly message.

        Returns:
            Formatted error message for display to user
        """
        lines = []

        lines.append(f"{self.severity.value.upper()}: {self.message}")

        if self.context.service:
            lines.append(f"   Service: {self.context.service}")
        if self.context.operation:
            lines.append(f"   Operation: {self.context.operation}")

        if self.cause:
            lines.append(f"   Cause: {str(self.cause)}")

        if self.suggestions:
            lines.append("\nSuggested fixes:")
            for i, suggestion in enumerate(self.suggestions, 1):
                lines.append(f"   {i}. {suggestion}")

        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for logging/serialization.

        Returns:
            Dictionary representation of the error
        """
        return {
            'kind': self.kind,
            'message': self.message,
            'category': self.category.value,
            'severity': self.severity.value,
            'retryable': self.retryable,
            'context': {
                'service': self.context.service,
                'revision': self.context.revision,
                'operation': self.context.operation,
                'aws_service': self.context.aws_service,
                'aws_operation': self.context.aws_operation,
                'error_code': self.context.error_code,
                'request_id': self.context.request_id,
                'additional_info': self.context.additional_info
            },
            'cause': str(self.cause) if self.cause else None,
            'suggestions': self.suggestions
        }


class ConfigurationError(EcsManageError):
    """Error in manifest file or settings."""
    category = ErrorCategory.CONFIGURATION
    severity = ErrorSeverity.CRITICAL


class CredentialError(EcsManageError):
    """Error related to AWS credentials."""
    category = ErrorCategory.CREDENTIAL
    severity = ErrorSeverity.CRITICAL


class StateError(EcsManageError):
    """Illegal rollout session transition or inconsistent snapshot."""
    category = ErrorCategory.STATE
    severity = ErrorSeverity.CRITICAL


class SpecInvalidError(EcsManageError):
    """Requested service spec is missing required fields."""
    category = ErrorCategory.SPEC
    severity = ErrorSeverity.CRITICAL


class PlatformUnavailableError(EcsManageError):
    """Transient platform failure (throttling, 5xx, connection)."""
    category = ErrorCategory.PLATFORM
    retryable = True


class PlatformRejectedError(EcsManageError):
    """Platform refused the request; retrying will not help."""
    category = ErrorCategory.PLATFORM


class HealthCheckFailedError(EcsManageError):
    """Deployed tasks never became healthy."""
    category = ErrorCategory.HEALTH


class TimeoutExceededError(EcsManageError):
    """Invocation deadline expired."""
    category = ErrorCategory.TIMEOUT


class RollbackFailedError(EcsManageError):
    """Rollback did not restore the service."""
    category = ErrorCategory.ROLLBACK
    severity = ErrorSeverity.ESCALATED


class OutOfBoundsError(EcsManageError):
    """Requested task count is outside the configured bounds."""
    category = ErrorCategory.SCALING
    severity = ErrorSeverity.CRITICAL


class ErrorHandler:
    """Handles and categorizes errors from AWS and other sources."""

    # AWS error codes that are worth retrying
    RETRYABLE_ERROR_CODES = {
        'RequestTimeout',
        'ServiceUnavailable',
        'ServiceUnavailableException',
        'ServerException',
        'ThrottlingException',
        'TooManyRequestsException',
        'RequestLimitExceeded',
        'Throttling',
        'RequestThrottled',
        'InternalError',
        'InternalFailure',
    }

    # Suggestions for the error codes ECS, ECR and ELBv2 commonly return
    AWS_ERROR_MAPPING = {
        'AccessDeniedException': {
            'category': ErrorCategory.CREDENTIAL,
            'message': 'Access denied - insufficient permissions',
            'suggestions': [
                'Check IAM policies attached to your user/role',
                'Verify you have ecs:UpdateService and ecs:RegisterTaskDefinition permissions',
            ]
        },
        'ExpiredTokenException': {
            'category': ErrorCategory.CREDENTIAL,
            'message': 'AWS session token has expired',
            'suggestions': [
                'Refresh your AWS session credentials',
                'Re-authenticate with your identity provider',
            ]
        },
        'ClusterNotFoundException': {
            'category': ErrorCategory.PLATFORM,
            'message': 'Cluster not found',
            'suggestions': [
                'Verify the cluster name and region',
                'Pass --region if the cluster is not in your default region',
            ]
        },
        'ServiceNotFoundException': {
            'category': ErrorCategory.PLATFORM,
            'message': 'Service not found',
            'suggestions': [
                'Verify the service exists in the cluster',
                'Create the service before managing it with ecs-manage',
            ]
        },
        'ServiceNotActiveException': {
            'category': ErrorCategory.PLATFORM,
            'message': 'Service is not active',
            'suggestions': [
                'The service may be draining or deleted',
            ]
        },
        'InvalidParameterException': {
            'category': ErrorCategory.SPEC,
            'message': 'Invalid parameter value',
            'suggestions': [
                'Check task definition and deployment settings against ECS limits',
                'Verify cpu/memory combinations are valid for the launch type',
            ]
        },
        'ClientException': {
            'category': ErrorCategory.PLATFORM,
            'message': 'Request rejected by ECS',
            'suggestions': [
                'Review the error message for the rejected field',
            ]
        },
        'ThrottlingException': {
            'category': ErrorCategory.PLATFORM,
            'message': 'API rate limit exceeded',
            'suggestions': [
                'Reduce --max-workers to lower request rate',
                'Automatic retry with backoff is enabled',
            ]
        },
        'ServerException': {
            'category': ErrorCategory.PLATFORM,
            'message': 'ECS service error',
            'suggestions': [
                'Check the AWS Service Health Dashboard',
                'Automatic retry with backoff is enabled',
            ]
        },
    }

    def __init__(self):
        """Initialize error handler."""
        self.logger = get_logger(__name__)

    def handle_exception(
        self,
        error: Exception,
        context: Optional[ErrorContext] = None
    ) -> EcsManageError:
        """Handle an exception and convert to EcsManageError.

        Args:
            error: The exception to handle
            context: Additional context about where the error occurred

        Returns:
            EcsManageError with categorization and suggestions
        """
        context = context or ErrorContext()

        if isinstance(error, EcsManageError):
            return error

        if isinstance(error, ClientError):
            return self._handle_aws_error(error, context)

        if isinstance(error, (NoCredentialsError, PartialCredentialsError)):
            return self._handle_credential_error(error, context)

        if isinstance(error, (
            EndpointConnectionError,
            ConnectTimeoutError,
            ReadTimeoutError,
            ConnectionError,
            TimeoutError,
        )):
            return self._handle_network_error(error, context)

        return EcsManageError(
            message=str(error),
            category=ErrorCategory.UNKNOWN,
            severity=ErrorSeverity.ERROR,
            context=context,
            cause=error,
            suggestions=['Check logs for more details']
        )

    def _handle_aws_error(
        self,
        error: ClientError,
        context: ErrorContext
    ) -> EcsManageError:
        """Handle AWS ClientError.

        Args:
            error: The ClientError
            context: Error context

        Returns:
            PlatformUnavailableError for retryable codes, otherwise
            PlatformRejectedError
        """
        error_code = error.response.get('Error', {}).get('Code', 'Unknown')
        error_message = error.response.get('Error', {}).get('Message', str(error))
        status_code = error.response.get('ResponseMetadata', {}).get('HTTPStatusCode', 0)

        context.error_code = error_code
        context.request_id = error.response.get('ResponseMetadata', {}).get('RequestId')
        context.aws_operation = context.aws_operation or getattr(error, 'operation_name', None)

        error_info = self.AWS_ERROR_MAPPING.get(error_code, {})
        message = f"{error_info.get('message', f'AWS Error ({error_code})')}: {error_message}"
        suggestions = list(error_info.get('suggestions', [
            'Check AWS documentation for this error code',
            f'AWS Request ID: {context.request_id}',
        ]))

        if error_code in self.RETRYABLE_ERROR_CODES or status_code >= 500:
            return PlatformUnavailableError(
                message,
                context=context,
                cause=error,
                suggestions=suggestions
            )

        return PlatformRejectedError(
            message,
            category=error_info.get('category', ErrorCategory.PLATFORM),
            context=context,
            cause=error,
            suggestions=suggestions
        )

    def _handle_credential_error(
        self,
        error: Exception,
        context: ErrorContext
    ) -> CredentialError:
        """Handle credential-related errors.

        Args:
            error: The credential error
            context: Error context

        Returns:
            CredentialError
        """
        if isinstance(error, NoCredentialsError):
            return CredentialError(
                message='No AWS credentials found',
                context=context,
                cause=error,
                suggestions=[
                    'Configure AWS credentials using: aws configure',
                    'Set AWS_ACCESS_KEY_ID and AWS_SECRET_ACCESS_KEY environment variables',
                    'Specify a profile with --profile flag'
                ]
            )

        return CredentialError(
            message='Incomplete AWS credentials',
            context=context,
            cause=error,
            suggestions=[
                'Ensure both access key ID and secret access key are provided',
                'Check credential configuration in ~/.aws/credentials',
            ]
        )

    def _handle_network_error(
        self,
        error: Exception,
        context: ErrorContext
    ) -> PlatformUnavailableError:
        """Handle network-related errors.

        Args:
            error: The network error
            context: Error context

        Returns:
            PlatformUnavailableError
        """
        return PlatformUnavailableError(
            message=f'Network error: {str(error)}',
            category=ErrorCategory.NETWORK,
            context=context,
            cause=error,
            suggestions=[
                'Check your network connectivity',
                'Verify AWS endpoints are reachable from this host',
            ]
        )

    def log_error(self, error: EcsManageError):
        """Log an error with appropriate level.

        Args:
            error: The error to log
        """
        log_message = error.to_user_message()

        if error.severity == ErrorSeverity.ESCALATED:
            self.logger.critical(log_message)
        elif error.severity in (ErrorSeverity.CRITICAL, ErrorSeverity.ERROR):
            self.logger.error(log_message)
        elif error.severity == ErrorSeverity.WARNING:
            self.logger.warning(log_message)
        else:
            self.logger.info(log_message)

        # Log full error details at debug level
        self.logger.debug(f"Error details: {error.to_dict()}")


# Global error handler instance
error_handler = ErrorHandler()
