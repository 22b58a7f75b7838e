"""AWS client management and session handling."""

import threading
from dataclasses import dataclass
from typing import Optional, Dict, Any

import boto3
from botocore.config import Config

from ecs_manage.utils.errors import error_handler, ErrorContext
from ecs_manage.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class AWSCredentials:
    """AWS credential information."""
    account_id: str
    user_arn: str
    region: str
    profile: Optional[str] = None


class AWSClientManager:
    """Manages a boto3 session and thread-safe cached clients."""

    def __init__(
        self,
        profile: Optional[str] = None,
        region: Optional[str] = None,
        max_pool_connections: int = 50,
        max_attempts: int = 3
    ):
        """Initialize AWS client manager.

        Args:
            profile: AWS profile name to use
            region: AWS region to use
            max_pool_connections: Maximum number of connections in the connection pool
            max_attempts: Attempts botocore makes before surfacing an error
        """
        self.profile = profile
        self.region = region
        self.max_pool_connections = max_pool_connections
        self._session: Optional[boto3.Session] = None
        self._clients: Dict[str, Any] = {}
        self._credentials: Optional[AWSCredentials] = None
        self._lock = threading.Lock()

        # Adaptive mode rate-limits the shared clients when several services
        # are reconciled at once; our own RetryStrategy handles what is left
        self._boto_config = Config(
            max_pool_connections=max_pool_connections,
            retries={
                'mode': 'adaptive',
                'max_attempts': max_attempts
            },
            connect_timeout=10,
            read_timeout=60
        )

    @property
    def session(self) -> boto3.Session:
        """Get or create boto3 session.

        Returns:
            Configured boto3 session
        """
        with self._lock:
            if self._session is None:
                kwargs = {}
                if self.profile:
                    kwargs['profile_name'] = self.profile
                if self.region:
                    kwargs['region_name'] = self.region

                self._session = boto3.Session(**kwargs)
                logger.info(f"Created AWS session - Region: {self._session.region_name}, "
                            f"Profile: {self.profile or 'default'}")

            return self._session

    def get_client(self, service_name: str):
        """Get a cached boto3 client for a service.

        Args:
            service_name: AWS service name (e.g., 'ecs', 'ecr', 'elbv2')

        Returns:
            Boto3 client for the service
        """
        session = self.session

        with self._lock:
            client = self._clients.get(service_name)
            if client is None:
                client = session.client(service_name, config=self._boto_config)
                self._clients[service_name] = client
                logger.debug(f"Created {service_name} client")

            return client

    def validate_credentials(self) -> AWSCredentials:
        """Validate AWS credentials and return credential information.

        Returns:
            AWSCredentials object with account and user information

        Raises:
            CredentialError: If no credentials are found or they are incomplete
            PlatformRejectedError: If credentials are rejected by STS
        """
        if self._credentials is not None:
            return self._credentials

        try:
            identity = self.get_client('sts').get_caller_identity()
        except Exception as e:
            error = error_handler.handle_exception(
                e, ErrorContext(operation='validate_credentials', aws_service='sts')
            )
            error_handler.log_error(error)
            raise error from e

        self._credentials = AWSCredentials(
            account_id=identity['Account'],
            user_arn=identity['Arn'],
            region=self.session.region_name,
            profile=self.profile
        )

        logger.info(f"AWS credentials validated - Account: {self._credentials.account_id}, "
                    f"User: {self._credentials.user_arn}, Region: {self._credentials.region}")

        return self._credentials
