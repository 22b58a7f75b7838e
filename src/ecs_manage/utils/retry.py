"""Retry strategy with exponential backoff for platform operations."""

import copy
import random
from typing import Callable, TypeVar, Optional

from ecs_manage.utils.clock import Clock, Deadline, SystemClock
from ecs_manage.utils.errors import EcsManageError, error_handler
from ecs_manage.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar('T')


class RetryStrategy:
    """Implements capped exponential backoff for transient errors.

    Only errors classified as retryable (``PlatformUnavailableError`` and
    anything the error handler maps onto it) are retried. Sleeping goes
    through the injected clock, so tests never wait in real time.
    """

    def __init__(
        self,
        max_retries: int = 5,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        clock: Optional[Clock] = None,
        deadline: Optional[Deadline] = None
    ):
        """Initialize retry strategy.

        Args:
            max_retries: Maximum number of retry attempts
            base_delay: Base delay in seconds for first retry
            max_delay: Maximum delay in seconds between retries
            exponential_base: Base for exponential backoff calculation
            jitter: Whether to add random jitter to delay
            clock: Time source used for sleeping
            deadline: Optional deadline that stops retrying early
        """
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.clock = clock or SystemClock()
        self.deadline = deadline

    def with_deadline(self, deadline: Optional[Deadline]) -> 'RetryStrategy':
        """Return a copy of this strategy bounded by ``deadline``."""
        strategy = copy.copy(self)
        strategy.deadline = deadline
        return strategy

    def should_retry(self, error: Exception, attempt: int) -> bool:
        """Determine if an error should trigger a retry.

        Args:
            error: The exception that occurred
            attempt: Current attempt number (0-indexed)

        Returns:
            True if the error is retryable and max retries not exceeded
        """
        if attempt >= self.max_retries:
            return False

        if self.deadline is not None and self.deadline.expired():
            return False

        return bool(getattr(error, 'retryable', False))

    def get_delay(self, attempt: int) -> float:
        """Calculate delay before next retry using exponential backoff.

        Args:
            attempt: Current attempt number (0-indexed)

        Returns:
            Delay in seconds before next retry
        """
        delay = min(
            self.base_delay * (self.exponential_base ** attempt),
            self.max_delay
        )

        # Add jitter if enabled (random value between 0 and 10% of delay)
        if self.jitter:
            jitter_amount = random.uniform(0, delay * 0.1)
            delay += jitter_amount

        return delay

    def sleep(self, delay: float) -> bool:
        """Sleep through the clock, honouring the deadline.

        Returns:
            True if the sleep was cut short by the deadline
        """
        if self.deadline is not None:
            return self.deadline.sleep(delay)
        return self.clock.sleep(delay)

    def execute_with_retry(
        self,
        func: Callable[..., T],
        *args,
        **kwargs
    ) -> T:
        """Execute a function with retry logic.

        Args:
            func: Function to execute
            *args: Positional arguments for the function
            **kwargs: Keyword arguments for the function

        Returns:
            Result of the function call

        Raises:
            EcsManageError: The last error once retries are exhausted or the
                error is not retryable
        """
        attempt = 0

        while True:
            try:
                result = func(*args, **kwargs)

                if attempt > 0:
                    logger.info(f"Operation succeeded after {attempt} retries")

                return result

            except Exception as e:
                error = error_handler.handle_exception(e)

                if not self.should_retry(error, attempt):
                    if error.retryable:
                        logger.error(f"Giving up after {attempt + 1} attempts: {error.message}")
                    else:
                        logger.debug(f"Error is not retryable: {error.message}")
                    if error is e:
                        raise
                    raise error from e

                delay = self.get_delay(attempt)
                logger.warning(
                    f"Attempt {attempt + 1}/{self.max_retries + 1} failed: "
                    f"{self._get_error_info(error)}. Retrying in {delay:.2f}s..."
                )

                self.sleep(delay)
                attempt += 1

    def _get_error_info(self, error: EcsManageError) -> str:
        """Extract useful error information for logging.

        Args:
            error: The exception

        Returns:
            Human-readable error description
        """
        if error.context.error_code:
            return f"{error.context.error_code}: {error.message}"

        return f"{error.kind}: {error.message}"
