"""Time source and deadlines used by every suspend point."""

import threading
import time
from typing import Optional


class Clock:
    """Monotonic time source with an interruptible sleep."""

    def now(self) -> float:
        """Return monotonic seconds."""
        raise NotImplementedError

    def sleep(self, seconds: float, cancel_event: Optional[threading.Event] = None) -> bool:
        """Sleep for ``seconds`` or until ``cancel_event`` is set.

        Returns:
            True if the sleep was interrupted by cancellation
        """
        raise NotImplementedError


class SystemClock(Clock):
    """Wall-clock implementation backed by ``time.monotonic``."""

    def now(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float, cancel_event: Optional[threading.Event] = None) -> bool:
        if seconds <= 0:
            return bool(cancel_event and cancel_event.is_set())
        if cancel_event is None:
            time.sleep(seconds)
            return False
        return cancel_event.wait(seconds)


class Deadline:
    """Absolute point in time after which an invocation must stop waiting.

    A deadline also carries the invocation's cancel event so a caller can
    interrupt a sleeping controller early; both are observed at the same
    suspend points.
    """

    def __init__(
        self,
        clock: Clock,
        timeout: Optional[float],
        cancel_event: Optional[threading.Event] = None
    ):
        """Initialize deadline.

        Args:
            clock: Time source
            timeout: Seconds from now, None for no limit
            cancel_event: Optional event that cancels the invocation
        """
        self.clock = clock
        self.timeout = timeout
        self.cancel_event = cancel_event
        self.started_at = clock.now()
        self.expires_at = None if timeout is None else self.started_at + timeout

    def remaining(self) -> Optional[float]:
        """Seconds left, None when unbounded."""
        if self.expires_at is None:
            return None
        return max(0.0, self.expires_at - self.clock.now())

    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def expired(self) -> bool:
        """True once the timeout passed or the invocation was cancelled."""
        if self.cancelled():
            return True
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    def elapsed(self) -> float:
        return self.clock.now() - self.started_at

    def sleep(self, seconds: float) -> bool:
        """Sleep at most until the deadline.

        Returns:
            True if the deadline expired or the invocation was cancelled
        """
        remaining = self.remaining()
        if remaining is not None:
            seconds = min(seconds, remaining)
        interrupted = self.clock.sleep(seconds, self.cancel_event)
        return interrupted or self.expired()

    def child(self, timeout: Optional[float]) -> 'Deadline':
        """A fresh deadline on the same clock that ignores this one's cancel event."""
        return Deadline(self.clock, timeout)
