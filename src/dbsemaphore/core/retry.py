"""Retry policy, deadlines and cancellation for the acquire and heartbeat loops.

Policy (how long to wait) lives here; mechanism (the transactional
attempt) lives in the stores. The acquire loop combines an
``ExponentialBackoff`` with a ``Deadline`` and a ``CancellationToken``;
the heartbeat emitter runs each refresh through a bounded ``RetryContext``.

Example:
    >>> from dbsemaphore.core.retry import ExponentialBackoff
    >>>
    >>> strategy = ExponentialBackoff(base_delay=0.05, max_delay=2.0, jitter=False)
    >>> [strategy.next_delay(a) for a in range(3)]
    [0.05, 0.1, 0.2]
"""

from __future__ import annotations

import random
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, TypeVar

from dbsemaphore.core.clock import SYSTEM_CLOCK, Clock

T = TypeVar("T")


class RetryStrategy(ABC):
    """Abstract base for retry strategies."""

    @abstractmethod
    def next_delay(self, attempt: int) -> float:
        """Calculate delay before next retry attempt.

        Args:
            attempt: Zero-based attempt number (0 = first retry)

        Returns:
            Delay in seconds before next attempt
        """
        ...

    @abstractmethod
    def should_retry(self, attempt: int, error: BaseException | None = None) -> bool:
        """Determine if another retry should be attempted."""
        ...


@dataclass
class ExponentialBackoff(RetryStrategy):
    """Exponential backoff with optional jitter.

    Delay = min(base_delay * (multiplier ** attempt), max_delay) ± jitter,
    then clamped to [base_delay, max_delay].

    Attributes:
        max_retries: Maximum number of retry attempts (None = unbounded,
            the caller's deadline decides)
        base_delay: Initial delay in seconds (the backoff floor)
        max_delay: Maximum delay cap in seconds (the backoff ceiling)
        multiplier: Exponential multiplier (default: 2)
        jitter: Add randomness to spread out competing retries
        jitter_range: Range of jitter as fraction of delay (0.0-1.0)
        retryable_errors: Exception types that are retryable (None = all)
    """

    max_retries: int | None = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    multiplier: float = 2.0
    jitter: bool = True
    jitter_range: float = 0.25
    retryable_errors: tuple[type[BaseException], ...] | None = None

    def next_delay(self, attempt: int) -> float:
        """Calculate exponential backoff delay."""
        # Cap the exponent so long-running acquire loops never overflow.
        delay = min(
            self.base_delay * (self.multiplier ** min(attempt, 64)),
            self.max_delay,
        )

        if self.jitter and self.jitter_range > 0:
            jitter_amount = delay * self.jitter_range
            delay += random.uniform(-jitter_amount, jitter_amount)
            delay = min(max(delay, self.base_delay), self.max_delay)

        return delay

    def should_retry(self, attempt: int, error: BaseException | None = None) -> bool:
        """Check if retry should be attempted."""
        if self.max_retries is not None and attempt >= self.max_retries:
            return False

        if error is not None and self.retryable_errors is not None:
            return isinstance(error, self.retryable_errors)

        return True


class CancellationToken:
    """Cooperative cancellation flag that doubles as an interruptible sleep."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float, clock: Clock = SYSTEM_CLOCK) -> bool:
        """Sleep up to ``timeout`` seconds of ``clock`` time; True if cancelled meanwhile."""
        return clock.wait(self._event, max(0.0, timeout))


@dataclass(frozen=True)
class Deadline:
    """A point in time on a local monotonic clock.

    ``expires_at=None`` never expires.
    """

    expires_at: float | None
    clock: Clock = SYSTEM_CLOCK

    @classmethod
    def after(cls, seconds: float | None, clock: Clock = SYSTEM_CLOCK) -> Deadline:
        if seconds is None:
            return cls(None, clock)
        return cls(clock.monotonic() + max(0.0, seconds), clock)

    def remaining(self) -> float:
        if self.expires_at is None:
            return float("inf")
        return max(0.0, self.expires_at - self.clock.monotonic())


@dataclass
class RetryContext:
    """Run a callable with a retry strategy.

    ``sleep`` is injectable so a background loop can make its waits
    interruptible (pass ``stop_event.wait``).

    Example:
        >>> ctx = RetryContext(ExponentialBackoff(max_retries=3))
        >>> result = ctx.run(lambda: store.register_or_refresh(owner, 1000))
    """

    strategy: RetryStrategy
    on_retry: Callable[[int, BaseException, float], None] | None = None
    sleep: Callable[[float], Any] = time.sleep
    attempt: int = field(default=0, init=False)
    last_error: BaseException | None = field(default=None, init=False)

    def run(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Execute function with retry logic.

        Raises:
            The last exception once the strategy refuses another attempt
        """
        while True:
            self.attempt += 1
            try:
                return func(*args, **kwargs)
            except Exception as e:
                self.last_error = e

                if not self.strategy.should_retry(self.attempt, e):
                    raise

                delay = self.strategy.next_delay(self.attempt - 1)

                if self.on_retry:
                    self.on_retry(self.attempt, e, delay)

                self.sleep(delay)


__all__ = [
    "RetryStrategy",
    "ExponentialBackoff",
    "CancellationToken",
    "Deadline",
    "RetryContext",
]
