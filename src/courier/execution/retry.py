"""Retry with capped exponential backoff, honoring remote retry hints.

Attempt 0 runs immediately. After attempt ``n`` fails with a retryable
error, the orchestrator sleeps ``min(base_wait * multiplier**n, max_wait)``
(raised to the remote ``retry_after`` hint when one is present) and runs
attempt ``n + 1``, up to ``max_retries`` retries.

Example:
    >>> from courier.execution.retry import RetryPolicy
    >>>
    >>> policy = RetryPolicy(max_retries=3, base_wait=1.0, max_wait=30.0)
    >>> [policy.next_delay(n) for n in range(3)]
    [1.0, 2.0, 4.0]
    >>> policy.next_delay(0, retry_after=5.0)
    5.0
"""

import random
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, TypeVar

from courier.core.errors import (
    ClassifiedError,
    ConfigError,
    ErrorKind,
    RetriesExhaustedError,
    classify_error,
)
from courier.core.logging import get_logger
from courier.execution.context import CallContext
from courier.execution.sleeper import RealSleeper, Sleeper

T = TypeVar("T")

logger = get_logger(__name__)


def utcnow() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


@dataclass
class RetryPolicy:
    """Exponential backoff with an optional jitter.

    Delay = min(base_wait * (multiplier ** attempt), max_wait) +/- jitter,
    floored at the remote retry hint.

    Attributes:
        max_retries: Retries after the first attempt (0 = no retries)
        base_wait: Delay before the first retry, in seconds
        max_wait: Cap on the exponential delay
        multiplier: Growth factor per attempt
        jitter: Fraction of the delay to randomize by (0.0 disables)
    """

    max_retries: int = 3
    base_wait: float = 1.0
    max_wait: float = 30.0
    multiplier: float = 2.0
    jitter: float = 0.0

    def __post_init__(self):
        if self.max_retries < 0:
            raise ConfigError("max_retries", "must not be negative")
        if self.base_wait < 0 or self.max_wait < 0:
            raise ConfigError("retry_wait", "waits must not be negative")
        if self.multiplier < 1:
            raise ConfigError("retry_multiplier", "must be at least 1")
        if not 0.0 <= self.jitter <= 1.0:
            raise ConfigError("retry_jitter", "must be between 0 and 1")

    def backoff(self, attempt: int) -> float:
        """Exponential delay for zero-based ``attempt``, capped at ``max_wait``."""
        try:
            wait = self.base_wait * (self.multiplier ** attempt)
        except OverflowError:
            wait = self.max_wait if self.base_wait > 0 else 0.0
        wait = min(wait, self.max_wait)

        if self.jitter > 0:
            jitter_amount = wait * self.jitter
            wait += random.uniform(-jitter_amount, jitter_amount)
            wait = max(0.0, wait)

        return wait

    def next_delay(self, attempt: int, retry_after: float | None = None) -> float:
        """Delay before the retry that follows failed ``attempt``.

        A remote ``retry_after`` acts as a floor, never shortening the delay.
        """
        delay = self.backoff(attempt)
        if retry_after is not None and retry_after > delay:
            return retry_after
        return delay

    def should_retry(self, attempt: int) -> bool:
        """True if failed zero-based ``attempt`` may be followed by another."""
        return attempt < self.max_retries


@dataclass
class RetryContext:
    """Context tracking retry state for one logical call.

    Provides both state tracking and execution helpers.

    Example:
        >>> retry = RetryContext(RetryPolicy(max_retries=3), ctx=ctx)
        >>> result = retry.run(lambda: call_api())
    """

    policy: RetryPolicy
    ctx: CallContext | None = None
    sleeper: Sleeper | None = None
    classify: Callable[[BaseException], ClassifiedError] = classify_error
    on_retry: Callable[[int, Exception, float], None] | None = None
    attempt: int = field(default=0, init=False)
    last_error: Exception | None = field(default=None, init=False)
    started_at: datetime = field(default_factory=utcnow, init=False)
    errors: list[tuple[int, Exception, datetime]] = field(default_factory=list, init=False)

    def record_failure(self, error: Exception) -> None:
        """Record a failed attempt."""
        self.errors.append((self.attempt, error, utcnow()))
        self.last_error = error
        self.attempt += 1

    @property
    def elapsed_seconds(self) -> float:
        """Total elapsed time since first attempt."""
        return (utcnow() - self.started_at).total_seconds()

    @property
    def attempts(self) -> int:
        """Number of attempts made."""
        return self.attempt

    def run(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Execute function with retry logic.

        Args:
            func: One attempt
            *args: Positional arguments for func
            **kwargs: Keyword arguments for func

        Returns:
            Result from the first successful attempt

        Raises:
            ContextCancelled: If the context finished before an attempt,
                during a backoff sleep, or while a failing attempt ran
            RetriesExhaustedError: Retries ran out; the last attempt's
                error is its ``cause``
            Exception: The attempt's error, unchanged, when it is not
                retryable
        """
        ctx = self.ctx or CallContext.background()
        sleeper = self.sleeper or RealSleeper()

        while True:
            ctx.raise_if_done()
            try:
                return func(*args, **kwargs)
            except Exception as e:
                failed_attempt = self.attempt
                self.record_failure(e)

                ctx.raise_if_done()

                classified = self.classify(e)
                if not classified.retryable:
                    raise

                if not self.policy.should_retry(failed_attempt):
                    logger.warning(
                        "retries_exhausted",
                        kind=ErrorKind.RETRIES_EXHAUSTED.value,
                        attempts=self.attempt,
                        error_kind=classified.category.value,
                        code=classified.code,
                    )
                    raise RetriesExhaustedError(self.attempt, e) from e

                delay = self.policy.next_delay(failed_attempt, classified.retry_after)

                if self.on_retry:
                    self.on_retry(self.attempt, e, delay)

                logger.info(
                    "retry_scheduled",
                    attempt=self.attempt,
                    delay=delay,
                    error_kind=classified.category.value,
                    code=classified.code,
                    retry_after=classified.retry_after,
                )
                sleeper.sleep(ctx, delay)
