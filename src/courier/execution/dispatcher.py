"""Dispatcher — the composed admission, breaker, retry and scrub pipeline.

Manifesto:
Each outbound call needs the same handling: wait for rate-limit admission,
pass the circuit breaker, send, classify any failure, back off and retry
when that helps, and never let the credential escape in an error message.
``Dispatcher`` is the one place that composes those steps, so transport
code only has to send a request and raise on failure.

ARCHITECTURE
────────────
::

    dispatch(ctx, key, request)
      │
      └─ RetryContext.run(attempt)           ← classify, back off, retry
            │
            attempt:
              ├─ ctx.raise_if_done()
              ├─ RateLimiter.wait(ctx, key)  ← global + per-key admission
              ├─ CircuitBreaker.execute(transport.send, request)
              └─ scrub_error(...)            ← on failure, before logging

    final error ─► scrub_error(...) ─► caller

Outcomes seen by the caller:
    - the transport's result
    - the remote/transport error, scrubbed, when it was not retryable
    - ``RetriesExhaustedError`` wrapping the last scrubbed error when
      retries ran out
    - ``CircuitOpenError`` when the breaker rejected the call
    - ``ContextCancelled`` / ``DeadlineExceeded`` when the context finished
      first

Example::

    dispatcher = Dispatcher.from_settings(CourierSettings(), transport)
    message = dispatcher.dispatch(CallContext.with_timeout(30), "12345", request)

Tags:
    courier, execution, dispatch, resilience, composition
"""

import time
from collections.abc import Callable
from typing import Any, Protocol

from courier.core.errors import classify_error, is_breaker_failure
from courier.core.logging import LogContext, get_logger
from courier.core.secrets import SecretToken, scrub_error
from courier.core.settings import CourierSettings
from courier.execution.circuit_breaker import CircuitBreaker
from courier.execution.context import CallContext
from courier.execution.rate_limit import DEFAULT_IDLE_TTL, RateLimitedError, RateLimiter
from courier.execution.retry import RetryContext, RetryPolicy
from courier.execution.sleeper import RealSleeper, Sleeper

logger = get_logger(__name__)


class Transport(Protocol):
    """Sends one request to the remote service.

    Returns the decoded result, or raises: ``APIError`` when the remote
    answered with a structured failure, ``TransportError`` (or a builtin
    ``TimeoutError`` / ``OSError``) when it did not answer.
    """

    def send(self, request: Any) -> Any: ...


def _method_of(request: Any) -> str | None:
    method = getattr(request, "method", None)
    if method is None and isinstance(request, dict):
        method = request.get("method")
    return method if isinstance(method, str) else None


class Dispatcher:
    """Resilient dispatch of outbound calls.

    The limiter, breaker and sleeper are injected so tests can build
    isolated instances; defaults are created when omitted.

    Args:
        transport: Object with ``send(request)``
        rate_limiter: Admission control; default ``RateLimiter()``
        breaker: Circuit breaker; default counts only 5xx and transport
            failures (``is_breaker_failure``)
        policy: Retry policy; default ``RetryPolicy()``
        sleeper: Used for backoff sleeps and, when ``rate_limiter`` is
            omitted, for admission waits; default ``RealSleeper()``
        secret: Credential to scrub from every escaping error
        on_retry: Optional ``(attempt, error, delay)`` callback
        key_idle_ttl: Idle seconds after which ``evict_idle_keys`` drops a
            routing key's bucket
    """

    def __init__(
        self,
        transport: Transport,
        *,
        rate_limiter: RateLimiter | None = None,
        breaker: CircuitBreaker | None = None,
        policy: RetryPolicy | None = None,
        sleeper: Sleeper | None = None,
        secret: SecretToken | str | None = None,
        on_retry: Callable[[int, Exception, float], None] | None = None,
        key_idle_ttl: float = DEFAULT_IDLE_TTL,
    ):
        self.transport = transport
        self.sleeper = sleeper or RealSleeper()
        self.rate_limiter = rate_limiter or RateLimiter(sleeper=self.sleeper)
        self.breaker = breaker or CircuitBreaker(
            name="courier-dispatch", is_failure=is_breaker_failure
        )
        self.policy = policy or RetryPolicy()
        self.secret = secret if isinstance(secret, SecretToken) else SecretToken(secret or "")
        self.on_retry = on_retry
        self.key_idle_ttl = key_idle_ttl

    @classmethod
    def from_settings(
        cls,
        settings: CourierSettings,
        transport: Transport,
        sleeper: Sleeper | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> "Dispatcher":
        """Build a dispatcher and its collaborators from configuration.

        ``sleeper`` drives both admission waits and backoff sleeps; ``clock``
        times the token buckets and the breaker. Pass a ``ManualClock`` shared
        with a ``RecordingSleeper`` to run without real delays.
        """
        sleeper = sleeper or RealSleeper()
        limiter = RateLimiter(
            global_rps=settings.global_rps,
            global_burst=settings.global_burst,
            key_rps=settings.key_rps,
            key_burst=settings.key_burst,
            group_rps=settings.group_rps,
            group_burst=settings.group_burst,
            max_keys=settings.max_keys,
            clock=clock,
            sleeper=sleeper,
        )
        breaker = CircuitBreaker(
            name=settings.breaker_name,
            max_requests=settings.breaker_max_requests,
            interval=settings.breaker_interval,
            timeout=settings.breaker_timeout,
            threshold=settings.breaker_threshold,
            failure_ratio=settings.breaker_failure_ratio,
            min_requests=settings.breaker_min_requests,
            is_failure=is_breaker_failure,
            clock=clock,
        )
        policy = RetryPolicy(
            max_retries=settings.max_retries,
            base_wait=settings.retry_base_wait,
            max_wait=settings.retry_max_wait,
            multiplier=settings.retry_multiplier,
            jitter=settings.retry_jitter,
        )
        return cls(
            transport,
            rate_limiter=limiter,
            breaker=breaker,
            policy=policy,
            sleeper=sleeper,
            secret=settings.secret_token(),
            key_idle_ttl=settings.key_idle_ttl,
        )

    def _scrubbed(self, error: BaseException) -> BaseException:
        return scrub_error(error, self.secret)

    def _send(self, request: Any) -> Any:
        try:
            return self.breaker.execute(self.transport.send, request)
        except Exception as e:
            scrubbed = self._scrubbed(e)
            if scrubbed is e:
                raise
            raise scrubbed from None

    def _attempt(self, ctx: CallContext, key: str, request: Any) -> Any:
        ctx.raise_if_done()
        self.rate_limiter.wait(ctx, key)
        return self._send(request)

    def dispatch(self, ctx: CallContext | None, key: str, request: Any) -> Any:
        """Send ``request`` through admission, breaker and retry.

        Args:
            ctx: Cancellation context; None means never cancelled
            key: Routing key; empty limits by the global bucket only
            request: Passed to ``transport.send`` unchanged

        Returns:
            The transport's result

        Raises:
            ContextCancelled: The context finished before the call did
            CircuitOpenError: The breaker rejected the call
            RetriesExhaustedError: Retries ran out; the last error, scrubbed
                of the secret, is its ``cause``
            Exception: A non-retryable transport error, scrubbed of the secret
        """
        ctx = ctx or CallContext.background()
        with LogContext(routing_key=key, method=_method_of(request)):
            retry = RetryContext(
                self.policy,
                ctx=ctx,
                sleeper=self.sleeper,
                classify=classify_error,
                on_retry=self.on_retry,
            )
            try:
                result = retry.run(self._attempt, ctx, key, request)
            except Exception as e:
                scrubbed = self._scrubbed(e)
                classified = classify_error(scrubbed)
                logger.warning(
                    "dispatch_failed",
                    attempts=retry.attempts,
                    error=str(scrubbed),
                    error_kind=classified.category.value,
                    code=classified.code,
                )
                if scrubbed is e:
                    raise
                raise scrubbed from None
            logger.debug("dispatch_succeeded", attempts=retry.attempts)
            return result

    def try_dispatch(self, key: str, request: Any) -> Any:
        """Send ``request`` once if the rate limiter admits it right now.

        Raises:
            RateLimitedError: Admission was refused; nothing was sent
            CircuitOpenError: The breaker rejected the call
            Exception: The transport error, scrubbed of the secret
        """
        with LogContext(routing_key=key, method=_method_of(request)):
            if not self.rate_limiter.allow(key):
                retry_after = self.rate_limiter.wait_time(key)
                logger.debug("dispatch_rate_limited", retry_after=retry_after)
                raise RateLimitedError(key, retry_after=retry_after or None)
            return self._send(request)

    def evict_idle_keys(self) -> int:
        """Drop rate-limit buckets idle longer than ``key_idle_ttl``."""
        return self.rate_limiter.evict_idle(self.key_idle_ttl)
