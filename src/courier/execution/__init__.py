"""Courier Execution — admission, fault isolation, retry and dispatch.

ARCHITECTURE
────────────
::

    Dispatcher (composition root)
      ├── RateLimiter       ─ global + per-key token buckets
      ├── CircuitBreaker    ─ closed / open / half-open state machine
      ├── RetryContext      ─ capped exponential backoff
      │     └── RetryPolicy
      └── Sleeper           ─ cancellable waiting (Real / Recording)

    CallContext             ─ deadline + cancel signal for one call

MODULE MAP
──────────
  1. context.py         ─ CallContext
  2. sleeper.py         ─ Sleeper, RealSleeper, RecordingSleeper, ManualClock
  3. rate_limit.py      ─ TokenBucket, RateLimiter, RateLimitedError
  4. circuit_breaker.py ─ CircuitBreaker, CircuitState, Counts, CircuitOpenError
  5. retry.py           ─ RetryPolicy, RetryContext
  6. dispatcher.py      ─ Dispatcher, Transport
"""

from courier.execution.circuit_breaker import (
    CircuitBreaker,
    CircuitOpenError,
    CircuitState,
    CircuitStats,
    Counts,
)
from courier.execution.context import CallContext
from courier.execution.dispatcher import Dispatcher, Transport
from courier.execution.rate_limit import RateLimitedError, RateLimiter, TokenBucket
from courier.execution.retry import RetryContext, RetryPolicy
from courier.execution.sleeper import ManualClock, RealSleeper, RecordingSleeper, Sleeper

__all__ = [
    "CallContext",
    "CircuitBreaker",
    "CircuitOpenError",
    "CircuitState",
    "CircuitStats",
    "Counts",
    "Dispatcher",
    "ManualClock",
    "RateLimitedError",
    "RateLimiter",
    "RealSleeper",
    "RecordingSleeper",
    "RetryContext",
    "RetryPolicy",
    "Sleeper",
    "TokenBucket",
    "Transport",
]
