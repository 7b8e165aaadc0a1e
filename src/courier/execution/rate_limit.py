"""Rate Limiting — dual-scope token buckets for outbound calls.

Manifesto:
The remote service enforces two limits at once: an overall message rate and
a much lower rate per destination. Exceeding either earns 429 answers and,
if repeated, a temporary ban. ``RateLimiter`` throttles calls *before* they
leave the process, against both scopes.

ARCHITECTURE
────────────
::

    RateLimiter
      ├── global TokenBucket           ─ whole-client throughput
      └── per-key TokenBucket map      ─ one bucket per routing key
            └── group keys (negative ids) get the group rate

    Lock order: global bucket, then key bucket. The key map has its own
    lock, separate from the bucket locks.

BEST PRACTICES
──────────────
- Use ``wait()`` on the dispatch path; use ``allow()`` only where the
  caller can drop or defer the call itself.
- Bound ``max_keys`` and call ``evict_idle()`` periodically when routing
  keys churn.
- Combine with ``CircuitBreaker`` for full resilience.

Related modules:
    circuit_breaker.py — fail-fast on sustained failures
    retry.py           — backoff on transient failures
    dispatcher.py      — composes all three

Example::

    limiter = RateLimiter(global_rps=30, global_burst=10, key_rps=1, key_burst=3)
    limiter.wait(ctx, "12345")       # blocks until both buckets admit
    if not limiter.allow("12345"):   # non-blocking variant
        raise RateLimitedError("12345")

Tags:
    courier, execution, rate-limit, throttle, token-bucket
"""

import math
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from courier.core.errors import ConfigError, CourierError, ErrorKind
from courier.core.logging import get_logger
from courier.execution.context import CallContext
from courier.execution.sleeper import RealSleeper, Sleeper

logger = get_logger(__name__)

DEFAULT_MAX_KEYS = 10_000
DEFAULT_IDLE_TTL = 600.0


class RateLimitedError(CourierError):
    """Raised when non-blocking admission is refused."""

    default_kind = ErrorKind.RATE_LIMITED

    def __init__(self, key: str = "", retry_after: float | None = None):
        message = f"rate limit exceeded for key {key!r}" if key else "global rate limit exceeded"
        super().__init__(message, retry_after=retry_after)
        self.key = key


def _check_limit(name: str, rate: float, capacity: float) -> None:
    if rate <= 0:
        raise ConfigError(f"{name}_rps", f"must be positive, got {rate}")
    if capacity < 1:
        raise ConfigError(f"{name}_burst", f"must be at least 1, got {capacity}")


@dataclass
class TokenBucket:
    """Token bucket rate limiter.

    Tokens are added at a fixed rate up to capacity. Allows bursts up to
    capacity, then limits to rate. Refill is lazy: it happens on every
    check, from the time elapsed since the previous one.

    Attributes:
        rate: Tokens added per second
        capacity: Maximum tokens (burst size)
        clock: Monotonic time source
    """

    rate: float
    capacity: float
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)

    _tokens: float = field(default=0.0, init=False)
    _last_refill: float = field(default=0.0, init=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)
    last_used: float = field(default=0.0, init=False)

    def __post_init__(self):
        """Initialize with full bucket."""
        _check_limit("bucket", self.rate, self.capacity)
        self._tokens = float(self.capacity)
        self._last_refill = self.clock()
        self.last_used = self._last_refill

    def _refill(self) -> float:
        """Add tokens based on elapsed time. Caller holds the lock."""
        now = self.clock()
        elapsed = max(0.0, now - self._last_refill)
        self._tokens = min(self.capacity, self._tokens + elapsed * self.rate)
        self._last_refill = now
        return now

    def _wait_time_locked(self, n: float) -> float:
        if self._tokens >= n:
            return 0.0
        if n > self.capacity:
            return math.inf
        return (n - self._tokens) / self.rate

    def take(self, n: float = 1.0) -> bool:
        """Take ``n`` tokens if available. Never blocks."""
        with self._lock:
            self.last_used = self._refill()
            if self._tokens >= n:
                self._tokens -= n
                return True
            return False

    def wait_time(self, n: float = 1.0) -> float:
        """Seconds until ``n`` tokens are available (0 if available now)."""
        with self._lock:
            self._refill()
            return self._wait_time_locked(n)

    @property
    def tokens(self) -> float:
        """Current available tokens."""
        with self._lock:
            self._refill()
            return self._tokens

    def set_limit(self, rate: float, capacity: float) -> None:
        """Change rate and capacity, keeping tokens earned so far."""
        _check_limit("bucket", rate, capacity)
        with self._lock:
            self._refill()
            self.rate = rate
            self.capacity = capacity
            self._tokens = min(self._tokens, float(capacity))


class RateLimiter:
    """Global and per-key rate limiting.

    A call is admitted only if both the global bucket and the bucket of its
    routing key hold a token at the moment of admission; both are debited
    together. An empty routing key is limited by the global bucket alone.

    Per-key buckets are created on first use. The map holds at most
    ``max_keys`` buckets; creating one more evicts the least recently used.

    Args:
        global_rps: Global tokens per second
        global_burst: Global bucket capacity
        key_rps: Per-key tokens per second
        key_burst: Per-key bucket capacity
        group_rps: Rate for group keys (negative integer ids); 0 disables
        group_burst: Capacity for group keys
        max_keys: Bound on the number of per-key buckets
        clock: Monotonic time source shared by every bucket
        sleeper: Used by ``wait()`` to pause between admission checks
    """

    def __init__(
        self,
        global_rps: float = 30.0,
        global_burst: int = 10,
        key_rps: float = 1.0,
        key_burst: int = 3,
        *,
        group_rps: float = 0.0,
        group_burst: int = 2,
        max_keys: int = DEFAULT_MAX_KEYS,
        clock: Callable[[], float] = time.monotonic,
        sleeper: Sleeper | None = None,
    ):
        _check_limit("global", global_rps, global_burst)
        _check_limit("key", key_rps, key_burst)
        if group_rps < 0:
            raise ConfigError("group_rps", f"must not be negative, got {group_rps}")
        if group_rps > 0:
            _check_limit("group", group_rps, group_burst)
        if max_keys < 1:
            raise ConfigError("max_keys", f"must be at least 1, got {max_keys}")

        self._clock = clock
        self._sleeper = sleeper or RealSleeper()
        self._global = TokenBucket(global_rps, global_burst, clock=clock)
        self._key_rps = key_rps
        self._key_burst = key_burst
        self._group_rps = group_rps
        self._group_burst = group_burst
        self._max_keys = max_keys
        self._buckets: dict[str, TokenBucket] = {}
        self._map_lock = threading.Lock()

    # ── Admission ────────────────────────────────────────────────

    def _try_admit(self, key: str) -> float:
        """Debit both scopes if possible.

        Returns 0.0 on admission, otherwise the seconds to wait before the
        next check. Nothing is debited on refusal.
        """
        bucket = self._bucket_for(key) if key else None
        glob = self._global
        with glob._lock:
            glob._refill()
            if glob._tokens < 1:
                return glob._wait_time_locked(1)
            if bucket is not None:
                with bucket._lock:
                    bucket.last_used = bucket._refill()
                    if bucket._tokens < 1:
                        return bucket._wait_time_locked(1)
                    bucket._tokens -= 1
            glob._tokens -= 1
            return 0.0

    def allow(self, key: str) -> bool:
        """Admit a call without blocking.

        Returns True and debits one token from each scope only if both
        already have one; otherwise returns False and debits nothing.
        """
        return self._try_admit(key) == 0.0

    def wait(self, ctx: CallContext, key: str) -> None:
        """Block until both scopes admit the call, then debit them.

        Raises:
            ContextCancelled: If ``ctx`` finishes before admission
        """
        while True:
            ctx.raise_if_done()
            delay = self._try_admit(key)
            if delay == 0.0:
                return
            self._sleeper.sleep(ctx, delay)

    def wait_time(self, key: str) -> float:
        """Seconds until both scopes could admit a call for ``key``."""
        delay = self._global.wait_time(1)
        if key:
            delay = max(delay, self._bucket_for(key).wait_time(1))
        return delay

    def global_allow(self) -> bool:
        """Check only the global limit, without blocking."""
        return self._global.take(1)

    def global_wait(self, ctx: CallContext) -> None:
        """Wait for the global limit only."""
        self.wait(ctx, "")

    # ── Configuration ────────────────────────────────────────────

    def set_global_limit(self, rps: float, burst: int) -> None:
        """Update the global rate limit in place."""
        _check_limit("global", rps, burst)
        self._global.set_limit(rps, burst)

    def set_key_limit(self, rps: float, burst: int) -> None:
        """Update the per-key rate limit for keys created from now on."""
        _check_limit("key", rps, burst)
        with self._map_lock:
            self._key_rps = rps
            self._key_burst = burst

    # ── Key map ──────────────────────────────────────────────────

    @staticmethod
    def is_group_key(key: str) -> bool:
        """Group destinations have negative integer ids."""
        try:
            return int(key) < 0
        except ValueError:
            return False

    def _bucket_for(self, key: str) -> TokenBucket:
        """Get or create the bucket for ``key``."""
        bucket = self._buckets.get(key)
        if bucket is not None:
            return bucket

        with self._map_lock:
            # Double-check after acquiring the map lock
            bucket = self._buckets.get(key)
            if bucket is not None:
                return bucket

            if len(self._buckets) >= self._max_keys:
                self._evict_lru()

            if self._group_rps > 0 and self.is_group_key(key):
                bucket = TokenBucket(self._group_rps, self._group_burst, clock=self._clock)
            else:
                bucket = TokenBucket(self._key_rps, self._key_burst, clock=self._clock)
            self._buckets[key] = bucket
            return bucket

    def _evict_lru(self) -> None:
        """Drop the least recently used bucket. Caller holds the map lock."""
        oldest = min(self._buckets, key=lambda k: self._buckets[k].last_used)
        del self._buckets[oldest]
        logger.debug("rate_limit_key_evicted", key=oldest, reason="max_keys")

    def evict_idle(self, max_idle: float = DEFAULT_IDLE_TTL) -> int:
        """Remove buckets unused for longer than ``max_idle`` seconds.

        Returns:
            Number of buckets removed
        """
        now = self._clock()
        with self._map_lock:
            stale = [k for k, b in self._buckets.items() if now - b.last_used > max_idle]
            for key in stale:
                del self._buckets[key]
        if stale:
            logger.debug("rate_limit_idle_evicted", count=len(stale), max_idle=max_idle)
        return len(stale)

    def get(self, key: str) -> TokenBucket | None:
        """Get the bucket for ``key`` if it exists."""
        with self._map_lock:
            return self._buckets.get(key)

    def remove(self, key: str) -> None:
        """Remove the bucket for ``key``."""
        with self._map_lock:
            self._buckets.pop(key, None)

    @property
    def key_count(self) -> int:
        with self._map_lock:
            return len(self._buckets)

    @property
    def global_bucket(self) -> TokenBucket:
        return self._global
