"""Circuit breaker pattern for fault tolerance.

Prevents cascading failures by failing fast when the remote service is
degraded.

States:
    CLOSED: Normal operation, requests pass through
    OPEN: Failing fast, requests rejected immediately
    HALF_OPEN: Testing if service recovered

Counting works in generations. Every state change, and every roll-over of
the counting interval while closed, starts a new generation with zeroed
counts. An outcome reported for a generation that has already ended is
discarded, so a slow call started before a trip cannot close the circuit
after it.

Example:
    >>> from courier.execution.circuit_breaker import CircuitBreaker
    >>>
    >>> breaker = CircuitBreaker(name="sender", threshold=5, timeout=30.0)
    >>> result = breaker.execute(transport.send, request)
"""

import dataclasses
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, TypeVar

from courier.core.errors import CourierError, ErrorKind
from courier.core.logging import get_logger

T = TypeVar("T")

logger = get_logger(__name__)


def utcnow() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"      # Normal operation
    OPEN = "open"          # Rejecting requests
    HALF_OPEN = "half_open"  # Testing recovery


class CircuitOpenError(CourierError):
    """Raised when the breaker rejects a call without running it.

    ``too_many_requests`` is True when the breaker is half-open and all
    trial slots are taken.
    """

    default_kind = ErrorKind.CIRCUIT_OPEN

    def __init__(self, name: str, too_many_requests: bool = False):
        if too_many_requests:
            message = f"circuit breaker '{name}' is half-open: too many requests"
        else:
            message = f"circuit breaker '{name}' is open"
        super().__init__(message)
        self.name = name
        self.too_many_requests = too_many_requests


@dataclass
class Counts:
    """Request counts for the current generation."""

    requests: int = 0
    total_successes: int = 0
    total_failures: int = 0
    consecutive_successes: int = 0
    consecutive_failures: int = 0

    def on_request(self) -> None:
        self.requests += 1

    def on_success(self) -> None:
        self.total_successes += 1
        self.consecutive_successes += 1
        self.consecutive_failures = 0

    def on_failure(self) -> None:
        self.total_failures += 1
        self.consecutive_failures += 1
        self.consecutive_successes = 0

    def clear(self) -> None:
        self.requests = 0
        self.total_successes = 0
        self.total_failures = 0
        self.consecutive_successes = 0
        self.consecutive_failures = 0


@dataclass
class CircuitStats:
    """Lifetime statistics for circuit breaker monitoring."""

    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    rejected_requests: int = 0
    state_changes: int = 0
    last_failure_time: datetime | None = None
    last_success_time: datetime | None = None
    last_state_change: datetime | None = None

    @property
    def failure_rate(self) -> float:
        """Calculate failure rate as percentage."""
        total = self.successful_requests + self.failed_requests
        if total == 0:
            return 0.0
        return (self.failed_requests / total) * 100


@dataclass
class CircuitBreaker:
    """Circuit breaker for fault tolerance.

    Trips when ``consecutive_failures >= threshold``, or when at least
    ``min_requests`` were seen in the current interval and the failure
    ratio reaches ``failure_ratio``. A custom ``ready_to_trip`` replaces
    that rule.

    Attributes:
        name: Identifier for this circuit
        max_requests: Trial calls admitted while half-open; this many
            consecutive successes close the circuit
        interval: Seconds after which closed-state counts roll over;
            0 means never
        timeout: Seconds spent open before going half-open
        threshold: Consecutive failures that trip the circuit
        failure_ratio: Failure ratio that trips the circuit
        min_requests: Requests needed before the ratio is considered
        ready_to_trip: Optional ``(Counts) -> bool`` trip rule
        is_failure: Optional ``(exception) -> bool``; exceptions for which
            it returns False count as successes. Default: every exception
            is a failure.
        on_state_change: Optional ``(name, from_state, to_state)`` callback
        clock: Monotonic time source
    """

    name: str = "default"
    max_requests: int = 5
    interval: float = 60.0
    timeout: float = 30.0
    threshold: int = 5
    failure_ratio: float = 0.5
    min_requests: int = 10
    ready_to_trip: Callable[[Counts], bool] | None = None
    is_failure: Callable[[BaseException], bool] | None = None
    on_state_change: Callable[[str, CircuitState, CircuitState], None] | None = None
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)

    # Internal state
    _state: CircuitState = field(default=CircuitState.CLOSED, init=False)
    _generation: int = field(default=0, init=False)
    _counts: Counts = field(default_factory=Counts, init=False)
    _expiry: float | None = field(default=None, init=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)
    _stats: CircuitStats = field(default_factory=CircuitStats, init=False)
    _pending: list[tuple[CircuitState, CircuitState]] = field(
        default_factory=list, init=False, repr=False
    )

    def __post_init__(self):
        if self.max_requests < 1:
            self.max_requests = 1
        self._new_generation(self.clock())

    # ── Monitoring ───────────────────────────────────────────────

    @property
    def state(self) -> CircuitState:
        """Get current circuit state."""
        with self._lock:
            state, _ = self._current_state(self.clock())
        self._notify()
        return state

    @property
    def counts(self) -> Counts:
        """Copy of the counts for the current generation."""
        with self._lock:
            self._current_state(self.clock())
            counts = dataclasses.replace(self._counts)
        self._notify()
        return counts

    @property
    def stats(self) -> CircuitStats:
        """Get circuit statistics."""
        return self._stats

    @property
    def generation(self) -> int:
        with self._lock:
            return self._generation

    # ── State machine ────────────────────────────────────────────

    def _trips(self, counts: Counts) -> bool:
        if self.ready_to_trip is not None:
            return self.ready_to_trip(counts)
        if counts.consecutive_failures >= self.threshold:
            return True
        if counts.requests >= self.min_requests:
            return counts.total_failures / counts.requests >= self.failure_ratio
        return False

    def _new_generation(self, now: float) -> None:
        self._generation += 1
        self._counts.clear()
        if self._state == CircuitState.CLOSED:
            self._expiry = now + self.interval if self.interval > 0 else None
        elif self._state == CircuitState.OPEN:
            self._expiry = now + self.timeout
        else:
            self._expiry = None

    def _current_state(self, now: float) -> tuple[CircuitState, int]:
        if self._state == CircuitState.CLOSED:
            if self._expiry is not None and self._expiry <= now:
                self._new_generation(now)
        elif self._state == CircuitState.OPEN:
            if self._expiry is not None and self._expiry <= now:
                self._set_state(CircuitState.HALF_OPEN, now)
        return self._state, self._generation

    def _set_state(self, new_state: CircuitState, now: float) -> None:
        """Transition to a new state. Caller holds the lock."""
        if self._state == new_state:
            return
        old_state = self._state
        self._state = new_state
        self._new_generation(now)
        self._stats.state_changes += 1
        self._stats.last_state_change = utcnow()
        self._pending.append((old_state, new_state))

    def _notify(self) -> None:
        """Report transitions recorded under the lock."""
        with self._lock:
            pending, self._pending = self._pending, []
        for old_state, new_state in pending:
            logger.info(
                "circuit_state_changed",
                name=self.name,
                from_state=old_state.value,
                to_state=new_state.value,
            )
            if self.on_state_change is not None:
                self.on_state_change(self.name, old_state, new_state)

    def _before_request(self) -> int:
        with self._lock:
            state, generation = self._current_state(self.clock())
            self._stats.total_requests += 1
            if state == CircuitState.OPEN:
                self._stats.rejected_requests += 1
                error = CircuitOpenError(self.name)
            elif state == CircuitState.HALF_OPEN and self._counts.requests >= self.max_requests:
                self._stats.rejected_requests += 1
                error = CircuitOpenError(self.name, too_many_requests=True)
            else:
                self._counts.on_request()
                error = None
        self._notify()
        if error is not None:
            raise error
        return generation

    def _after_request(self, before: int, success: bool) -> None:
        with self._lock:
            now = self.clock()
            state, generation = self._current_state(now)
            if success:
                self._stats.successful_requests += 1
                self._stats.last_success_time = utcnow()
            else:
                self._stats.failed_requests += 1
                self._stats.last_failure_time = utcnow()

            # Outcomes from an ended generation are discarded.
            if generation == before:
                if success:
                    self._on_success(state, now)
                else:
                    self._on_failure(state, now)
        self._notify()

    def _on_success(self, state: CircuitState, now: float) -> None:
        if state == CircuitState.CLOSED:
            self._counts.on_success()
        elif state == CircuitState.HALF_OPEN:
            self._counts.on_success()
            if self._counts.consecutive_successes >= self.max_requests:
                self._set_state(CircuitState.CLOSED, now)

    def _on_failure(self, state: CircuitState, now: float) -> None:
        if state == CircuitState.CLOSED:
            self._counts.on_failure()
            if self._trips(self._counts):
                self._set_state(CircuitState.OPEN, now)
        elif state == CircuitState.HALF_OPEN:
            self._set_state(CircuitState.OPEN, now)

    # ── Execution ────────────────────────────────────────────────

    def execute(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Execute a function through the circuit breaker.

        Args:
            func: Function to call
            *args: Positional arguments
            **kwargs: Keyword arguments

        Returns:
            Function result

        Raises:
            CircuitOpenError: If the circuit rejected the call; ``func`` was
                not invoked
            Exception: Whatever ``func`` raised, unchanged
        """
        generation = self._before_request()
        try:
            result = func(*args, **kwargs)
        except Exception as e:
            failed = self.is_failure(e) if self.is_failure is not None else True
            self._after_request(generation, not failed)
            raise
        except BaseException:
            self._after_request(generation, False)
            raise
        self._after_request(generation, True)
        return result

    def reset(self) -> None:
        """Reset circuit to closed state with fresh counts."""
        with self._lock:
            now = self.clock()
            if self._state == CircuitState.CLOSED:
                self._new_generation(now)
            else:
                self._set_state(CircuitState.CLOSED, now)
        self._notify()

    def force_open(self) -> None:
        """Force circuit to open state (for testing/maintenance)."""
        with self._lock:
            now = self.clock()
            if self._state == CircuitState.OPEN:
                self._new_generation(now)
            else:
                self._set_state(CircuitState.OPEN, now)
        self._notify()
