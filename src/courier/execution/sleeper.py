"""Pluggable, cancellable waiting.

Every timed pause in the dispatch core goes through a ``Sleeper`` so tests
can replace real delays with a recorder.

ARCHITECTURE
────────────
::

    Sleeper (ABC)
      ├── RealSleeper        ─ waits on the CallContext (production)
      └── RecordingSleeper   ─ records durations, never blocks (tests)

    ManualClock              ─ injectable monotonic clock; a
                               RecordingSleeper can advance it

Example::

    sleeper = RecordingSleeper()
    sleeper.sleep(CallContext.background(), 2.0)
    assert sleeper.calls == [2.0]

Tags:
    courier, execution, sleeper, testing, time
"""

import threading
from abc import ABC, abstractmethod

from courier.execution.context import CallContext


class ManualClock:
    """Monotonic clock that only moves when told to.

    Pass an instance wherever a ``clock`` callable is accepted.
    """

    def __init__(self, start: float = 0.0):
        self._now = start
        self._lock = threading.Lock()

    def __call__(self) -> float:
        with self._lock:
            return self._now

    def advance(self, seconds: float) -> None:
        if seconds < 0:
            raise ValueError("cannot move a clock backwards")
        with self._lock:
            self._now += seconds


class Sleeper(ABC):
    """Abstract cancellable delay."""

    @abstractmethod
    def sleep(self, ctx: CallContext, seconds: float) -> None:
        """Pause for ``seconds`` or until ``ctx`` finishes.

        Raises:
            ContextCancelled: If the context is cancelled or its deadline
                passes before the pause completes
        """
        ...


class RealSleeper(Sleeper):
    """Sleeps in real time, aborting early on cancellation."""

    def sleep(self, ctx: CallContext, seconds: float) -> None:
        ctx.raise_if_done()
        if seconds <= 0:
            return
        if ctx.wait(seconds):
            ctx.raise_if_done()


class RecordingSleeper(Sleeper):
    """Records requested durations without sleeping.

    Raises the context error when the context is already finished, as a
    real sleeper would. With a ``clock``, each recorded sleep advances it by
    the requested duration.
    """

    def __init__(self, clock: ManualClock | None = None):
        self.clock = clock
        self._calls: list[float] = []
        self._lock = threading.Lock()

    def sleep(self, ctx: CallContext, seconds: float) -> None:
        ctx.raise_if_done()
        with self._lock:
            self._calls.append(seconds)
        if self.clock is not None and seconds > 0:
            self.clock.advance(seconds)

    @property
    def calls(self) -> list[float]:
        """Copy of every recorded duration, oldest first."""
        with self._lock:
            return list(self._calls)

    @property
    def call_count(self) -> int:
        with self._lock:
            return len(self._calls)

    @property
    def total(self) -> float:
        with self._lock:
            return sum(self._calls)

    @property
    def last_call(self) -> float:
        """Most recent duration, 0.0 if nothing was recorded."""
        with self._lock:
            return self._calls[-1] if self._calls else 0.0

    def call_at(self, index: int) -> float:
        """Duration recorded at ``index``, 0.0 when out of range."""
        with self._lock:
            if 0 <= index < len(self._calls):
                return self._calls[index]
            return 0.0

    def reset(self) -> None:
        with self._lock:
            self._calls.clear()
