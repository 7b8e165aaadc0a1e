"""Cancellation and deadlines for dispatched calls.

A ``CallContext`` travels with one logical call. Every suspension point
(rate-limiter wait, retry sleep) waits on it, so cancelling the context or
letting its deadline pass aborts the whole call chain.

Examples:
    Deadline:

    >>> ctx = CallContext.with_timeout(5.0)
    >>> ctx.remaining() <= 5.0
    True

    Cancellation from another thread:

    >>> ctx = CallContext.background()
    >>> threading.Timer(0.1, ctx.cancel).start()
    >>> ctx.wait(10.0)   # returns after ~0.1s
    True
    >>> ctx.error()
    ContextCancelled('context cancelled', kind=cancelled)

Guardrails:
    - Uses the monotonic clock; wall-clock changes do not move deadlines
    - A derived context is cancelled when its parent is

Tags:
    cancellation, deadline, resilience, execution, courier
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field

from courier.core.errors import ContextCancelled, DeadlineExceeded


@dataclass
class CallContext:
    """Deadline and cancel signal for one logical call.

    Attributes:
        deadline: Absolute deadline on the monotonic clock, or None
        parent: Context this one was derived from, or None
    """

    deadline: float | None = None
    parent: CallContext | None = None
    _cancelled: threading.Event = field(default_factory=threading.Event, init=False, repr=False)
    _reason: ContextCancelled | None = field(default=None, init=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    @classmethod
    def background(cls) -> CallContext:
        """A context that is never cancelled on its own."""
        return cls()

    @classmethod
    def with_timeout(cls, seconds: float, parent: CallContext | None = None) -> CallContext:
        """A context whose deadline is ``seconds`` from now.

        With a parent, the earlier of the two deadlines applies.
        """
        deadline = time.monotonic() + seconds
        if parent is not None and parent.deadline is not None:
            deadline = min(deadline, parent.deadline)
        return cls(deadline=deadline, parent=parent)

    def child(self) -> CallContext:
        """A context cancelled with this one but cancellable on its own."""
        return CallContext(deadline=self.deadline, parent=self)

    def cancel(self, reason: ContextCancelled | None = None) -> None:
        """Cancel the context. The first reason recorded wins."""
        with self._lock:
            if self._reason is None:
                self._reason = reason or ContextCancelled()
        self._cancelled.set()

    def error(self) -> ContextCancelled | None:
        """The cancellation error, or None while the context is live."""
        if self._cancelled.is_set():
            return self._reason
        if self.parent is not None:
            parent_error = self.parent.error()
            if parent_error is not None:
                return parent_error
        if self.deadline is not None and time.monotonic() >= self.deadline:
            return DeadlineExceeded()
        return None

    def done(self) -> bool:
        return self.error() is not None

    def raise_if_done(self) -> None:
        """Raise the cancellation error if the context is finished.

        Each call raises a new exception carrying the recorded reason as its
        ``cause``, so concurrent callers never share one exception object.
        """
        error = self.error()
        if error is None:
            return
        error_type = DeadlineExceeded if isinstance(error, DeadlineExceeded) else ContextCancelled
        raise error_type(error.message, cause=error)

    def remaining(self) -> float | None:
        """Seconds until the deadline (negative once passed), or None."""
        if self.deadline is None:
            return None
        return self.deadline - time.monotonic()

    def wait(self, seconds: float) -> bool:
        """Block up to ``seconds``; return True if the context finished.

        Returns early when the context is cancelled or its deadline passes.
        """
        end = time.monotonic() + max(0.0, seconds)
        while True:
            if self.done():
                return True
            now = time.monotonic()
            if now >= end:
                return False
            timeout = end - now
            if self.deadline is not None:
                timeout = min(timeout, max(0.0, self.deadline - now))
            if self.parent is not None:
                # Parent cancellation is observed in short slices.
                timeout = min(timeout, 0.05)
            self._cancelled.wait(timeout)
