"""
Shared pytest fixtures and configuration for courier tests.

This module provides:
- Deterministic time (ManualClock) and recording sleepers
- A scripted transport that replays canned outcomes
- structlog reset between tests so log capture stays isolated

Usage:
    Fixtures are auto-discovered by pytest. Use them as function arguments:

    def test_something(clock, sleeper, make_transport):
        ...
"""

import threading
from collections.abc import Callable, Generator
from typing import Any

import pytest
import structlog

from courier.core.secrets import SecretToken
from courier.execution.circuit_breaker import CircuitBreaker
from courier.execution.context import CallContext
from courier.execution.rate_limit import RateLimiter
from courier.execution.sleeper import ManualClock, RecordingSleeper

TOKEN = "123:ABC"


# =============================================================================
# Test Markers Configuration
# =============================================================================


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Mark all tests without explicit markers as unit tests."""
    for item in items:
        markers = {mark.name for mark in item.iter_markers()}
        if not markers.intersection({"unit", "integration", "slow"}):
            item.add_marker(pytest.mark.unit)


@pytest.fixture(autouse=True)
def reset_structlog() -> Generator[None, None, None]:
    """Restore structlog defaults after each test."""
    yield
    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()


# =============================================================================
# Time
# =============================================================================


@pytest.fixture
def clock() -> ManualClock:
    """Monotonic clock that only moves when advanced."""
    return ManualClock(start=1000.0)


@pytest.fixture
def sleeper(clock: ManualClock) -> RecordingSleeper:
    """Recording sleeper that advances ``clock`` by each recorded sleep."""
    return RecordingSleeper(clock)


@pytest.fixture
def ctx() -> CallContext:
    return CallContext.background()


# =============================================================================
# Collaborators
# =============================================================================


class ScriptedTransport:
    """Transport that replays a script of outcomes.

    Each entry is either an exception instance (raised), a callable (called
    with the request, its result returned or its exception propagated) or a
    plain value (returned). Once the script runs out the last entry repeats.
    """

    def __init__(self, outcomes: list[Any]):
        self.outcomes = list(outcomes)
        self.requests: list[Any] = []
        self._lock = threading.Lock()

    @property
    def calls(self) -> int:
        with self._lock:
            return len(self.requests)

    def send(self, request: Any) -> Any:
        with self._lock:
            index = min(len(self.requests), len(self.outcomes) - 1)
            self.requests.append(request)
            outcome = self.outcomes[index]
        if isinstance(outcome, BaseException):
            raise outcome
        if callable(outcome):
            return outcome(request)
        return outcome


@pytest.fixture
def make_transport() -> Callable[..., ScriptedTransport]:
    """Factory: ``make_transport(APIError(...), "ok")``."""

    def factory(*outcomes: Any) -> ScriptedTransport:
        return ScriptedTransport(list(outcomes) or ["ok"])

    return factory


@pytest.fixture
def secret() -> SecretToken:
    return SecretToken(TOKEN)


@pytest.fixture
def roomy_limiter(clock: ManualClock) -> RateLimiter:
    """Limiter that never makes a test wait."""
    return RateLimiter(
        global_rps=1000.0,
        global_burst=1000,
        key_rps=1000.0,
        key_burst=1000,
        clock=clock,
    )


@pytest.fixture
def breaker(clock: ManualClock) -> CircuitBreaker:
    return CircuitBreaker(name="test", clock=clock)
