"""
Tests for courier.core.logging.

Tests verify:
- JSON output carries ECS field names and bound context
- DEBUG logs are suppressed at INFO level
- LogContext restores the previous context on exit
"""

import json
import logging

import structlog

from courier.core.logging import (
    LogContext,
    bind_context,
    clear_context,
    configure_logging,
    get_logger,
    unbind_context,
)
from courier.core.secrets import SecretToken


def _json_records(caplog) -> list[dict]:
    return [json.loads(record.getMessage()) for record in caplog.records]


class TestConfigureLogging:
    """configure_logging installs the processor chain."""

    def test_json_output(self, caplog):
        caplog.set_level(logging.DEBUG)
        configure_logging(level="DEBUG", json_format=True, service="courier-test")
        log = get_logger("courier.test")

        with LogContext(routing_key="42", method="sendMessage"):
            log.info("dispatch_started", attempt=0)

        payload = _json_records(caplog)[-1]
        assert payload["event"] == "dispatch_started"
        assert payload["attempt"] == 0
        assert payload["routing_key"] == "42"
        assert payload["method"] == "sendMessage"
        assert payload["log.level"] == "info"
        assert payload["logger"] == "courier.test"
        assert payload["service.name"] == "courier-test"
        assert "@timestamp" in payload

    def test_debug_suppressed_at_info(self, caplog):
        caplog.set_level(logging.DEBUG)
        configure_logging(level="INFO", json_format=True)
        log = get_logger("courier.test.level")

        log.debug("hidden_event")
        log.info("shown_event")

        events = [payload["event"] for payload in _json_records(caplog)]
        assert "shown_event" in events
        assert "hidden_event" not in events

    def test_secret_token_renders_redacted(self, caplog):
        caplog.set_level(logging.DEBUG)
        configure_logging(level="INFO", json_format=True)
        log = get_logger("courier.test.secret")

        log.info("configured", token=SecretToken("123:ABC"))

        message = caplog.records[-1].getMessage()
        assert "123:ABC" not in message
        assert "[REDACTED]" in message


class TestContextHelpers:
    """bind/unbind/clear and LogContext scoping."""

    def setup_method(self):
        clear_context()

    def teardown_method(self):
        clear_context()

    def test_bind_and_unbind(self):
        bind_context(routing_key="42", method="sendMessage")
        assert structlog.contextvars.get_contextvars() == {
            "routing_key": "42",
            "method": "sendMessage",
        }

        unbind_context("method")
        assert structlog.contextvars.get_contextvars() == {"routing_key": "42"}

    def test_clear(self):
        bind_context(routing_key="42")
        clear_context()
        assert structlog.contextvars.get_contextvars() == {}

    def test_log_context_restores_previous_values(self):
        bind_context(routing_key="outer")

        with LogContext(routing_key="inner", method="sendMessage"):
            assert structlog.contextvars.get_contextvars() == {
                "routing_key": "inner",
                "method": "sendMessage",
            }

        assert structlog.contextvars.get_contextvars() == {"routing_key": "outer"}
