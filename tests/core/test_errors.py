"""Tests for courier.core.errors module."""

import pytest

from courier.core.errors import (
    APIError,
    ClassifiedError,
    ConfigError,
    ContextCancelled,
    CourierError,
    DeadlineExceeded,
    ErrorContext,
    ErrorKind,
    RetriesExhaustedError,
    TransportError,
    classify_error,
    detect_kind,
    find_error,
    get_retry_after,
    is_breaker_failure,
    is_kind,
    is_retryable,
    is_retryable_code,
    iter_chain,
    parse_retry_after,
)


class TestDetectKind:
    """Description first, status code second."""

    def test_description_beats_status_code(self):
        """A 403 with a blocked description is BOT_BLOCKED, not FORBIDDEN."""
        kind = detect_kind(403, "Forbidden: bot was blocked by the user")
        assert kind is ErrorKind.BOT_BLOCKED

    def test_falls_back_to_status_code(self):
        """Unmatched description falls back to the status table."""
        assert detect_kind(403, "Forbidden") is ErrorKind.FORBIDDEN
        assert detect_kind(401, "Unauthorized") is ErrorKind.UNAUTHORIZED
        assert detect_kind(404, "Not Found") is ErrorKind.NOT_FOUND
        assert detect_kind(429, "Too Many Requests: retry after 5") is ErrorKind.TOO_MANY_REQUESTS

    def test_no_match_is_none(self):
        """No sentinel is a valid outcome, not an error."""
        assert detect_kind(400, "Bad Request: something new") is None
        assert detect_kind(0, "") is None

    def test_case_insensitive(self):
        """Matching ignores case."""
        assert detect_kind(400, "Bad Request: CHAT NOT FOUND") is ErrorKind.CHAT_NOT_FOUND

    @pytest.mark.parametrize(
        "description,expected",
        [
            ("Bad Request: message is not modified: specified new message content", ErrorKind.MESSAGE_NOT_MODIFIED),
            ("Bad Request: message to edit not found", ErrorKind.MESSAGE_NOT_FOUND),
            ("Bad Request: message to delete not found", ErrorKind.MESSAGE_NOT_FOUND),
            ("Bad Request: message can't be edited", ErrorKind.MESSAGE_CANT_BE_EDITED),
            ("Bad Request: message can't be deleted for everyone", ErrorKind.MESSAGE_CANT_BE_DELETED),
            ("Forbidden: bot was kicked from the group chat", ErrorKind.BOT_KICKED),
            ("Forbidden: user is deactivated", ErrorKind.USER_DEACTIVATED),
            ("Bad Request: not enough rights to send text messages", ErrorKind.NO_RIGHTS),
            ("Bad Request: query is too old and response timeout expired", ErrorKind.CALLBACK_EXPIRED),
            ("Bad Request: BUTTON_DATA_INVALID", ErrorKind.INVALID_CALLBACK_DATA),
        ],
    )
    def test_description_table(self, description, expected):
        """Known remote phrases map to their sentinels."""
        assert detect_kind(400, description) is expected


class TestIsRetryableCode:
    """Retryability depends on the code only."""

    @pytest.mark.parametrize("code", [429, 500, 501, 502, 503, 504])
    def test_retryable(self, code):
        assert is_retryable_code(code) is True

    @pytest.mark.parametrize("code", [0, 400, 401, 403, 404, 499, 505, 520])
    def test_not_retryable(self, code):
        assert is_retryable_code(code) is False


class TestParseRetryAfter:
    """Retry hint from the body or the Retry-After header."""

    def test_body_parameter(self):
        assert parse_retry_after({"retry_after": 5}) == 5.0

    def test_body_wins_over_header(self):
        assert parse_retry_after({"retry_after": 7}, {"Retry-After": "3"}) == 7.0

    def test_header_fallback(self):
        """Header name matching is case-insensitive."""
        assert parse_retry_after({}, {"Retry-After": "3"}) == 3.0
        assert parse_retry_after(None, {"retry-after": " 4 "}) == 4.0

    def test_ignores_invalid_values(self):
        assert parse_retry_after({"retry_after": 0}) is None
        assert parse_retry_after({"retry_after": "soon"}) is None
        assert parse_retry_after(None, {"Retry-After": "Wed, 21 Oct 2015 07:28:00 GMT"}) is None
        assert parse_retry_after(None, {"Retry-After": "-2"}) is None
        assert parse_retry_after() is None


class TestAPIError:
    """Tests for APIError."""

    def test_message_format(self):
        err = APIError("sendMessage", 400, "Bad Request: chat not found")
        assert str(err) == "sendMessage failed: Bad Request: chat not found (code=400)"
        assert err.kind is ErrorKind.CHAT_NOT_FOUND
        assert err.retryable is False

    def test_message_with_retry_after(self):
        err = APIError("sendMessage", 429, "Too Many Requests: retry after 5", retry_after=5.0)
        assert str(err) == (
            "sendMessage failed: Too Many Requests: retry after 5 (code=429, retry_after=5s)"
        )
        assert err.retryable is True
        assert err.retry_after == 5.0

    def test_non_positive_retry_after_dropped(self):
        err = APIError("sendMessage", 429, "Too Many Requests", retry_after=0)
        assert err.retry_after is None
        assert "retry_after" not in str(err)

    def test_context_carries_method_and_status(self):
        err = APIError("editMessageText", 400, "Bad Request")
        assert err.context.method == "editMessageText"
        assert err.context.http_status == 400

    def test_from_response(self):
        """Builds the error from a decoded failure body."""
        payload = {
            "ok": False,
            "error_code": 429,
            "description": "Too Many Requests: retry after 12",
            "parameters": {"retry_after": 12},
        }
        err = APIError.from_response("sendPhoto", payload, {"Retry-After": "3"})
        assert err.code == 429
        assert err.retry_after == 12.0
        assert err.kind is ErrorKind.TOO_MANY_REQUESTS

    def test_from_response_header_only(self):
        payload = {"ok": False, "error_code": 503, "description": "Service Unavailable"}
        err = APIError.from_response("getMe", payload, {"Retry-After": "2"})
        assert err.retry_after == 2.0
        assert err.retryable is True

    def test_migrate_to_chat_id(self):
        err = APIError(
            "sendMessage",
            400,
            "Bad Request: group chat was upgraded to a supergroup chat",
            parameters={"migrate_to_chat_id": -1001234},
        )
        assert err.migrate_to_chat_id == -1001234
        assert APIError("sendMessage", 400, "Bad Request").migrate_to_chat_id is None


class TestCourierError:
    """Tests for the base error."""

    def test_defaults(self):
        err = CourierError("boom")
        assert err.kind is None
        assert err.retryable is False
        assert err.retry_after is None
        assert err.cause is None

    def test_cause_sets_dunder_cause(self):
        root = ValueError("root")
        err = CourierError("outer", cause=root)
        assert err.__cause__ is root

    def test_with_context(self):
        err = CourierError("boom").with_context(method="sendMessage", chat="42")
        assert err.context.method == "sendMessage"
        assert err.context.metadata == {"chat": "42"}

    def test_to_dict(self):
        err = APIError("sendMessage", 429, "Too Many Requests", retry_after=3)
        data = err.to_dict()
        assert data["error_type"] == "APIError"
        assert data["kind"] == "too_many_requests"
        assert data["retryable"] is True
        assert data["retry_after"] == 3
        assert data["context"] == {"method": "sendMessage", "http_status": 429}

    def test_repr(self):
        assert repr(ContextCancelled()) == "ContextCancelled('context cancelled', kind=cancelled)"


class TestErrorContext:
    """Test ErrorContext dataclass."""

    def test_to_dict_skips_unset_fields(self):
        ctx = ErrorContext(routing_key="42", attempt=0, metadata={"x": 1})
        assert ctx.to_dict() == {"routing_key": "42", "attempt": 0, "x": 1}


class TestSpecialErrors:
    """Cancellation, transport and config errors."""

    def test_cancellation_kinds(self):
        assert ContextCancelled().kind is ErrorKind.CANCELLED
        deadline = DeadlineExceeded()
        assert isinstance(deadline, ContextCancelled)
        assert deadline.kind is ErrorKind.CANCELLED
        assert str(deadline) == "context deadline exceeded"

    def test_transport_error_retryable_only_on_timeout(self):
        assert TransportError("read timed out", timeout=True).retryable is True
        assert TransportError("connection refused").retryable is False

    def test_config_error_is_value_error(self):
        err = ConfigError("global_rps", "must be positive")
        assert isinstance(err, ValueError)
        assert str(err) == "config: global_rps - must be positive"

    def test_retries_exhausted_wraps_last_error(self):
        last = APIError("sendMessage", 400, "Bad Request: chat not found")
        err = RetriesExhaustedError(3, last)

        assert str(err) == (
            "gave up after 3 attempts: "
            "sendMessage failed: Bad Request: chat not found (code=400)"
        )
        assert err.kind is ErrorKind.RETRIES_EXHAUSTED
        assert err.__cause__ is last
        assert is_kind(err, ErrorKind.RETRIES_EXHAUSTED)
        assert is_kind(err, ErrorKind.CHAT_NOT_FOUND)
        assert classify_error(err).code == 400


class TestClassifyError:
    """classify_error maps any exception onto a ClassifiedError."""

    def test_api_error(self):
        err = APIError("sendMessage", 429, "Too Many Requests", retry_after=5)
        classified = classify_error(err)
        assert classified == ClassifiedError(
            code=429,
            description="Too Many Requests",
            kind=ErrorKind.TOO_MANY_REQUESTS,
            retry_after=5.0,
            retryable=True,
        )

    def test_uncategorized_api_error(self):
        classified = classify_error(APIError("sendMessage", 400, "Bad Request: weird"))
        assert classified.kind is None
        assert classified.category is ErrorKind.UNCATEGORIZED
        assert classified.retryable is False

    def test_transport_timeout(self):
        classified = classify_error(TransportError("timeout", timeout=True))
        assert classified.retryable is True
        assert classified.code == 0

    def test_builtin_timeout_is_retryable(self):
        assert classify_error(TimeoutError("timed out")).retryable is True

    def test_other_exceptions_not_retryable(self):
        classified = classify_error(ConnectionError("refused"))
        assert classified.retryable is False
        assert classified.description == "refused"

    def test_cancellation_wins(self):
        """Cancellation anywhere in the chain classifies as CANCELLED."""
        err = CourierError("wrapped", cause=ContextCancelled())
        classified = classify_error(err)
        assert classified.kind is ErrorKind.CANCELLED
        assert classified.retryable is False

    def test_wrapped_api_error(self):
        api = APIError("sendMessage", 502, "Bad Gateway")
        outer = RuntimeError("send failed")
        outer.__cause__ = api
        assert classify_error(outer).code == 502
        assert is_retryable(outer) is True

    def test_get_retry_after(self):
        assert get_retry_after(APIError("m", 429, "x", retry_after=9)) == 9.0
        assert get_retry_after(ValueError("x")) is None


class TestIsBreakerFailure:
    """Only degradation counts against the breaker."""

    @pytest.mark.parametrize("code", [400, 403, 404, 429, 499])
    def test_client_errors_are_not_failures(self, code):
        assert is_breaker_failure(APIError("m", code, "x")) is False

    @pytest.mark.parametrize("code", [500, 502, 503, 504])
    def test_server_errors_are_failures(self, code):
        assert is_breaker_failure(APIError("m", code, "x")) is True

    def test_transport_errors_are_failures(self):
        assert is_breaker_failure(TransportError("refused")) is True
        assert is_breaker_failure(ConnectionError("refused")) is True

    def test_cancellation_is_not_a_failure(self):
        assert is_breaker_failure(ContextCancelled()) is False
        assert is_breaker_failure(DeadlineExceeded()) is False


class TestChainHelpers:
    """Chain walking through .original, .cause and __cause__."""

    def test_iter_chain_order(self):
        root = ValueError("root")
        middle = CourierError("middle", cause=root)
        outer = RuntimeError("outer")
        outer.__cause__ = middle
        assert list(iter_chain(outer)) == [outer, middle, root]

    def test_iter_chain_survives_cycles(self):
        a = CourierError("a")
        b = CourierError("b", cause=a)
        a.cause = b
        assert list(iter_chain(b)) == [b, a]

    def test_find_error(self):
        api = APIError("m", 400, "Bad Request: chat not found")
        outer = CourierError("outer", cause=api)
        assert find_error(outer, APIError) is api
        assert find_error(outer, TransportError) is None

    def test_is_kind(self):
        api = APIError("m", 400, "Bad Request: chat not found")
        outer = CourierError("outer", cause=api)
        assert is_kind(outer, ErrorKind.CHAT_NOT_FOUND) is True
        assert is_kind(outer, ErrorKind.BOT_BLOCKED) is False
