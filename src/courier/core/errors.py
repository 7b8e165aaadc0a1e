"""
Structured error types and failure classification for courier.

Every failure that crosses the dispatch core is mapped onto a small, stable
taxonomy so callers can make programmatic decisions ("was the bot blocked?",
"should I retry?") without parsing message text.

Manifesto:
    - **Stable sentinels:** ``ErrorKind`` values never change meaning
    - **Description first:** Remote status codes are coarse (many distinct
      failures share 400); the description carries the specificity
    - **Explicit retry semantics:** Retryability is decided by code, not kind
    - **Chain-aware checks:** Category checks walk the error chain, so they
      survive scrubbing and wrapping

Architecture:
    ::

        ┌─────────────────────────────────────────────────────────────┐
        │                       CourierError                           │
        │  (kind, retryable, retry_after, context, cause)             │
        ├─────────────────────────────────────────────────────────────┤
        │  APIError          TransportError     ContextCancelled      │
        │  (code, desc)      (timeout flag)     └ DeadlineExceeded    │
        │                                                              │
        │  CircuitOpenError  RateLimitedError   ScrubbedError         │
        │  (breaker module)  (limiter module)   (secrets module)      │
        │                                                              │
        │  ConfigError       RetriesExhaustedError (cause = last error)│
        └─────────────────────────────────────────────────────────────┘

        detect_kind(code, description) ─► ErrorKind | None
        is_retryable_code(code)         ─► bool
        classify_error(exc)             ─► ClassifiedError

Examples:
    >>> detect_kind(403, "Forbidden: bot was blocked by the user")
    <ErrorKind.BOT_BLOCKED: 'bot_blocked'>
    >>> detect_kind(403, "Forbidden")
    <ErrorKind.FORBIDDEN: 'forbidden'>
    >>> detect_kind(400, "Bad Request: something new") is None
    True
    >>> is_retryable_code(502)
    True

Guardrails:
    ❌ DON'T: Match on ``str(exc)`` to find out what happened
    ✅ DO: Use ``is_kind(exc, ErrorKind.CHAT_NOT_FOUND)``

    ❌ DON'T: Treat a missing kind as an error condition
    ✅ DO: Fall back to ``code`` when ``kind`` is None

Tags:
    error-handling, classification, retry-logic, courier
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypeVar

E = TypeVar("E", bound=BaseException)


class ErrorKind(str, Enum):
    """Sentinel categories for programmatic error checks."""

    # Generic status-code sentinels
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    TOO_MANY_REQUESTS = "too_many_requests"

    # Message errors
    MESSAGE_NOT_FOUND = "message_not_found"
    MESSAGE_NOT_MODIFIED = "message_not_modified"
    MESSAGE_CANT_BE_EDITED = "message_cant_be_edited"
    MESSAGE_CANT_BE_DELETED = "message_cant_be_deleted"
    MESSAGE_TOO_OLD = "message_too_old"

    # Chat/user errors
    BOT_BLOCKED = "bot_blocked"
    BOT_KICKED = "bot_kicked"
    CHAT_NOT_FOUND = "chat_not_found"
    USER_DEACTIVATED = "user_deactivated"
    NO_RIGHTS = "no_rights"

    # Callback errors
    CALLBACK_EXPIRED = "callback_expired"
    INVALID_CALLBACK_DATA = "invalid_callback_data"

    # Client-side outcomes
    RATE_LIMITED = "rate_limited"
    CIRCUIT_OPEN = "circuit_open"
    RETRIES_EXHAUSTED = "retries_exhausted"
    CANCELLED = "cancelled"

    # No sentinel matched. A classification outcome, not an error.
    UNCATEGORIZED = "uncategorized"


# Ordered: first match wins.
DESCRIPTION_KINDS: tuple[tuple[str, ErrorKind], ...] = (
    ("message is not modified", ErrorKind.MESSAGE_NOT_MODIFIED),
    ("message to edit not found", ErrorKind.MESSAGE_NOT_FOUND),
    ("message to delete not found", ErrorKind.MESSAGE_NOT_FOUND),
    ("message not found", ErrorKind.MESSAGE_NOT_FOUND),
    ("message can't be edited", ErrorKind.MESSAGE_CANT_BE_EDITED),
    ("message can't be deleted", ErrorKind.MESSAGE_CANT_BE_DELETED),
    ("message is too old", ErrorKind.MESSAGE_TOO_OLD),
    ("bot was blocked", ErrorKind.BOT_BLOCKED),
    ("bot was kicked", ErrorKind.BOT_KICKED),
    ("chat not found", ErrorKind.CHAT_NOT_FOUND),
    ("user is deactivated", ErrorKind.USER_DEACTIVATED),
    ("not enough rights", ErrorKind.NO_RIGHTS),
    ("query is too old", ErrorKind.CALLBACK_EXPIRED),
    ("button_data_invalid", ErrorKind.INVALID_CALLBACK_DATA),
)

STATUS_KINDS: dict[int, ErrorKind] = {
    401: ErrorKind.UNAUTHORIZED,
    403: ErrorKind.FORBIDDEN,
    404: ErrorKind.NOT_FOUND,
    429: ErrorKind.TOO_MANY_REQUESTS,
}

RETRYABLE_SERVER_CODES = range(500, 505)


@dataclass
class ErrorContext:
    """
    Structured metadata attached to an error for logging.

    Attributes:
        method: Remote method that failed (e.g. ``sendMessage``)
        routing_key: Routing key the call was dispatched under
        http_status: Status code if the remote answered
        attempt: Zero-based attempt index the failure belongs to
        metadata: Additional key-value pairs

    Never store credentials here; ``to_dict()`` output goes to logs.
    """

    method: str | None = None
    routing_key: str | None = None
    http_status: int | None = None
    attempt: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for key in ["method", "routing_key", "http_status", "attempt"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class CourierError(Exception):
    """
    Base exception for all courier errors.

    All CourierError instances carry:
    - **kind:** ``ErrorKind`` sentinel, or None when nothing matched
    - **retryable:** Whether the dispatcher may try the call again
    - **retry_after:** Optional seconds the remote asked us to wait
    - **context:** ``ErrorContext`` with structured metadata
    - **cause:** Optional underlying exception for chaining

    Subclasses set ``default_kind`` and ``default_retryable``.

    Examples:
        >>> error = CourierError("boom")
        >>> error.retryable
        False
        >>> error.with_context(method="sendMessage").context.method
        'sendMessage'
    """

    default_kind: ErrorKind | None = None
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        kind: ErrorKind | None = None,
        retryable: bool | None = None,
        retry_after: float | None = None,
        context: ErrorContext | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.kind = kind if kind is not None else self.default_kind
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.retry_after = retry_after
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> CourierError:
        """Add context to this error (fluent API)."""
        for key, value in kwargs.items():
            if key != "metadata" and hasattr(self.context, key):
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result: dict[str, Any] = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "kind": self.kind.value if self.kind else None,
            "retryable": self.retryable,
        }
        if self.retry_after is not None:
            result["retry_after"] = self.retry_after
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        kind = self.kind.value if self.kind else None
        return f"{self.__class__.__name__}({self.message!r}, kind={kind})"


class APIError(CourierError):
    """
    Structured failure reported by the remote service.

    The kind is detected from the description first and the status code
    second; retryability depends on the code only.

    Example:
        >>> err = APIError("sendMessage", 400, "Bad Request: chat not found")
        >>> err.kind
        <ErrorKind.CHAT_NOT_FOUND: 'chat_not_found'>
        >>> str(err)
        'sendMessage failed: Bad Request: chat not found (code=400)'
    """

    def __init__(
        self,
        method: str,
        code: int,
        description: str,
        *,
        retry_after: float | None = None,
        parameters: Mapping[str, Any] | None = None,
    ):
        if retry_after is not None and retry_after <= 0:
            retry_after = None
        self.method = method
        self.code = code
        self.description = description
        self.parameters = dict(parameters or {})

        if retry_after is not None:
            message = (
                f"{method} failed: {description} "
                f"(code={code}, retry_after={retry_after:g}s)"
            )
        else:
            message = f"{method} failed: {description} (code={code})"

        super().__init__(
            message,
            kind=detect_kind(code, description),
            retryable=is_retryable_code(code),
            retry_after=retry_after,
            context=ErrorContext(method=method, http_status=code),
        )

    @property
    def migrate_to_chat_id(self) -> int | None:
        """Chat id the remote asked us to migrate to, if any."""
        value = self.parameters.get("migrate_to_chat_id")
        return int(value) if value else None

    @classmethod
    def from_response(
        cls,
        method: str,
        payload: Mapping[str, Any],
        headers: Mapping[str, str] | None = None,
    ) -> APIError:
        """Build an APIError from a decoded failure body.

        Args:
            method: Remote method that was called
            payload: Decoded body, e.g. ``{"ok": false, "error_code": 429,
                "description": "...", "parameters": {"retry_after": 5}}``
            headers: Response headers, consulted for ``Retry-After``
        """
        parameters = payload.get("parameters") or {}
        return cls(
            method,
            int(payload.get("error_code") or 0),
            str(payload.get("description") or ""),
            retry_after=parse_retry_after(parameters, headers),
            parameters=parameters,
        )


class TransportError(CourierError):
    """Transport-level failure with no structured remote answer.

    Only timeouts are retryable.
    """

    def __init__(
        self,
        message: str,
        *,
        timeout: bool = False,
        cause: BaseException | None = None,
    ):
        self.timeout = timeout
        super().__init__(message, retryable=timeout, cause=cause)


class ContextCancelled(CourierError):
    """The caller's context was cancelled before the call could finish."""

    default_kind = ErrorKind.CANCELLED

    def __init__(self, message: str = "context cancelled", **kwargs: Any):
        super().__init__(message, **kwargs)


class DeadlineExceeded(ContextCancelled):
    """The caller's context deadline passed before the call could finish."""

    def __init__(self, message: str = "context deadline exceeded", **kwargs: Any):
        super().__init__(message, **kwargs)


class ConfigError(CourierError, ValueError):
    """Invalid configuration. Never retryable."""

    def __init__(self, key: str, message: str):
        self.key = key
        super().__init__(f"config: {key} - {message}")


class RetriesExhaustedError(CourierError):
    """Retries ran out; the last attempt's error is the ``cause``.

    Category checks on the last error still succeed through the chain:

        >>> err = RetriesExhaustedError(4, APIError("getMe", 502, "Bad Gateway"))
        >>> is_kind(err, ErrorKind.RETRIES_EXHAUSTED)
        True
        >>> find_error(err, APIError).code
        502
    """

    default_kind = ErrorKind.RETRIES_EXHAUSTED

    def __init__(self, attempts: int, last_error: BaseException):
        self.attempts = attempts
        super().__init__(f"gave up after {attempts} attempts: {last_error}", cause=last_error)


@dataclass(frozen=True)
class ClassifiedError:
    """Classification outcome for one failed attempt.

    ``kind`` is None when no category matched; that is a valid outcome.
    """

    code: int = 0
    description: str = ""
    kind: ErrorKind | None = None
    retry_after: float | None = None
    retryable: bool = False

    @property
    def category(self) -> ErrorKind:
        """Kind with ``UNCATEGORIZED`` in place of None."""
        return self.kind or ErrorKind.UNCATEGORIZED


# =============================================================================
# CLASSIFICATION
# =============================================================================


def detect_kind(code: int, description: str) -> ErrorKind | None:
    """Map a status code and description to a sentinel kind.

    The description is matched first (case-insensitive substring, ordered
    table); the status-code table is only consulted when no phrase matches.
    Returns None when nothing matches.
    """
    lowered = (description or "").lower()
    for phrase, kind in DESCRIPTION_KINDS:
        if phrase in lowered:
            return kind
    return STATUS_KINDS.get(code)


def is_retryable_code(code: int) -> bool:
    """True for 429 and for 500-504 inclusive."""
    return code == 429 or code in RETRYABLE_SERVER_CODES


def parse_retry_after(
    parameters: Mapping[str, Any] | None = None,
    headers: Mapping[str, str] | None = None,
) -> float | None:
    """Extract a retry hint in seconds.

    ``parameters["retry_after"]`` from the body wins; an integer
    ``Retry-After`` header is the fallback. Non-positive values are ignored.
    """
    if parameters:
        try:
            seconds = int(parameters.get("retry_after") or 0)
        except (TypeError, ValueError):
            seconds = 0
        if seconds > 0:
            return float(seconds)

    if headers:
        raw = None
        for name, value in headers.items():
            if name.lower() == "retry-after":
                raw = value
                break
        if raw:
            try:
                seconds = int(raw.strip())
            except ValueError:
                return None
            if seconds > 0:
                return float(seconds)

    return None


def classify_error(error: BaseException) -> ClassifiedError:
    """Classify an exception raised by one attempt.

    Walks the error chain so scrubbed or wrapped errors classify the same
    as the original.
    """
    cancelled = find_error(error, ContextCancelled)
    if cancelled is not None:
        return ClassifiedError(
            description=cancelled.message,
            kind=ErrorKind.CANCELLED,
        )

    api_error = find_error(error, APIError)
    if api_error is not None:
        return ClassifiedError(
            code=api_error.code,
            description=api_error.description,
            kind=api_error.kind,
            retry_after=api_error.retry_after,
            retryable=is_retryable_code(api_error.code),
        )

    for link in iter_chain(error):
        if isinstance(link, CourierError):
            return ClassifiedError(
                description=link.message,
                kind=link.kind,
                retry_after=link.retry_after,
                retryable=link.retryable,
            )
        if isinstance(link, TimeoutError):
            return ClassifiedError(description=str(link), retryable=True)

    return ClassifiedError(description=str(error))


def is_breaker_failure(error: BaseException) -> bool:
    """Decide whether a failed call counts against the circuit breaker.

    Remote 4xx answers (429 included) are client-side problems or rate
    pressure, not service degradation. Cancellation is not a failure.
    Server errors and transport failures are.
    """
    if find_error(error, ContextCancelled) is not None:
        return False
    api_error = find_error(error, APIError)
    if api_error is not None:
        return not (400 <= api_error.code < 500)
    return True


# =============================================================================
# CHAIN HELPERS
# =============================================================================


def unwrap(error: BaseException) -> BaseException | None:
    """Return the next error in the chain, or None."""
    original = getattr(error, "original", None)
    if isinstance(original, BaseException):
        return original
    cause = getattr(error, "cause", None)
    if isinstance(cause, BaseException):
        return cause
    return error.__cause__


def iter_chain(error: BaseException) -> Iterator[BaseException]:
    """Yield ``error`` and every error reachable through ``unwrap``."""
    seen: set[int] = set()
    current: BaseException | None = error
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        current = unwrap(current)


def find_error(error: BaseException, error_type: type[E]) -> E | None:
    """Return the first error in the chain that is an ``error_type``."""
    for link in iter_chain(error):
        if isinstance(link, error_type):
            return link
    return None


def is_kind(error: BaseException, kind: ErrorKind) -> bool:
    """True if any error in the chain carries ``kind``."""
    return any(getattr(link, "kind", None) is kind for link in iter_chain(error))


def is_retryable(error: BaseException) -> bool:
    """Check if an error is retryable."""
    return classify_error(error).retryable


def get_retry_after(error: BaseException) -> float | None:
    """Get the remote retry hint from an error, if specified."""
    return classify_error(error).retry_after


__all__ = [
    "ErrorKind",
    "ErrorContext",
    "CourierError",
    "APIError",
    "TransportError",
    "ContextCancelled",
    "DeadlineExceeded",
    "ConfigError",
    "RetriesExhaustedError",
    "ClassifiedError",
    "DESCRIPTION_KINDS",
    "STATUS_KINDS",
    "detect_kind",
    "is_retryable_code",
    "parse_retry_after",
    "classify_error",
    "is_breaker_failure",
    "unwrap",
    "iter_chain",
    "find_error",
    "is_kind",
    "is_retryable",
    "get_retry_after",
]
