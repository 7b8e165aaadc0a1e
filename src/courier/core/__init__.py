"""
Courier Core - primitives shared by every dispatch component.

Modules:
    errors   : ErrorKind taxonomy, CourierError hierarchy, classification
    secrets  : SecretToken and error scrubbing
    settings : CourierSettings (pydantic-settings, COURIER_ env prefix)
    logging  : structlog configuration and context helpers
"""

from courier.core.errors import (
    APIError,
    ClassifiedError,
    ConfigError,
    ContextCancelled,
    CourierError,
    DeadlineExceeded,
    ErrorContext,
    ErrorKind,
    TransportError,
    classify_error,
    detect_kind,
    find_error,
    is_breaker_failure,
    is_kind,
    is_retryable,
    is_retryable_code,
    iter_chain,
    parse_retry_after,
)
from courier.core.logging import LogContext, configure_logging, get_logger
from courier.core.secrets import REDACTION_MARKER, ScrubbedError, SecretToken, scrub_error
from courier.core.settings import CourierSettings

__all__ = [
    "APIError",
    "ClassifiedError",
    "ConfigError",
    "RetriesExhaustedError",
    "ContextCancelled",
    "CourierError",
    "CourierSettings",
    "DeadlineExceeded",
    "ErrorContext",
    "ErrorKind",
    "LogContext",
    "REDACTION_MARKER",
    "ScrubbedError",
    "SecretToken",
    "TransportError",
    "classify_error",
    "configure_logging",
    "detect_kind",
    "find_error",
    "get_logger",
    "is_breaker_failure",
    "is_kind",
    "is_retryable",
    "is_retryable_code",
    "iter_chain",
    "parse_retry_after",
    "scrub_error",
]
