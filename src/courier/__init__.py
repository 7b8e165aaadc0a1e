"""
Courier - resilient dispatch core for a remote bot API client.

- courier.core: error taxonomy, secrets, settings, logging
- courier.execution: rate limiting, circuit breaking, retry, dispatch
"""

__version__ = "0.1.0"

from courier.core.errors import (  # noqa: E402
    APIError,
    ContextCancelled,
    CourierError,
    DeadlineExceeded,
    ErrorKind,
    TransportError,
)
from courier.core.secrets import SecretToken  # noqa: E402
from courier.core.settings import CourierSettings  # noqa: E402
from courier.execution import CallContext, Dispatcher  # noqa: E402

__all__ = [
    "APIError",
    "CallContext",
    "ContextCancelled",
    "CourierError",
    "CourierSettings",
    "DeadlineExceeded",
    "Dispatcher",
    "ErrorKind",
    "SecretToken",
    "TransportError",
]
