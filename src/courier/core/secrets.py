"""Credential handling: a redacting token wrapper and error scrubbing.

The transport layer may embed the full request URL, credentials included,
in its error text. ``scrub_error`` strips the literal credential from such
errors while keeping the original reachable for category checks.

Example:
    >>> token = SecretToken("123:ABC")
    >>> print(token)
    [REDACTED]
    >>> err = scrub_error(ConnectionError("GET /bot123:ABC/getMe: refused"), token)
    >>> str(err)
    'GET /bot[REDACTED]/getMe: refused'
    >>> isinstance(err.original, ConnectionError)
    True
"""

from __future__ import annotations

from courier.core.errors import CourierError, classify_error

REDACTION_MARKER = "[REDACTED]"


class SecretToken:
    """Wrapper for credential values that prevents accidental logging.

    The string representation shows ``[REDACTED]`` instead of the value.
    Use ``.get_secret()`` to access the actual value.
    """

    __slots__ = ("_value",)

    def __init__(self, value: str):
        self._value = value

    def get_secret(self) -> str:
        """Get the actual secret value. Only for building requests."""
        return self._value

    def is_empty(self) -> bool:
        return not self._value

    def __str__(self) -> str:
        return REDACTION_MARKER

    def __repr__(self) -> str:
        return f"SecretToken('{REDACTION_MARKER}')"

    def __format__(self, format_spec: str) -> str:
        return format(REDACTION_MARKER, format_spec)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, SecretToken):
            return self._value == other._value
        return False

    def __hash__(self) -> int:
        return hash(self._value)

    def __bool__(self) -> bool:
        return bool(self._value)

    def __len__(self) -> int:
        return len(self._value)

    def __reduce__(self):
        raise TypeError("SecretToken cannot be pickled")


class ScrubbedError(CourierError):
    """An error whose message had a credential redacted.

    The original stays reachable through ``.original`` and the chain helpers
    in ``courier.core.errors``. It is not attached as
    ``__cause__``, so traceback rendering never prints the unredacted text.
    """

    def __init__(self, message: str, original: BaseException):
        classified = classify_error(original)
        super().__init__(
            message,
            kind=classified.kind,
            retryable=classified.retryable,
            retry_after=classified.retry_after,
        )
        self.original = original
        self.__suppress_context__ = True


def _secret_text(secret: SecretToken | str | None) -> str:
    if secret is None:
        return ""
    if isinstance(secret, SecretToken):
        return secret.get_secret()
    return secret


def scrub_text(text: str, secret: SecretToken | str | None) -> str:
    """Replace every occurrence of the secret in ``text``."""
    value = _secret_text(secret)
    if not value:
        return text
    return text.replace(value, REDACTION_MARKER)


def scrub_error(
    error: BaseException | None,
    secret: SecretToken | str | None,
) -> BaseException | None:
    """Remove the literal secret from an error's message.

    Returns ``error`` itself when it is None, when the secret is empty, or
    when the message does not contain the secret. Otherwise returns a
    ``ScrubbedError`` wrapping the original.
    """
    if error is None:
        return None
    value = _secret_text(secret)
    if not value:
        return error
    message = str(error)
    if value not in message:
        return error
    return ScrubbedError(message.replace(value, REDACTION_MARKER), error)


__all__ = [
    "REDACTION_MARKER",
    "SecretToken",
    "ScrubbedError",
    "scrub_text",
    "scrub_error",
]
