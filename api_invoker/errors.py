"""Error taxonomy for api-invoker.

Every failure an invocation can surface derives from InvokerError, so callers
can catch one type. None of these are retried by the executor itself; the
token-refresh policy in executor.py only reacts to ApiResultError.
"""

from __future__ import annotations

from typing import Any


class InvokerError(Exception):
    """Base class for invoker errors."""


class BindingError(InvokerError):
    """Raised when a request cannot be built from a descriptor and arguments."""


class SerializationError(InvokerError):
    """Raised when a JSON body cannot be serialized under the fail policy."""


class EncodeError(InvokerError):
    """Raised when the dispatcher has no way to encode a request payload."""


class TransportError(InvokerError):
    """Raised when a request fails (connection error, timeout, etc.)."""


class DecodeError(InvokerError):
    """Raised when a response body cannot be converted to the declared type."""


class CredentialError(InvokerError):
    """Raised when an access token cannot be obtained."""


class ResponseError(InvokerError):
    """Upstream answered with a non-2xx status.

    Carries the raw body bytes so callers can inspect whatever error document
    the upstream sent.
    """

    def __init__(
        self,
        status_code: int,
        body: bytes = b"",
        headers: dict[str, str] | None = None,
    ) -> None:
        self.status_code = status_code
        self.body = body
        self.headers = headers or {}
        preview = body[:200].decode("utf-8", errors="replace")
        super().__init__(f"HTTP {status_code}: {preview}")


class ApiResultError(InvokerError):
    """A 2xx response whose payload carries a non-zero API error code.

    access_token is the token the rejected request carried, set by the
    executor; it is never part of the message.
    """

    def __init__(self, code: int, message: str = "", payload: Any = None) -> None:
        self.code = code
        self.message = message
        self.payload = payload
        self.access_token: str | None = None
        super().__init__(f"API error {code}: {message}")


class SerializationWarning(UserWarning):
    """A JSON request body could not be serialized and was omitted."""
