"""Error taxonomy for chat-completion calls.

Failures carry a cause category rather than a distinct exception class per
cause, so the retry controller can branch on ``error.cause`` directly.
"""

from __future__ import annotations

import enum
import json
from typing import Any, Iterable


class ErrorCause(enum.Enum):
    AUTH = "auth"
    RATE_LIMITED = "rate_limited"
    SERVER = "server"
    BAD_REQUEST_CAPABILITY = "bad_request_capability"
    BAD_REQUEST = "bad_request"
    TIMEOUT = "timeout"
    MALFORMED = "malformed"
    NETWORK = "network"

    @property
    def retryable(self) -> bool:
        return self in _RETRYABLE


_RETRYABLE = frozenset({
    ErrorCause.RATE_LIMITED,
    ErrorCause.SERVER,
    ErrorCause.TIMEOUT,
    ErrorCause.NETWORK,
})

DEFAULT_CAPABILITY_MARKERS = ("plugin", "web search")


class ChatClientError(Exception):
    """Base class for errors raised by this package."""


class ProviderError(ChatClientError):
    """A failed chat-completion attempt.

    ``str(error)`` is meant to be shown to the user as-is.
    """

    def __init__(
        self,
        message: str,
        cause: ErrorCause,
        status_code: int | None = None,
        body: str = "",
    ) -> None:
        super().__init__(message)
        self.message = message
        self.cause = cause
        self.status_code = status_code
        self.body = body

    @property
    def retryable(self) -> bool:
        return self.cause.retryable

    def __repr__(self) -> str:
        return (
            f"ProviderError({self.message!r}, cause={self.cause.value}, "
            f"status_code={self.status_code})"
        )


class CallCancelled(ChatClientError):
    """Raised to a waiter whose logical call was cancelled."""


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

def _provider_message(body: str) -> str | None:
    """Pull ``error.message`` (or a bare ``error`` string) out of a JSON body."""
    try:
        data = json.loads(body)
    except (json.JSONDecodeError, ValueError):
        return None
    if not isinstance(data, dict):
        return None
    err = data.get("error")
    if isinstance(err, dict):
        msg = err.get("message")
        return str(msg) if msg else None
    if isinstance(err, str) and err:
        return err
    return None


def _mentions_capability(body: str, markers: Iterable[str]) -> bool:
    lower = body.lower()
    return any(m.lower() in lower for m in markers)


def classify_http_error(
    status: int,
    body: str = "",
    capability_markers: Iterable[str] = DEFAULT_CAPABILITY_MARKERS,
) -> ProviderError:
    """Map an HTTP error status and body to a ``ProviderError``."""
    if status == 401:
        return ProviderError(
            "Authentication failed: Invalid API key. "
            "Please check your API key in settings.",
            ErrorCause.AUTH, status, body,
        )
    if status == 429:
        return ProviderError(
            "Rate limit exceeded. Please try again later.",
            ErrorCause.RATE_LIMITED, status, body,
        )
    if status >= 500:
        return ProviderError(
            f"Server error ({status}). The AI service may be experiencing issues.",
            ErrorCause.SERVER, status, body,
        )

    message = _provider_message(body)
    if message is None:
        message = f"Error: {status}"
        if body and len(body) < 200:
            message += f" - {body}"
    if status == 400 and _mentions_capability(body, capability_markers):
        return ProviderError(message, ErrorCause.BAD_REQUEST_CAPABILITY, status, body)
    return ProviderError(message, ErrorCause.BAD_REQUEST, status, body)


def classify_error_frame(
    error: dict[str, Any],
    capability_markers: Iterable[str] = DEFAULT_CAPABILITY_MARKERS,
) -> ProviderError:
    """Classify an ``{"error": {...}}`` object delivered inside a stream."""
    code = error.get("code")
    try:
        status = int(code)
    except (TypeError, ValueError):
        status = 500
    return classify_http_error(
        status, json.dumps({"error": error}), capability_markers,
    )
