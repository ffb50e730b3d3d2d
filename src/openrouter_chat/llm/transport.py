"""HTTP transport for chat-completion endpoints.

One ``HttpTransport`` performs single physical attempts; it classifies
failures but never retries.  Retrying is the controller's job.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import Any, AsyncIterator, Iterable

import httpx

from openrouter_chat.errors import (
    DEFAULT_CAPABILITY_MARKERS,
    ErrorCause,
    ProviderError,
    classify_http_error,
)

_logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------

def prepare_api_key(api_key: str | None) -> str:
    """Normalise a user-supplied key (whitespace, stray ``Bearer`` prefix)."""
    if not api_key or not api_key.strip():
        raise ProviderError("API Key is required", ErrorCause.AUTH)
    clean = api_key.strip()
    if clean.lower().startswith("bearer "):
        clean = clean[7:].strip()
    return clean


def mask_api_key(api_key: str) -> str:
    """Loggable form of a key: first 4 and last 2 characters."""
    if len(api_key) > 6:
        return f"{api_key[:4]}...{api_key[-2:]}"
    return "***"


def request_preview(url: str, payload: dict[str, Any]) -> str:
    """Redacted JSON dump of a request for debug logging."""
    messages = []
    for m in payload.get("messages", []):
        content = m.get("content")
        if isinstance(content, str):
            content = content[:50] + ("..." if len(content) > 50 else "")
        else:
            content = "[complex]"
        messages.append({"role": m.get("role"), "content": content})
    body = {**payload, "messages": messages}
    return json.dumps(
        {"url": url, "method": "POST",
         "headers": {"Authorization": "Bearer [REDACTED]"}, "body": body},
        indent=2,
    )


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------

class HttpTransport:
    """Async HTTP transport with a hard per-attempt timeout.

    Parameters
    ----------
    base_url:
        Provider API root, e.g. ``https://openrouter.ai/api/v1``.
    timeout:
        Hard limit in seconds.  Buffered calls: the whole exchange.
        Streaming calls: until response headers arrive.
    read_timeout:
        httpx per-read limit while a stream is being consumed.
    transport:
        Optional ``httpx.AsyncBaseTransport`` (tests pass a
        ``httpx.MockTransport``).
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        read_timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
        capability_markers: Iterable[str] = DEFAULT_CAPABILITY_MARKERS,
    ) -> None:
        self.timeout = timeout
        self._markers = tuple(capability_markers)
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout, read=read_timeout),
            transport=transport,
        )

    # ------------------------------------------------------------------
    # Buffered
    # ------------------------------------------------------------------

    async def post_json(
        self,
        path: str,
        payload: dict[str, Any],
        headers: dict[str, str],
    ) -> dict[str, Any]:
        """POST *payload* and return the parsed JSON body."""
        try:
            resp = await asyncio.wait_for(
                self._client.post(path, json=payload, headers=headers),
                self.timeout,
            )
        except asyncio.TimeoutError:
            raise self._timeout_error() from None
        except httpx.TimeoutException as e:
            raise ProviderError(
                f"Request timed out: {e}", ErrorCause.TIMEOUT,
            ) from e
        except httpx.DecodingError as e:
            raise ProviderError(
                f"Invalid response from the AI service ({e}).", ErrorCause.MALFORMED,
            ) from e
        except httpx.TransportError as e:
            raise ProviderError(
                f"Network error: {e}", ErrorCause.NETWORK,
            ) from e

        if resp.is_error:
            raise classify_http_error(resp.status_code, resp.text, self._markers)
        try:
            data = resp.json()
        except (json.JSONDecodeError, ValueError) as e:
            raise ProviderError(
                "Invalid response from the AI service (not JSON).",
                ErrorCause.MALFORMED, resp.status_code, resp.text[:200],
            ) from e
        if not isinstance(data, dict):
            raise ProviderError(
                "Invalid response from the AI service.",
                ErrorCause.MALFORMED, resp.status_code,
            )
        return data

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    @contextlib.asynccontextmanager
    async def stream(
        self,
        path: str,
        payload: dict[str, Any],
        headers: dict[str, str],
    ) -> AsyncIterator[AsyncIterator[bytes]]:
        """Open a streaming POST and yield its raw byte iterator.

        The response is closed on exit, including on cancellation.
        """
        request = self._client.build_request("POST", path, json=payload, headers=headers)
        try:
            resp = await asyncio.wait_for(
                self._client.send(request, stream=True), self.timeout,
            )
        except asyncio.TimeoutError:
            raise self._timeout_error() from None
        except httpx.TimeoutException as e:
            raise ProviderError(
                f"Request timed out: {e}", ErrorCause.TIMEOUT,
            ) from e
        except httpx.DecodingError as e:
            raise ProviderError(
                f"Invalid response from the AI service ({e}).", ErrorCause.MALFORMED,
            ) from e
        except httpx.TransportError as e:
            raise ProviderError(
                f"Network error: {e}", ErrorCause.NETWORK,
            ) from e

        try:
            if resp.is_error:
                body = (await resp.aread()).decode("utf-8", errors="replace")
                raise classify_http_error(resp.status_code, body, self._markers)
            yield self._iter_bytes(resp)
        finally:
            await resp.aclose()

    @staticmethod
    async def _iter_bytes(resp: httpx.Response) -> AsyncIterator[bytes]:
        try:
            async for chunk in resp.aiter_bytes():
                yield chunk
        except httpx.TimeoutException as e:
            raise ProviderError(
                f"Stream stalled: {e}", ErrorCause.TIMEOUT,
            ) from e
        except httpx.DecodingError as e:
            raise ProviderError(
                f"Invalid response from the AI service ({e}).", ErrorCause.MALFORMED,
            ) from e
        except httpx.TransportError as e:
            raise ProviderError(
                f"Stream interrupted: {e}", ErrorCause.NETWORK,
            ) from e

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _timeout_error(self) -> ProviderError:
        _logger.warning("Request timed out after %g seconds", self.timeout)
        return ProviderError(
            f"Request timed out after {self.timeout:g} seconds",
            ErrorCause.TIMEOUT,
        )

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()
