"""Shared fixtures: SSE transcripts, fake HTTP servers, callback recorders."""

from __future__ import annotations

import json
from typing import Any, AsyncIterator, Callable

import httpx
import pytest

from openrouter_chat.config import AppConfig, ProviderConfig, RetryConfig
from openrouter_chat.types import StreamCallbacks


def frame(content: str | None = None, reasoning: str | None = None, **extra: Any) -> str:
    """One ``data:`` line carrying a chat-completion delta."""
    delta: dict[str, Any] = {}
    if content is not None:
        delta["content"] = content
    if reasoning is not None:
        delta["reasoning"] = reasoning
    body = {"choices": [{"delta": delta, **extra}]}
    return f"data: {json.dumps(body, ensure_ascii=False)}\n\n"


DONE = "data: [DONE]\n\n"

# JSON objects that are not chat-completion frames
BAD_FRAME_SHAPES = [
    {"choices": {"x": 1}},
    {"choices": [{"delta": "oops"}]},
    {"choices": [{"delta": {"content": 5}}]},
    {"choices": [{"delta": {"reasoning": ["r"]}}]},
    {"choices": ["not an object"]},
    {"choices": []},
]


class CallbackRecorder:
    """Records every stream callback in arrival order."""

    def __init__(self) -> None:
        self.events: list[tuple[str, Any]] = []

    def callbacks(self, on_chunk: Callable[[str], Any] | None = None) -> StreamCallbacks:
        def _chunk(text: str) -> None:
            self.events.append(("chunk", text))
            if on_chunk is not None:
                on_chunk(text)

        return StreamCallbacks(
            on_chunk=_chunk,
            on_complete=lambda: self.events.append(("complete", None)),
            on_error=lambda e: self.events.append(("error", e)),
            on_reasoning_chunk=lambda t: self.events.append(("reasoning", t)),
            on_retry=lambda n: self.events.append(("retry", n)),
        )

    def of(self, kind: str) -> list[Any]:
        return [v for k, v in self.events if k == kind]

    @property
    def chunks(self) -> list[str]:
        return self.of("chunk")

    @property
    def errors(self) -> list[Exception]:
        return self.of("error")

    @property
    def completions(self) -> int:
        return len(self.of("complete"))


async def byte_stream(*parts: str | bytes) -> AsyncIterator[bytes]:
    for p in parts:
        yield p.encode() if isinstance(p, str) else p


def sse_response(*parts: str | bytes, status: int = 200) -> httpx.Response:
    return httpx.Response(
        status,
        headers={"content-type": "text/event-stream"},
        content=byte_stream(*parts),
    )


class FakeServer:
    """``httpx.MockTransport`` that replays queued responses in order."""

    def __init__(self, *responses: httpx.Response | Callable[[httpx.Request], Any]) -> None:
        self._responses = list(responses)
        self.requests: list[httpx.Request] = []

    @property
    def payloads(self) -> list[dict[str, Any]]:
        return [json.loads(r.content) for r in self.requests]

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if not self._responses:
            raise AssertionError("unexpected extra request")
        nxt = self._responses.pop(0)
        if callable(nxt) and not isinstance(nxt, httpx.Response):
            nxt = await nxt(request)
        return nxt

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def recorder() -> CallbackRecorder:
    return CallbackRecorder()


@pytest.fixture
def app_config() -> AppConfig:
    """Config with instant retries so tests never wait on backoff."""
    return AppConfig(
        provider=ProviderConfig(base_url="http://test/api/v1", title="test-suite"),
        retry=RetryConfig(max_retries=2, retry_delay=0),
    )
