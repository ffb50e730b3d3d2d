"""Provider adapters.

An adapter binds the builder, transport, decoder and retry controller to
one vendor's endpoint, headers and JSON shapes.  Nothing outside this
module reads vendor response fields.
"""

from __future__ import annotations

import dataclasses
import logging
from typing import Any, Protocol, Sequence

import httpx

from openrouter_chat.config import AppConfig
from openrouter_chat.errors import ErrorCause, ProviderError, classify_error_frame
from openrouter_chat.types import (
    ChatResult,
    EventKind,
    FrameDelta,
    Message,
    RequestOptions,
    StreamCallbacks,
)

from .builder import ChatRequest, build_request
from .call import ChatCall
from .decoder import SSEDecoder, iter_events
from .error_recovery import RetryController
from .transport import HttpTransport, mask_api_key, prepare_api_key, request_preview

_logger = logging.getLogger(__name__)


def _text(value: Any) -> str:
    return value if isinstance(value, str) else ""


class ChatProvider(Protocol):
    """Interface every provider adapter satisfies."""

    async def send_message(
        self,
        conversation: Sequence[Message],
        credential: str,
        options: RequestOptions | None = None,
        **context: Any,
    ) -> str:
        ...

    async def stream_response(
        self,
        conversation: Sequence[Message],
        credential: str,
        callbacks: StreamCallbacks,
        options: RequestOptions | None = None,
        **context: Any,
    ) -> ChatResult | None:
        ...

    async def close(self) -> None:
        ...


class OpenRouterProvider:
    """Adapter for OpenRouter's OpenAI-compatible chat-completions API.

    Usage::

        provider = OpenRouterProvider(config)
        text = await provider.send_message(conversation, api_key)
        await provider.stream_response(conversation, api_key, callbacks)
    """

    CHAT_PATH = "/chat/completions"

    def __init__(
        self,
        config: AppConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config or AppConfig()
        pc = self.config.provider
        self._transport = HttpTransport(
            base_url=pc.base_url,
            timeout=pc.timeout,
            read_timeout=pc.read_timeout,
            transport=transport,
            capability_markers=self.config.chat.capability_markers,
        )
        self._controller = RetryController(
            max_retries=self.config.retry.max_retries,
            retry_delay=self.config.retry.retry_delay,
        )

    # ------------------------------------------------------------------
    # Vendor shape
    # ------------------------------------------------------------------

    def headers(self, api_key: str) -> dict[str, str]:
        pc = self.config.provider
        return {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
            "HTTP-Referer": pc.referer,
            "X-Title": pc.title,
        }

    def payload(self, request: ChatRequest) -> dict[str, Any]:
        body = request.to_dict()
        body["usage"] = {"include": True}
        return body

    @staticmethod
    def parse_completion(data: dict[str, Any]) -> str:
        """Answer text of a buffered response."""
        error = data.get("error")
        if error and not data.get("choices"):
            if not isinstance(error, dict):
                error = {"message": str(error)}
            raise classify_error_frame(error)
        choices = data.get("choices")
        if not choices or not isinstance(choices, list):
            raise ProviderError(
                "Invalid response from the AI service (no choices).",
                ErrorCause.MALFORMED,
            )
        message = choices[0].get("message") if isinstance(choices[0], dict) else None
        if not isinstance(message, dict):
            raise ProviderError(
                "Invalid response from the AI service (no message).",
                ErrorCause.MALFORMED,
            )
        return _text(message.get("content"))

    @staticmethod
    def parse_frame(data: dict[str, Any]) -> FrameDelta:
        """Answer/reasoning text of one streamed frame.

        Fields of the wrong type are treated as absent.
        """
        error = data.get("error")
        if isinstance(error, dict):
            raise classify_error_frame(error)
        choices = data.get("choices")
        choice = choices[0] if isinstance(choices, list) and choices else {}
        if not isinstance(choice, dict):
            choice = {}
        delta = choice.get("delta")
        if not isinstance(delta, dict):
            delta = {}
        finish_reason = choice.get("finish_reason")
        usage = data.get("usage")
        return FrameDelta(
            content=_text(delta.get("content")),
            reasoning=_text(delta.get("reasoning")),
            finish_reason=finish_reason if isinstance(finish_reason, str) else None,
            usage=usage if isinstance(usage, dict) and usage else None,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def default_options(self) -> RequestOptions:
        chat = self.config.chat
        return RequestOptions(temperature=chat.temperature, max_tokens=chat.max_tokens)

    def build(
        self,
        conversation: Sequence[Message],
        options: RequestOptions | None = None,
        *,
        stream: bool,
        persona: str | None = None,
        file_context: str | None = None,
    ) -> ChatRequest:
        request = build_request(
            conversation,
            options or self.default_options(),
            self.config.chat,
            persona=persona,
            file_context=file_context,
        )
        return dataclasses.replace(request, stream=stream)

    async def send_message(
        self,
        conversation: Sequence[Message],
        credential: str,
        options: RequestOptions | None = None,
        *,
        call: ChatCall | None = None,
        persona: str | None = None,
        file_context: str | None = None,
    ) -> str:
        """Buffered completion.  Returns the answer text or raises
        ``ProviderError`` with a user-presentable message."""
        api_key = prepare_api_key(credential)
        _logger.debug("Using API key %s", mask_api_key(api_key))
        request = self.build(
            conversation, options, stream=False,
            persona=persona, file_context=file_context,
        )
        headers = self.headers(api_key)

        async def _attempt(req: ChatRequest) -> str:
            payload = self.payload(req)
            _logger.debug("OpenRouter send: %s", request_preview(self.CHAT_PATH, payload))
            data = await self._transport.post_json(self.CHAT_PATH, payload, headers)
            return self.parse_completion(data)

        return await self._controller.run_buffered(request, _attempt, call)

    async def stream_response(
        self,
        conversation: Sequence[Message],
        credential: str,
        callbacks: StreamCallbacks,
        options: RequestOptions | None = None,
        *,
        call: ChatCall | None = None,
        persona: str | None = None,
        file_context: str | None = None,
    ) -> ChatResult | None:
        """Streamed completion delivered through *callbacks*.

        Exactly one of ``on_complete`` / ``on_error`` fires, unless *call*
        is cancelled first, in which case neither does.
        """
        call = call or ChatCall()
        call.callbacks = callbacks
        try:
            api_key = prepare_api_key(credential)
        except ProviderError as e:
            call.fail(e)
            return None
        _logger.debug("Using API key %s for streaming", mask_api_key(api_key))
        request = self.build(
            conversation, options, stream=True,
            persona=persona, file_context=file_context,
        )
        headers = self.headers(api_key)

        async def _attempt(req: ChatRequest, c: ChatCall) -> ChatResult:
            state = c.new_stream_state()
            decoder = SSEDecoder(self.parse_frame, state)
            payload = self.payload(req)
            _logger.debug("OpenRouter stream: %s", request_preview(self.CHAT_PATH, payload))
            async with self._transport.stream(self.CHAT_PATH, payload, headers) as chunks:
                async for event in iter_events(chunks, decoder, lambda: c.aborted):
                    if event.kind is EventKind.ANSWER:
                        c.chunk(event.text)
                    elif event.kind is EventKind.REASONING:
                        c.reasoning_chunk(event.text)
            if decoder.finish_reason:
                _logger.debug("Stream finished: %s", decoder.finish_reason)
            return ChatResult(
                content=state.answer,
                reasoning=state.reasoning,
                model=req.model,
                usage=decoder.usage,
            )

        return await self._controller.run_stream(request, _attempt, call)

    async def close(self) -> None:
        await self._transport.close()
