"""In-memory chat session: one conversation, at most one live call."""

from __future__ import annotations

import logging
from typing import Any, Callable, Sequence

from openrouter_chat.config import AppConfig, resolve_api_key
from openrouter_chat.llm.builder import format_file_context
from openrouter_chat.llm.call import ChatCall
from openrouter_chat.llm.provider import ChatProvider
from openrouter_chat.types import (
    ChatResult,
    ContentPart,
    FileAttachment,
    ImagePart,
    Message,
    RequestOptions,
    StreamCallbacks,
    TextPart,
)

_logger = logging.getLogger(__name__)


def _ignore(*_args: Any) -> None:
    return None


class ChatSession:
    """A conversation driven through a ``ChatProvider``.

    Parameters
    ----------
    provider:
        Adapter used for every turn.
    config:
        Defaults for model, temperature and token budget.
    credential:
        Zero-argument callable returning the API key.  It is called once
        per turn; the key is not kept.
    persona:
        Optional custom-bot instructions used as the system message.
    """

    def __init__(
        self,
        provider: ChatProvider,
        config: AppConfig | None = None,
        credential: Callable[[], str] | None = None,
        persona: str | None = None,
    ) -> None:
        self.provider = provider
        self.config = config or AppConfig()
        self._credential = credential or (lambda: resolve_api_key(self.config))
        self.persona = persona
        self.model: str | None = None
        self.web_search = False
        self.messages: list[Message] = []
        self.last_result: ChatResult | None = None
        self._shared_files: list[FileAttachment] = []
        self._call: ChatCall | None = None

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def busy(self) -> bool:
        return self._call is not None and not self._call.finished

    def cancel(self) -> bool:
        """Cancel the in-flight call, if any."""
        if self._call is None:
            return False
        return self._call.cancel()

    def reset(self) -> None:
        self.cancel()
        self.messages.clear()
        self._shared_files.clear()
        self.last_result = None

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    def options(self, web_search: bool | None = None) -> RequestOptions:
        chat = self.config.chat
        return RequestOptions(
            model=self.model,
            temperature=chat.temperature,
            max_tokens=chat.max_tokens,
            web_search=self.web_search if web_search is None else web_search,
        )

    async def send(
        self,
        text: str,
        *,
        images: Sequence[str] = (),
        files: Sequence[FileAttachment] = (),
        web_search: bool | None = None,
        callbacks: StreamCallbacks | None = None,
    ) -> Message | None:
        """Stream a reply to *text*.

        Returns the assistant message, or ``None`` if the call failed
        (reported through ``callbacks.on_error``) or was superseded.
        A turn is only added to history once its reply completes.
        """
        if self.busy:
            _logger.info("New turn submitted, cancelling the previous call")
            self.cancel()

        content: str | list[ContentPart] = text
        if images:
            detail = self.config.chat.image_detail
            content = [TextPart(text), *(ImagePart(url, detail) for url in images)]
        user = Message.user(content)

        call = ChatCall()
        self._call = call
        result = await self.provider.stream_response(
            [*self.messages, user],
            self._credential(),
            callbacks or StreamCallbacks(on_chunk=_ignore, on_complete=_ignore,
                                         on_error=_ignore),
            self.options(web_search),
            call=call,
            persona=self.persona,
            file_context=format_file_context(files, self._shared_files),
        )
        if result is None:
            return None

        reply = Message.assistant(result.content)
        self.messages.extend([user, reply])
        self._shared_files.extend(files)
        self.last_result = result
        return reply
