"""Server-sent-events decoder for streamed chat completions.

Turns raw bytes into ``StreamEvent`` objects.  Lines are only processed
once their terminating newline has arrived; a partial line is carried to
the next chunk.  JSON payloads are handed to a provider-supplied
``parse_frame`` callable, so this module knows nothing about vendor field
names.
"""

from __future__ import annotations

import codecs
import json
import logging
from typing import Any, AsyncGenerator, AsyncIterator, Callable

from openrouter_chat.errors import ErrorCause, ProviderError
from openrouter_chat.types import EventKind, FrameDelta, StreamEvent, StreamState

_logger = logging.getLogger(__name__)

DATA_PREFIX = "data: "
DONE_SENTINEL = "[DONE]"

FrameParser = Callable[[dict[str, Any]], FrameDelta]


class SSEDecoder:
    """Incremental decoder for one streaming attempt.

    Parameters
    ----------
    parse_frame:
        Maps one decoded JSON frame to a ``FrameDelta``.  May raise
        ``ProviderError`` for in-band error frames.
    state:
        The attempt's ``StreamState``; a fresh one is created if omitted.
    """

    def __init__(
        self,
        parse_frame: FrameParser,
        state: StreamState | None = None,
    ) -> None:
        self._parse_frame = parse_frame
        self.state = state if state is not None else StreamState()
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self.finish_reason: str | None = None
        self.usage: dict[str, int] = {}

    @property
    def completed(self) -> bool:
        return self.state.completed

    def feed(self, data: bytes | str) -> list[StreamEvent]:
        """Consume one transport chunk and return the events it completes."""
        if self.state.completed or self.state.aborted:
            return []
        text = self._utf8.decode(data) if isinstance(data, bytes) else data
        self.state.buffer += text

        events: list[StreamEvent] = []
        while not self.state.completed:
            newline = self.state.buffer.find("\n")
            if newline < 0:
                break
            line = self.state.buffer[:newline]
            self.state.buffer = self.state.buffer[newline + 1:]
            events.extend(self._process_line(line))
        return events

    def close(self) -> list[StreamEvent]:
        """Flush at end of stream.

        A trailing unterminated line is processed, then completion is
        signalled even if the server never sent ``[DONE]``.
        """
        if self.state.completed or self.state.aborted:
            return []
        self.state.buffer += self._utf8.decode(b"", final=True)
        events: list[StreamEvent] = []
        if self.state.buffer:
            line, self.state.buffer = self.state.buffer, ""
            events.extend(self._process_line(line))
        if self.state.completed:
            return events

        if self.state.frames == 0 and self.state.stray_lines:
            raise ProviderError(
                "Invalid response from the AI service (not an event stream).",
                ErrorCause.MALFORMED,
            )
        self.state.completed = True
        events.append(StreamEvent(EventKind.DONE))
        return events

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _process_line(self, line: str) -> list[StreamEvent]:
        line = line.rstrip("\r")
        if not line.strip() or line.startswith(":"):
            return []
        if not line.startswith(DATA_PREFIX):
            self.state.stray_lines += 1
            return []

        payload = line[len(DATA_PREFIX):]
        self.state.frames += 1
        if payload.strip() == DONE_SENTINEL:
            self.state.completed = True
            return [StreamEvent(EventKind.DONE)]

        try:
            data = json.loads(payload)
        except json.JSONDecodeError:
            _logger.debug("Dropping malformed stream frame: %.80s", payload)
            return []
        if not isinstance(data, dict):
            _logger.debug("Dropping non-object stream frame: %.80s", payload)
            return []

        try:
            delta = self._parse_frame(data)
        except (KeyError, IndexError, TypeError, AttributeError, ValueError) as e:
            _logger.debug("Dropping unreadable stream frame (%s): %.80s", e, payload)
            return []
        if delta.finish_reason:
            self.finish_reason = delta.finish_reason
        if isinstance(delta.usage, dict) and delta.usage:
            self.usage = dict(delta.usage)

        events: list[StreamEvent] = []
        if not isinstance(delta.content, str) or not isinstance(delta.reasoning, str):
            _logger.debug("Dropping stream frame with non-text delta: %.80s", payload)
            return []
        if delta.reasoning:
            self.state.reasoning += delta.reasoning
            events.append(StreamEvent(EventKind.REASONING, delta.reasoning))
        if delta.content:
            self.state.answer += delta.content
            events.append(StreamEvent(EventKind.ANSWER, delta.content))
        return events


async def iter_events(
    chunks: AsyncIterator[bytes],
    decoder: SSEDecoder,
    is_aborted: Callable[[], bool] = lambda: False,
) -> AsyncGenerator[StreamEvent, None]:
    """Drive *decoder* from an async byte iterator.

    Stops as soon as the stream completes or *is_aborted* turns true;
    any unread bytes are left to the caller to discard.
    """
    async for chunk in chunks:
        if is_aborted():
            decoder.state.aborted = True
            return
        for event in decoder.feed(chunk):
            if is_aborted():
                decoder.state.aborted = True
                return
            yield event
        if decoder.completed:
            return
    if is_aborted():
        decoder.state.aborted = True
        return
    for event in decoder.close():
        yield event
