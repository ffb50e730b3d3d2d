"""Per-logical-call context: retry state, cancel switch, completion latch."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable

from openrouter_chat.types import RetryState, StreamCallbacks, StreamState

_logger = logging.getLogger(__name__)


class ChatCall:
    """One user-facing request for a completion.

    The call may span several physical attempts.  It owns the only state
    shared between them: the write-once ``finished`` latch.  Once the latch
    is closed (completion, error or cancellation) every later callback is
    dropped, so a stale attempt can never leak output.
    """

    def __init__(self, callbacks: StreamCallbacks | None = None) -> None:
        self.callbacks = callbacks
        self.retry = RetryState()
        self.stream_state: StreamState | None = None
        self._finished = False
        self._aborted = False
        self._task: asyncio.Task[Any] | None = None
        self.callback_failed = False

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def finished(self) -> bool:
        return self._finished

    @property
    def aborted(self) -> bool:
        return self._aborted

    def new_stream_state(self) -> StreamState:
        """Fresh state for the next attempt; the previous one is dropped."""
        if self.stream_state is not None:
            self.stream_state.aborted = True
        self.stream_state = StreamState()
        return self.stream_state

    def attach(self, task: asyncio.Task[Any] | None) -> None:
        """Register the task running the current physical attempt."""
        self._task = task

    # ------------------------------------------------------------------
    # Cancel switch
    # ------------------------------------------------------------------

    def cancel(self) -> bool:
        """Abort the call.  Returns ``False`` if it had already finished."""
        if self._finished:
            return False
        self._aborted = True
        self._finished = True
        if self.stream_state is not None:
            self.stream_state.aborted = True
        if self._task is not None and not self._task.done():
            self._task.cancel()
        _logger.info("Chat call cancelled (attempt %d)", self.retry.attempt + 1)
        return True

    # ------------------------------------------------------------------
    # Guarded delivery
    # ------------------------------------------------------------------

    def _deliver(self, fn: Callable[..., Any] | None, *args: Any) -> None:
        if fn is None or self._finished:
            return
        try:
            fn(*args)
        except Exception:
            self.callback_failed = True
            raise

    def chunk(self, text: str) -> None:
        if self.callbacks is not None:
            self._deliver(self.callbacks.on_chunk, text)

    def reasoning_chunk(self, text: str) -> None:
        if self.callbacks is not None:
            self._deliver(self.callbacks.on_reasoning_chunk, text)

    def retrying(self, attempt: int) -> None:
        if self.callbacks is not None:
            self._deliver(self.callbacks.on_retry, attempt)

    def complete(self) -> bool:
        """Close the latch and fire ``on_complete``.  Only the first wins."""
        if self._finished:
            return False
        self._finished = True
        if self.callbacks is not None:
            self.callbacks.on_complete()
        return True

    def close(self) -> None:
        """Close the latch without firing any callback."""
        self._finished = True

    def fail(self, error: Exception) -> bool:
        """Close the latch and fire ``on_error``.  Only the first wins."""
        if self._finished:
            return False
        self._finished = True
        if self.callbacks is not None:
            self.callbacks.on_error(error)
        return True
