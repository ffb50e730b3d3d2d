"""Error classification, bounded retry and capability downgrade.

The controller owns one logical call across its physical attempts:

- transient causes (rate limit, server error, timeout, network) are retried
  up to ``max_retries`` times with linear backoff;
- a request rejected because of an optional plugin is resubmitted once
  without it, outside the retry budget;
- anything else fails on first occurrence.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from openrouter_chat.errors import CallCancelled, ErrorCause, ProviderError
from openrouter_chat.types import ChatResult, RetryState

from .builder import ChatRequest, downgrade_request
from .call import ChatCall

_logger = logging.getLogger(__name__)

BufferedAttempt = Callable[[ChatRequest], Awaitable[str]]
StreamAttempt = Callable[[ChatRequest, ChatCall], Awaitable[ChatResult]]


# ---------------------------------------------------------------------------
# Error classifier
# ---------------------------------------------------------------------------

class Action(enum.Enum):
    RETRY = "retry"
    DOWNGRADE = "downgrade"
    FAIL = "fail"


class ErrorClassifier:
    """Decide what to do with a failed attempt.

    Actions:
      retry     - transient cause and retry budget left
      downgrade - optional plugin rejected; resubmit once without it
      fail      - surface to the caller now
    """

    def __init__(self, max_retries: int = 2) -> None:
        self.max_retries = max_retries

    def action(
        self,
        error: ProviderError,
        request: ChatRequest,
        retry: RetryState,
    ) -> Action:
        if error.cause is ErrorCause.BAD_REQUEST_CAPABILITY:
            if request.has_plugins and not retry.downgraded:
                return Action.DOWNGRADE
            return Action.FAIL
        if error.retryable and retry.attempt < self.max_retries:
            return Action.RETRY
        return Action.FAIL


# ---------------------------------------------------------------------------
# Controller
# ---------------------------------------------------------------------------

@dataclass
class RetryController:
    """Runs a logical call's physical attempts strictly one after another.

    Parameters
    ----------
    max_retries:
        Retries after the first attempt (2 means at most 3 attempts).
    retry_delay:
        Backoff base in seconds; retry *n* waits ``n * retry_delay``.
    """

    max_retries: int = 2
    retry_delay: float = 1.0

    def __post_init__(self) -> None:
        self._classifier = ErrorClassifier(self.max_retries)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run_buffered(
        self,
        request: ChatRequest,
        attempt: BufferedAttempt,
        call: ChatCall | None = None,
    ) -> str:
        """Return the answer text, or raise the final ``ProviderError``.

        Raises ``CallCancelled`` if *call* is cancelled meanwhile.
        """
        call = call or ChatCall()
        while True:
            try:
                text = await self._run(call, attempt(request))
            except ProviderError as e:
                try:
                    request = await self._run(call, self._recover(e, request, call))
                except ProviderError as final:
                    call.close()
                    raise final
                continue
            call.close()
            return text

    async def run_stream(
        self,
        request: ChatRequest,
        attempt: StreamAttempt,
        call: ChatCall,
    ) -> ChatResult | None:
        """Stream through *call*'s callbacks until one terminal event.

        Returns the successful attempt's ``ChatResult``, or ``None`` when
        the call failed (``on_error`` fired) or was cancelled.
        """
        attempts = 0
        while True:
            attempts += 1
            try:
                result = await self._run(call, attempt(request, call))
            except CallCancelled:
                return None
            except ProviderError as e:
                if call.aborted:
                    return None
                try:
                    request = await self._run(call, self._recover(e, request, call))
                except CallCancelled:
                    return None
                except ProviderError as final:
                    call.fail(final)
                    return None
                call.retrying(attempts + 1)
                continue
            except Exception as e:
                if call.callback_failed:
                    call.close()
                    raise
                if call.aborted:
                    return None
                _logger.warning("Unreadable response for %s", request.model, exc_info=True)
                error = ProviderError(
                    f"Invalid response from the AI service ({type(e).__name__}).",
                    ErrorCause.MALFORMED,
                )
                error.__cause__ = e
                call.fail(error)
                return None

            if not call.complete():
                return None
            result.attempts = attempts
            result.downgraded = call.retry.downgraded
            return result

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _run(self, call: ChatCall, coro: Awaitable[Any]) -> Any:
        """Run *coro* as the call's current task so ``cancel()`` reaches it."""
        if call.aborted:
            if asyncio.iscoroutine(coro):
                coro.close()
            raise CallCancelled("Chat call was cancelled")
        task = asyncio.ensure_future(coro)
        call.attach(task)
        try:
            return await task
        except asyncio.CancelledError:
            if call.aborted:
                raise CallCancelled("Chat call was cancelled") from None
            raise
        finally:
            call.attach(None)

    async def _recover(
        self,
        error: ProviderError,
        request: ChatRequest,
        call: ChatCall,
    ) -> ChatRequest:
        """Return the request for the next attempt, or raise the final error."""
        retry = call.retry
        retry.last_error = error
        action = self._classifier.action(error, request, retry)

        if action is Action.DOWNGRADE:
            retry.downgraded = True
            _logger.info(
                "Model %s rejected web search (%s), resubmitting without it",
                request.model, error.message,
            )
            return downgrade_request(request)

        if action is Action.RETRY:
            retry.attempt += 1
            delay = retry.attempt * self.retry_delay
            _logger.warning(
                "Chat request failed: %s (attempt %d/%d), retrying in %.1fs",
                error.message, retry.attempt, self.max_retries + 1, delay,
            )
            await asyncio.sleep(delay)
            return request

        _logger.warning(
            "Chat request failed: %s (cause=%s, no retry)",
            error.message, error.cause.value,
        )
        raise self._final_error(error, retry)

    def _final_error(self, error: ProviderError, retry: RetryState) -> ProviderError:
        if retry.attempt == 0:
            return error
        attempts = retry.attempt + 1 + int(retry.downgraded)
        final = ProviderError(
            f"{error.message} (gave up after {attempts} attempts)",
            error.cause, error.status_code, error.body,
        )
        final.__cause__ = error
        return final
