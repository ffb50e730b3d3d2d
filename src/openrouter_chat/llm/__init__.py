"""Streaming chat-completion client: builder, transport, decoder, retries."""

from openrouter_chat.llm.builder import ChatRequest, build_request, downgrade_request
from openrouter_chat.llm.call import ChatCall
from openrouter_chat.llm.decoder import SSEDecoder, iter_events
from openrouter_chat.llm.error_recovery import ErrorClassifier, RetryController
from openrouter_chat.llm.provider import ChatProvider, OpenRouterProvider
from openrouter_chat.llm.transport import HttpTransport

__all__ = [
    "ChatCall",
    "ChatProvider",
    "ChatRequest",
    "ErrorClassifier",
    "HttpTransport",
    "OpenRouterProvider",
    "RetryController",
    "SSEDecoder",
    "build_request",
    "downgrade_request",
    "iter_events",
]
