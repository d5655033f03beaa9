"""Completion transports: the protocol, concrete backends and decorators."""

from toolchat.providers.accumulator import StreamingToolCallAccumulator
from toolchat.providers.base import (
    CitationRef,
    CompletionDelta,
    CompletionResponse,
    Message,
    ToolCallDelta,
    Transport,
    TransportConnectionError,
    TransportError,
    TransportRateLimitError,
    TransportResponseError,
)
from toolchat.providers.factory import create_transport
from toolchat.providers.langchain_wrapper import LangChainTransport
from toolchat.providers.logging_wrapper import LoggingTransport
from toolchat.providers.openai_provider import OpenAICompatibleTransport
from toolchat.providers.retry import RetryingTransport, RetryPolicy, RetryState

__all__ = [
    "CitationRef",
    "CompletionDelta",
    "CompletionResponse",
    "LangChainTransport",
    "LoggingTransport",
    "Message",
    "OpenAICompatibleTransport",
    "RetryPolicy",
    "RetryState",
    "RetryingTransport",
    "StreamingToolCallAccumulator",
    "ToolCallDelta",
    "Transport",
    "TransportConnectionError",
    "TransportError",
    "TransportRateLimitError",
    "TransportResponseError",
    "create_transport",
]
