"""Base protocol and types for completion transports."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Literal, Protocol, TypedDict

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Mapping

    from toolchat.tools import ToolCall, ToolDefinition


class _MessageRequired(TypedDict):
    """Required fields for all messages."""

    role: Literal["system", "user", "assistant", "tool"]
    content: str


class Message(_MessageRequired, total=False):
    """A single turn in a conversation.

    Assistant turns may carry the tool calls the model requested; tool turns
    must carry the ``tool_call_id`` of the call they answer.

    Attributes:
        role: "system", "user", "assistant", or "tool".
        content: Turn text (tool turns hold the JSON result).
        tool_call_id: ID of the tool call this message responds to (tool role only).
        tool_calls: Tool calls requested by the model (assistant role only).
    """

    tool_call_id: str
    tool_calls: list[ToolCall]


@dataclass(frozen=True)
class CitationRef:
    """A source reference returned alongside a response."""

    url: str
    title: str | None = None


@dataclass
class CompletionResponse:
    """Complete response from a single-shot completion request.

    Attributes:
        content: Text content of the response (may be empty).
        model: Model that generated the response.
        tool_calls: Tool calls requested by the model.
        citations: Source references attached to the response.
        notices: Service-level messages (e.g. retry notices from the transport).
        finish_reason: Why the response ended ("stop", "tool_calls", ...).
        status_code: HTTP-like status of the exchange.
        tokens_used: Total tokens consumed, if reported.
    """

    content: str = ""
    model: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    citations: list[CitationRef] = field(default_factory=list)
    notices: list[str] = field(default_factory=list)
    finish_reason: str = "stop"
    status_code: int = 200
    tokens_used: int = 0

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)


@dataclass
class ToolCallDelta:
    """Fragment of a tool call received while streaming.

    The first fragment for an ``index`` usually carries ``id`` and ``name``;
    later fragments carry only more ``arguments`` text.
    """

    index: int = 0
    id: str | None = None
    name: str | None = None
    arguments: str | None = None


@dataclass
class CompletionDelta:
    """One chunk of a streamed completion.

    Attributes:
        content: Text fragment, if any.
        tool_calls: Tool-call fragments, if any.
        citations: Citations delivered with this chunk.
        notice: Service-level message, if any.
        finish_reason: Set on the chunk that ends the choice.
    """

    content: str | None = None
    tool_calls: list[ToolCallDelta] = field(default_factory=list)
    citations: list[CitationRef] = field(default_factory=list)
    notice: str | None = None
    finish_reason: str | None = None


class Transport(Protocol):
    """Protocol for completion backends.

    A transport sends the conversation and advertised tools to the backend.
    With ``stream=False`` the awaited result is a :class:`CompletionResponse`;
    with ``stream=True`` it is an async iterator of :class:`CompletionDelta`.
    Failures raise :class:`TransportError`, during the call or while iterating.
    """

    async def complete(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
        model: str | None = None,
        stream: bool = False,
    ) -> CompletionResponse | AsyncIterator[CompletionDelta]:
        """Request a completion.

        Args:
            messages: Conversation so far, oldest first.
            tools: Tool definitions to advertise, or None.
            model: Model override; None uses the transport's default.
            stream: Whether to return a delta stream.

        Returns:
            CompletionResponse, or an async iterator of deltas when streaming.

        Raises:
            TransportError: If the request fails.
        """
        ...


class TransportError(Exception):
    """Base exception for transport failures.

    Attributes:
        provider: Transport name used in the message prefix.
        status_code: HTTP-like status, if the backend answered.
        body: Raw response body, if any.
        headers: Response headers, if any.
    """

    def __init__(
        self,
        provider: str,
        message: str,
        status_code: int | None = None,
        body: str | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> None:
        self.provider = provider
        self.status_code = status_code
        self.body = body
        self.headers = dict(headers or {})
        super().__init__(f"[{provider}] {message}")


class TransportConnectionError(TransportError):
    """Raised when the backend can't be reached or the request times out."""

    pass


class TransportRateLimitError(TransportError):
    """Raised when the backend answers 429.

    Attributes:
        retry_after: Seconds to wait, from the ``Retry-After`` header.
    """

    def __init__(
        self,
        provider: str,
        message: str,
        status_code: int | None = 429,
        body: str | None = None,
        headers: Mapping[str, str] | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(provider, message, status_code, body, headers)
        self.retry_after = retry_after if retry_after is not None else parse_retry_after(self.headers)


class TransportResponseError(TransportError):
    """Raised when the backend's payload can't be understood."""

    pass


def parse_retry_after(headers: Mapping[str, str]) -> float | None:
    """Read a whole-seconds ``Retry-After`` value, ignoring HTTP dates."""
    for key, value in headers.items():
        if key.lower() == "retry-after":
            try:
                return max(0.0, float(value))
            except (TypeError, ValueError):
                return None
    return None
