"""LangChain adapter for the toolchat transport protocol."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from langchain_core.messages import AIMessage, HumanMessage, SystemMessage, ToolMessage

from toolchat.providers.base import (
    CompletionDelta,
    CompletionResponse,
    Message,
    ToolCallDelta,
    TransportError,
)
from toolchat.providers.openai_provider import parse_citations
from toolchat.tools import ToolCall

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from toolchat.tools import ToolDefinition

    from langchain_core.language_models import BaseChatModel

PROVIDER = "langchain"


class LangChainTransport:
    """Adapts LangChain chat models to the Transport protocol.

    Any ``BaseChatModel`` that supports ``bind_tools`` can drive a
    conversation thread, streaming or not.

    Attributes:
        default_model: The model name this transport was configured with.
    """

    def __init__(self, model: BaseChatModel, default_model: str) -> None:
        """Initialize with a LangChain chat model.

        Args:
            model: Configured LangChain chat model instance.
            default_model: Model name for identification.
        """
        self._model = model
        self._default_model = default_model

    @property
    def default_model(self) -> str:
        return self._default_model

    async def complete(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
        model: str | None = None,
        stream: bool = False,
    ) -> CompletionResponse | AsyncIterator[CompletionDelta]:
        """Generate a completion from the given messages.

        The ``model`` override only labels the response; the chat model's
        own configuration decides which model runs.

        Raises:
            TransportError: If the chat model fails.
        """
        lc_messages = [self._to_langchain_message(m) for m in messages]

        lc_model: Any = self._model
        if tools:
            lc_model = lc_model.bind_tools([t.to_openai() for t in tools], tool_choice="auto")

        if stream:
            return self._stream(lc_model, lc_messages)

        try:
            response: AIMessage = await lc_model.ainvoke(lc_messages)
        except TransportError:
            raise
        except Exception as e:
            raise TransportError(PROVIDER, f"Completion failed: {e}") from e

        tokens_used = 0
        if response.usage_metadata:
            tokens_used = response.usage_metadata.get("total_tokens", 0)

        tool_calls = []
        for i, tc in enumerate(response.tool_calls or []):
            tool_calls.append(
                ToolCall(
                    id=str(tc.get("id") or f"call_{i}"),
                    name=tc.get("name") or "",
                    arguments=json.dumps(tc.get("args") or {}),
                )
            )

        finish_reason = "unknown"
        if tool_calls:
            finish_reason = "tool_calls"
        elif response.response_metadata:
            finish_reason = response.response_metadata.get("finish_reason", "unknown")

        return CompletionResponse(
            content=_text_of(response.content),
            model=model or self._default_model,
            tool_calls=tool_calls,
            citations=parse_citations(response.additional_kwargs),
            finish_reason=finish_reason,
            tokens_used=tokens_used,
        )

    async def _stream(self, lc_model: Any, lc_messages: list[Any]) -> AsyncIterator[CompletionDelta]:
        try:
            async for chunk in lc_model.astream(lc_messages):
                tool_deltas = [
                    ToolCallDelta(
                        index=tc.get("index") if tc.get("index") is not None else i,
                        id=tc.get("id"),
                        name=tc.get("name"),
                        arguments=tc.get("args"),
                    )
                    for i, tc in enumerate(getattr(chunk, "tool_call_chunks", None) or [])
                ]
                metadata = getattr(chunk, "response_metadata", None) or {}
                yield CompletionDelta(
                    content=_text_of(chunk.content) or None,
                    tool_calls=tool_deltas,
                    citations=parse_citations(getattr(chunk, "additional_kwargs", None) or {}),
                    finish_reason=metadata.get("finish_reason"),
                )
        except TransportError:
            raise
        except Exception as e:
            raise TransportError(PROVIDER, f"Stream failed: {e}") from e

    def _to_langchain_message(self, msg: Message) -> Any:
        """Convert a conversation turn to a LangChain message."""
        role = msg["role"]
        content = msg["content"]

        if role == "system":
            return SystemMessage(content=content)
        elif role == "user":
            return HumanMessage(content=content)
        elif role == "assistant":
            tool_calls = [
                {"name": tc.name, "args": _arguments_dict(tc.arguments), "id": tc.id}
                for tc in msg.get("tool_calls") or []
            ]
            return AIMessage(content=content, tool_calls=tool_calls)
        elif role == "tool":
            tool_call_id = msg.get("tool_call_id")
            if not tool_call_id:
                raise ValueError("Message with role 'tool' must have a 'tool_call_id'")
            return ToolMessage(content=content, tool_call_id=tool_call_id)
        else:
            raise ValueError(f"Unknown role: {role}")

    async def close(self) -> None:
        """Close transport (no-op for LangChain)."""
        pass

    async def __aenter__(self) -> LangChainTransport:
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.close()


def _text_of(content: Any) -> str:
    if isinstance(content, str):
        return content
    parts = []
    for block in content or []:
        if isinstance(block, dict):
            parts.append(str(block.get("text", "")))
        else:
            parts.append(str(block))
    return "".join(parts)


def _arguments_dict(arguments: str) -> dict[str, Any]:
    # Truncated or non-object JSON maps to an empty dict.
    try:
        parsed = json.loads(arguments or "{}")
    except json.JSONDecodeError:
        return {}
    return parsed if isinstance(parsed, dict) else {}
