"""Conversation history tracking.

This module provides ConversationHistory, the append-only record of turns
sent to the transport on every request.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence

    from toolchat.providers.base import Message
    from toolchat.tools import ToolCall


class ConversationHistory:
    """Ordered, append-only sequence of conversation turns.

    Turns can only be added, never edited or removed. Every ``tool`` turn
    answers a tool call from an earlier ``assistant`` turn; a tool turn
    without a matching call is rejected.

    Example:
        >>> history = ConversationHistory()
        >>> history.add_system("Answer briefly.")
        >>> history.add_user("What is 2+2?")
        >>> history.add_assistant("4")
        >>> [m["role"] for m in history]
        ['system', 'user', 'assistant']
    """

    def __init__(self) -> None:
        self._messages: list[Message] = []
        self._open_call_ids: set[str] = set()

    def add_system(self, content: str) -> None:
        self._messages.append({"role": "system", "content": content})

    def add_user(self, content: str) -> None:
        self._messages.append({"role": "user", "content": content})

    def add_assistant(self, content: str, tool_calls: Sequence[ToolCall] | None = None) -> None:
        """Append an assistant turn, optionally carrying requested tool calls."""
        message: Message = {"role": "assistant", "content": content}
        if tool_calls:
            message["tool_calls"] = list(tool_calls)
            self._open_call_ids.update(tc.id for tc in tool_calls)
        self._messages.append(message)

    def add_tool(self, tool_call_id: str, content: str) -> None:
        """Append the result of one tool call.

        Raises:
            ValueError: If no earlier assistant turn requested ``tool_call_id``.
        """
        if tool_call_id not in self._open_call_ids:
            raise ValueError(f"No assistant tool call with id '{tool_call_id}'")
        self._messages.append({"role": "tool", "content": content, "tool_call_id": tool_call_id})

    def add_tool_round(
        self,
        content: str,
        tool_calls: Sequence[ToolCall],
        results: Sequence[str],
    ) -> None:
        """Append an assistant tool-call turn together with one tool turn per call.

        Either all turns are added or none are.

        Raises:
            ValueError: If calls and results differ in length, or there are no calls.
        """
        if not tool_calls:
            raise ValueError("A tool round needs at least one tool call")
        if len(tool_calls) != len(results):
            raise ValueError(f"Got {len(results)} results for {len(tool_calls)} tool calls")

        self.add_assistant(content, tool_calls)
        for call, result in zip(tool_calls, results, strict=True):
            self.add_tool(call.id, result)

    def snapshot(self) -> list[Message]:
        """Return a copy of the turns, safe to hand to a transport."""
        snapshot: list[Message] = []
        for message in self._messages:
            copied: Message = {**message}
            if "tool_calls" in message:
                copied["tool_calls"] = list(message["tool_calls"])
            snapshot.append(copied)
        return snapshot

    @property
    def has_user_turns(self) -> bool:
        return any(m["role"] == "user" for m in self._messages)

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(self.snapshot())

    def __getitem__(self, index: int) -> Message:
        return self.snapshot()[index]
