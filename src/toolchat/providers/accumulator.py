"""Reassembles tool calls from streamed fragments."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from toolchat.tools.base import ToolCall

if TYPE_CHECKING:
    from toolchat.providers.base import ToolCallDelta


@dataclass
class _PartialCall:
    id: str = ""
    name: str = ""
    arguments: list[str] = field(default_factory=list)


class StreamingToolCallAccumulator:
    """Collects tool-call fragments keyed by their stream index.

    ``id`` and ``name`` are kept from the first fragment that supplies them;
    argument text is concatenated in arrival order. Completed calls are
    returned sorted by index, whatever order the indices arrived in.

    Example:
        >>> acc = StreamingToolCallAccumulator()
        >>> acc.add(ToolCallDelta(index=0, id="call_1", name="calculate", arguments='{"query":'))
        >>> acc.add(ToolCallDelta(index=0, arguments='"2+2"}'))
        >>> acc.tool_calls()
        [ToolCall(id='call_1', name='calculate', arguments='{"query":"2+2"}')]
    """

    def __init__(self) -> None:
        self._calls: dict[int, _PartialCall] = {}

    def add(self, delta: ToolCallDelta) -> None:
        partial = self._calls.setdefault(delta.index, _PartialCall())
        if delta.id and not partial.id:
            partial.id = delta.id
        if delta.name and not partial.name:
            partial.name = delta.name
        if delta.arguments:
            partial.arguments.append(delta.arguments)

    @property
    def has_tool_calls(self) -> bool:
        return bool(self._calls)

    def tool_calls(self) -> list[ToolCall]:
        calls = []
        for index in sorted(self._calls):
            partial = self._calls[index]
            calls.append(
                ToolCall(
                    id=partial.id or f"call_{index}",
                    name=partial.name,
                    arguments="".join(partial.arguments) or "{}",
                )
            )
        return calls

    def reset(self) -> None:
        self._calls.clear()
