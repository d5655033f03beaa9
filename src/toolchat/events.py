"""Events emitted while a conversation thread answers a question.

Every question produces a finite, ordered sequence of these events. The
union is closed: consumers are expected to ``match`` on the concrete type.

Example:
    >>> async for event in thread.ask_question("What is 2+2?"):
    ...     match event:
    ...         case TextDelta(text=text):
    ...             print(text, end="")
    ...         case Failure(kind=kind, message=message):
    ...             print(f"[{kind.value}] {message}")
    ...         case _:
    ...             pass
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TypeAlias


class StreamState(Enum):
    """Phase of the orchestrator while a question is in flight.

    ``IDLE`` is the resting phase between questions and is never emitted.
    ``DONE`` and ``ERROR`` are terminal for the current question only.
    """

    IDLE = "idle"
    THINKING = "thinking"
    STREAMING = "streaming"
    CALLING_TOOL = "calling_tool"
    DONE = "done"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (StreamState.DONE, StreamState.ERROR)


class FailureKind(Enum):
    """Why a question terminated without an answer."""

    TRANSPORT = "transport"
    ROUND_LIMIT_EXCEEDED = "round_limit_exceeded"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class StateChange:
    """The orchestrator moved to a new phase."""

    state: StreamState


@dataclass(frozen=True)
class TextDelta:
    """A fragment of assistant text, in arrival order."""

    text: str


@dataclass(frozen=True)
class ToolResult:
    """A tool call finished (successfully or with an ``error`` payload).

    Attributes:
        tool_name: Name the model used to call the tool.
        result: JSON text returned to the model.
        tool_call_id: ID of the originating tool call.
    """

    tool_name: str
    result: str
    tool_call_id: str = ""


@dataclass(frozen=True)
class Citation:
    """A source reference attached to the response."""

    url: str
    title: str | None = None


@dataclass(frozen=True)
class ServiceNotice:
    """Informational message from the service layer (e.g. retry notices)."""

    message: str


@dataclass(frozen=True)
class Failure:
    """Terminal failure for the current question.

    Attributes:
        kind: Failure category, distinguishing cancellation from breakage.
        message: Human-readable description.
        status_code: HTTP-like status for transport failures, if known.
    """

    kind: FailureKind
    message: str
    status_code: int | None = None


Event: TypeAlias = StateChange | TextDelta | ToolResult | Citation | ServiceNotice | Failure


def collect_text(events: list[Event]) -> str:
    """Concatenate the ``TextDelta`` payloads of an event list."""
    return "".join(e.text for e in events if isinstance(e, TextDelta))
