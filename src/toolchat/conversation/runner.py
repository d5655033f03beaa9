"""Conversation thread orchestration.

This module provides ConversationThread, which turns one user question into
a live sequence of events while the model calls capabilities and reads
their results:

    question → THINKING → (STREAMING | CALLING_TOOL)* → DONE | ERROR
"""

from __future__ import annotations

import asyncio
import json
import uuid
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, TypeVar

from toolchat.config import ThreadConfig
from toolchat.conversation.state import ConversationHistory
from toolchat.events import (
    Citation,
    Failure,
    FailureKind,
    ServiceNotice,
    StateChange,
    StreamState,
    TextDelta,
    ToolResult,
)
from toolchat.observability.logging import get_logger
from toolchat.providers.accumulator import StreamingToolCallAccumulator
from toolchat.providers.base import CompletionResponse, TransportError
from toolchat.tools.registry import CapabilityRegistry

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable

    from toolchat.events import Event
    from toolchat.providers.base import CitationRef, CompletionDelta, Message, Transport
    from toolchat.tools import Capability, ToolCall

log = get_logger(__name__)

T = TypeVar("T")


class ConversationError(Exception):
    """Raised when a conversation thread is used incorrectly."""

    pass


class ConversationBusyError(ConversationError):
    """Raised when a question is asked while another is still in flight."""

    pass


class _Cancelled(Exception):
    """Internal signal that the caller's cancel event fired."""


@dataclass
class _Round:
    """Everything one transport exchange produced."""

    text: list[str] = field(default_factory=list)
    tool_calls: list[ToolCall] = field(default_factory=list)
    citations: list[CitationRef] = field(default_factory=list)
    notices: list[str] = field(default_factory=list)

    @property
    def content(self) -> str:
        return "".join(self.text)

    def add_citations(self, citations: list[CitationRef]) -> None:
        """Keep the first citation seen for each URL."""
        seen = {c.url for c in self.citations}
        for citation in citations:
            if citation.url not in seen:
                seen.add(citation.url)
                self.citations.append(citation)


class ConversationThread:
    """A multi-turn conversation with a tool-calling model.

    The thread owns the conversation history and the capability registry.
    Each call to :meth:`ask_question` appends the question, talks to the
    transport until the model answers without requesting tools, and yields
    events as it goes. Tool calls of one round run concurrently; their
    results are committed to the history together before the next request.

    Failures never escape as exceptions: a transport error, a cancelled
    question or a runaway tool loop ends the event sequence with
    ``StateChange(ERROR)`` followed by a :class:`Failure`, and the history
    keeps only fully committed turns.

    Example:
        >>> thread = ConversationThread(transport)
        >>> thread.register_capability(CalculateCapability())
        >>> async for event in thread.ask_question("What is 12 * 7?"):
        ...     match event:
        ...         case TextDelta(text=text):
        ...             print(text, end="")
        ...         case Failure(message=message):
        ...             print("error:", message)
    """

    def __init__(
        self,
        transport: Transport,
        config: ThreadConfig | None = None,
        registry: CapabilityRegistry | None = None,
    ) -> None:
        """Initialize the thread.

        Args:
            transport: Backend used for every completion request.
            config: Thread settings; defaults apply if None.
            registry: Capability registry to share; a new one if None.
        """
        self._transport = transport
        self._config = config or ThreadConfig()
        self._registry = registry if registry is not None else CapabilityRegistry()
        self._history = ConversationHistory()
        self._state = StreamState.IDLE
        self._busy = False
        self.thread_id = uuid.uuid4().hex[:12]
        self._questions = 0
        # Rebound with the question number while a question is in flight
        self._thread_log = log.bind(thread_id=self.thread_id)
        self._log = self._thread_log

    @property
    def history(self) -> list[Message]:
        """Copy of the committed turns, oldest first."""
        return self._history.snapshot()

    @property
    def state(self) -> StreamState:
        return self._state

    @property
    def registry(self) -> CapabilityRegistry:
        return self._registry

    def register_capability(self, capability: Capability, name: str | None = None) -> None:
        self._registry.register(capability, name=name)

    def unregister_capability(self, capability: str | Capability) -> bool:
        return self._registry.unregister(capability)

    def add_system_instruction(self, text: str) -> None:
        """Append a system turn.

        Raises:
            ValueError: If ``text`` is empty.
            ConversationError: If a question has already been asked.
        """
        if not text or not text.strip():
            raise ValueError("System instruction must not be empty")
        if self._history.has_user_turns:
            raise ConversationError("System instructions must be added before the first question")
        self._history.add_system(text)

    def ask_question(
        self,
        text: str,
        model: str | None = None,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> AsyncIterator[Event]:
        """Ask a question and stream the events of the answer.

        Args:
            text: The question.
            model: Model for this question; falls back to the configured default.
            cancel_event: Set it to abandon the question; the sequence then
                ends with ``Failure(CANCELLED)``.

        Returns:
            Async iterator of events, finite and not restartable.

        Raises:
            ValueError: If ``text`` is empty.
            ConversationBusyError: If another question is still in flight.
        """
        if not text or not text.strip():
            raise ValueError("Question must not be empty")
        if self._busy:
            raise ConversationBusyError("A question is already in progress on this thread")
        return self._ask(text, model or self._config.default_model, cancel_event)

    async def _ask(
        self,
        text: str,
        model: str | None,
        cancel_event: asyncio.Event | None,
    ) -> AsyncIterator[Event]:
        # Re-checked here: two iterators may be created before either starts.
        if self._busy:
            raise ConversationBusyError("A question is already in progress on this thread")
        self._busy = True
        self._questions += 1
        self._log = self._thread_log.bind(question=self._questions)
        rounds = 0

        try:
            self._history.add_user(text)
            self._log.info("question_start", model=model, turns=len(self._history))
            yield self._enter(StreamState.THINKING)

            while True:
                current = _Round()
                try:
                    async with aclosing(self._request(current, model, cancel_event)) as events:
                        async for event in events:
                            yield event
                except _Cancelled:
                    for event in self._cancelled():
                        yield event
                    return
                except TransportError as e:
                    self._log.warning("question_failed", status_code=e.status_code, error=str(e))
                    for event in self._failed(FailureKind.TRANSPORT, str(e), e.status_code):
                        yield event
                    return
                except Exception as e:
                    self._log.exception("transport_unexpected_error", error=str(e))
                    for event in self._failed(FailureKind.TRANSPORT, f"Transport failed: {e}"):
                        yield event
                    return

                if not current.tool_calls:
                    self._history.add_assistant(current.content)
                    for event in self._attachments(current):
                        yield event
                    self._log.info("question_complete", rounds=rounds, length=len(current.content))
                    yield self._enter(StreamState.DONE)
                    return

                if rounds >= self._config.max_tool_rounds:
                    self._log.warning("round_limit_exceeded", limit=self._config.max_tool_rounds)
                    for event in self._failed(
                        FailureKind.ROUND_LIMIT_EXCEEDED,
                        f"Exceeded maximum tool rounds ({self._config.max_tool_rounds}).",
                    ):
                        yield event
                    return
                rounds += 1

                yield self._enter(StreamState.CALLING_TOOL)
                try:
                    results = await self._until_cancelled(
                        asyncio.gather(*(self._execute(call) for call in current.tool_calls)),
                        cancel_event,
                    )
                except _Cancelled:
                    for event in self._cancelled():
                        yield event
                    return

                self._history.add_tool_round(current.content, current.tool_calls, results)
                for event in self._attachments(current):
                    yield event
                for call, result in zip(current.tool_calls, results, strict=True):
                    yield ToolResult(tool_name=call.name, result=result, tool_call_id=call.id)
        finally:
            self._state = StreamState.IDLE
            self._busy = False
            self._log = self._thread_log

    async def _request(
        self,
        current: _Round,
        model: str | None,
        cancel_event: asyncio.Event | None,
    ) -> AsyncIterator[Event]:
        """Run one transport exchange, filling ``current`` and yielding text events."""
        tools = self._registry.advertise() or None
        self._log.debug(
            "transport_request",
            model=model,
            messages=len(self._history),
            tools=len(tools or []),
            stream=self._config.streaming,
        )
        result = await self._until_cancelled(
            self._transport.complete(
                self._history.snapshot(),
                tools=tools,
                model=model,
                stream=self._config.streaming,
            ),
            cancel_event,
        )

        if isinstance(result, CompletionResponse):
            current.tool_calls = list(result.tool_calls)
            current.add_citations(result.citations)
            current.notices.extend(result.notices)
            if result.content:
                for event in self._text(current, result.content):
                    yield event
            return

        accumulator = StreamingToolCallAccumulator()
        stream = aiter(result)
        try:
            while True:
                delta = await self._until_cancelled(_next_delta(stream), cancel_event)
                if delta is None:
                    break
                if delta.notice:
                    current.notices.append(delta.notice)
                current.add_citations(delta.citations)
                for fragment in delta.tool_calls:
                    accumulator.add(fragment)
                if delta.content:
                    for event in self._text(current, delta.content):
                        yield event
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()
        current.tool_calls = accumulator.tool_calls()

    def _text(self, current: _Round, text: str) -> list[Event]:
        current.text.append(text)
        events: list[Event] = []
        if self._state is not StreamState.STREAMING:
            events.append(self._enter(StreamState.STREAMING))
        events.append(TextDelta(text))
        return events

    async def _execute(self, call: ToolCall) -> str:
        """Run one tool call; always returns a JSON payload."""
        capability = self._registry.resolve(call.name)
        if capability is None:
            self._log.warning("tool_call_unknown", tool=call.name, tool_call_id=call.id)
            return json.dumps({"error": f"unknown tool {call.name}"})

        self._log.debug("tool_call_start", tool=call.name, tool_call_id=call.id)
        timeout = self._config.tool_timeout
        try:
            if timeout is None:
                result: Any = await capability.execute(call.arguments)
            else:
                result = await asyncio.wait_for(capability.execute(call.arguments), timeout)
        except TimeoutError:
            self._log.warning("tool_call_timeout", tool=call.name, timeout=timeout)
            return json.dumps(
                {"error": f"{call.name} did not finish within {timeout:g} seconds.", "status": "timeout"}
            )
        except (KeyboardInterrupt, SystemExit):
            raise
        except Exception as e:
            self._log.warning("tool_call_error", tool=call.name, error=str(e))
            return json.dumps({"error": f"Error executing {call.name}: {e}"})

        if not isinstance(result, str):
            result = json.dumps(result, default=str)
        self._log.debug("tool_call_complete", tool=call.name, result_length=len(result))
        return result

    async def _until_cancelled(self, awaitable: Awaitable[T], cancel_event: asyncio.Event | None) -> T:
        """Await ``awaitable`` unless ``cancel_event`` fires first.

        Raises:
            _Cancelled: If the event is set before the awaitable finishes.
        """
        if cancel_event is None:
            return await awaitable
        if cancel_event.is_set():
            _close_unawaited(awaitable)
            raise _Cancelled

        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(cancel_event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not task.done():
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)

        if task.cancelled():
            raise _Cancelled
        return task.result()

    def _enter(self, state: StreamState) -> StateChange:
        self._state = state
        return StateChange(state)

    def _attachments(self, current: _Round) -> list[Event]:
        events: list[Event] = [Citation(url=c.url, title=c.title) for c in current.citations]
        events.extend(ServiceNotice(notice) for notice in current.notices)
        return events

    def _failed(self, kind: FailureKind, message: str, status_code: int | None = None) -> list[Event]:
        return [self._enter(StreamState.ERROR), Failure(kind=kind, message=message, status_code=status_code)]

    def _cancelled(self) -> list[Event]:
        self._log.info("question_cancelled")
        return self._failed(FailureKind.CANCELLED, "Question was cancelled.")


async def _next_delta(stream: AsyncIterator[CompletionDelta]) -> CompletionDelta | None:
    try:
        return await anext(stream)
    except StopAsyncIteration:
        return None


def _close_unawaited(awaitable: Awaitable[Any]) -> None:
    close = getattr(awaitable, "close", None)
    if close is not None:
        close()
    elif isinstance(awaitable, asyncio.Future):
        awaitable.cancel()
