"""Tests for ConversationThread."""

from __future__ import annotations

import asyncio
import json
import time
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from toolchat import (
    Citation,
    ConversationBusyError,
    ConversationError,
    ConversationThread,
    Failure,
    FailureKind,
    ServiceNotice,
    StateChange,
    StreamState,
    TextDelta,
    ThreadConfig,
    ToolResult,
    collect_text,
)
from toolchat.providers import (
    CitationRef,
    CompletionDelta,
    CompletionResponse,
    RetryingTransport,
    ToolCallDelta,
    TransportError,
    TransportRateLimitError,
)
from toolchat.tools import CalculateCapability, FunctionCapability, ToolCall

THINKING = StateChange(StreamState.THINKING)
STREAMING = StateChange(StreamState.STREAMING)
CALLING_TOOL = StateChange(StreamState.CALLING_TOOL)
DONE = StateChange(StreamState.DONE)
ERROR = StateChange(StreamState.ERROR)

# --- Helper Classes ---


class ScriptedTransport:
    """Transport that plays back a script, one step per request.

    Steps are CompletionResponse objects (streamed as deltas when asked to
    stream), lists of deltas, or exceptions to raise. The last step repeats.
    """

    def __init__(self, *script: Any) -> None:
        self.script = list(script)
        self.calls: list[dict[str, Any]] = []

    async def complete(
        self,
        messages: list[Any],
        tools: list[Any] | None = None,
        model: str | None = None,
        stream: bool = False,
    ) -> Any:
        self.calls.append({"messages": messages, "tools": tools, "model": model, "stream": stream})
        step = self.script[min(len(self.calls), len(self.script)) - 1]
        if isinstance(step, Exception):
            raise step
        if isinstance(step, list):
            return _deltas(step)
        if stream:
            return _as_stream(step)
        return step


async def _deltas(items: list[Any]) -> Any:
    for item in items:
        if isinstance(item, Exception):
            raise item
        yield item


async def _as_stream(response: CompletionResponse) -> Any:
    if response.content:
        yield CompletionDelta(content=response.content)
    for i, call in enumerate(response.tool_calls):
        yield CompletionDelta(tool_calls=[ToolCallDelta(index=i, id=call.id, name=call.name, arguments=call.arguments)])
    for notice in response.notices:
        yield CompletionDelta(notice=notice)
    yield CompletionDelta(citations=list(response.citations), finish_reason=response.finish_reason)


def text(content: str, **kwargs: Any) -> CompletionResponse:
    return CompletionResponse(content=content, **kwargs)


def calls(*tool_calls: ToolCall, content: str = "") -> CompletionResponse:
    return CompletionResponse(content=content, tool_calls=list(tool_calls), finish_reason="tool_calls")


def make_thread(transport: Any, streaming: bool = True, **config: Any) -> ConversationThread:
    thread = ConversationThread(transport, ThreadConfig(streaming=streaming, **config))
    thread.register_capability(CalculateCapability())
    return thread


async def ask(thread: ConversationThread, question: str, **kwargs: Any) -> list[Any]:
    return [event async for event in thread.ask_question(question, **kwargs)]


# --- Plain Text Answers ---


@pytest.mark.asyncio
async def test_streamed_text_concatenates_to_answer() -> None:
    """Text deltas concatenate to the committed answer, then exactly one DONE."""
    transport = ScriptedTransport([CompletionDelta(content="Hel"), CompletionDelta(content="lo!")])
    thread = make_thread(transport)

    events = await ask(thread, "Say hello")

    assert events == [THINKING, STREAMING, TextDelta("Hel"), TextDelta("lo!"), DONE]
    assert collect_text(events) == "Hello!"
    assert events.count(DONE) == 1
    assert thread.history[-1] == {"role": "assistant", "content": "Hello!"}
    assert thread.state is StreamState.IDLE


@pytest.mark.asyncio
@pytest.mark.parametrize("streaming", [True, False])
async def test_streaming_and_single_shot_emit_same_events(streaming: bool) -> None:
    """Both transport modes normalize to the same event sequence."""
    transport = ScriptedTransport(text("Paris.", citations=[CitationRef("https://a.example", "A")]))
    thread = make_thread(transport, streaming=streaming)

    events = await ask(thread, "Capital of France?")

    assert events == [THINKING, STREAMING, TextDelta("Paris."), Citation("https://a.example", "A"), DONE]
    assert transport.calls[0]["stream"] is streaming


@pytest.mark.asyncio
async def test_citations_then_notices_before_done() -> None:
    """Citations come before service notices, both before DONE."""
    transport = ScriptedTransport(
        [
            CompletionDelta(notice="Rate limit hit, retrying (1/3)..."),
            CompletionDelta(content="Answer"),
            CompletionDelta(citations=[CitationRef("https://a.example")]),
        ]
    )
    thread = make_thread(transport)

    events = await ask(thread, "q")

    assert events[-3:] == [
        Citation("https://a.example"),
        ServiceNotice("Rate limit hit, retrying (1/3)..."),
        DONE,
    ]


@pytest.mark.asyncio
async def test_model_selection_per_question() -> None:
    """The per-question model wins over the configured default."""
    transport = ScriptedTransport(text("ok"))
    thread = make_thread(transport, default_model="grok-default")

    await ask(thread, "one")
    await ask(thread, "two", model="grok-override")

    assert [c["model"] for c in transport.calls] == ["grok-default", "grok-override"]


# --- Tool Rounds ---


@pytest.mark.asyncio
@pytest.mark.parametrize("streaming", [True, False])
async def test_tool_round_commits_before_next_request(streaming: bool) -> None:
    """Each tool call gets one tool turn, tagged with its id, before the next request."""
    transport = ScriptedTransport(
        calls(ToolCall(id="call_1", name="calculate", arguments='{"query": "12*7"}')),
        text("It is 84."),
    )
    thread = make_thread(transport, streaming=streaming)

    events = await ask(thread, "What is 12*7?")

    assert events[:2] == [THINKING, CALLING_TOOL]
    assert isinstance(events[2], ToolResult)
    assert events[2].tool_name == "calculate"
    assert events[2].tool_call_id == "call_1"
    assert json.loads(events[2].result)["result"] == "84"
    assert events[3:] == [STREAMING, TextDelta("It is 84."), DONE]

    second_request = transport.calls[1]["messages"]
    assert [m["role"] for m in second_request] == ["user", "assistant", "tool"]
    assert second_request[1]["tool_calls"][0].id == "call_1"
    assert second_request[2]["tool_call_id"] == "call_1"
    assert [d.name for d in transport.calls[0]["tools"]] == ["calculate"]


@pytest.mark.asyncio
async def test_tool_calls_in_a_round_run_concurrently() -> None:
    """Calls in one round overlap; results come back in descriptor order."""
    a_started, b_started = asyncio.Event(), asyncio.Event()

    async def tool_a(arguments: str) -> str:  # noqa: ARG001
        a_started.set()
        await b_started.wait()
        return '{"a": 1}'

    async def tool_b(arguments: str) -> str:  # noqa: ARG001
        b_started.set()
        await a_started.wait()
        return '{"b": 2}'

    transport = ScriptedTransport(calls(ToolCall(id="1", name="a"), ToolCall(id="2", name="b")), text("done"))
    thread = make_thread(transport)
    thread.register_capability(FunctionCapability("a", "A", {"type": "object"}, tool_a))
    thread.register_capability(FunctionCapability("b", "B", {"type": "object"}, tool_b))

    events = await asyncio.wait_for(ask(thread, "both"), timeout=2)

    results = [e for e in events if isinstance(e, ToolResult)]
    assert [(r.tool_name, r.result) for r in results] == [("a", '{"a": 1}'), ("b", '{"b": 2}')]
    assert [m.get("tool_call_id") for m in transport.calls[1]["messages"][2:]] == ["1", "2"]


@pytest.mark.asyncio
async def test_unknown_tool_is_contained() -> None:
    """An unregistered tool name yields an error payload and the answer continues."""
    transport = ScriptedTransport(calls(ToolCall(id="call_1", name="teleport")), text("Sorry."))
    thread = make_thread(transport)

    events = await ask(thread, "Beam me up")

    assert ToolResult("teleport", '{"error": "unknown tool teleport"}', "call_1") in events
    assert events[-1] == DONE
    assert thread.history[2]["content"] == '{"error": "unknown tool teleport"}'
    assert thread.history[2]["tool_call_id"] == "call_1"


@pytest.mark.asyncio
async def test_capability_exception_is_contained() -> None:
    """A capability that raises produces an error payload, not a failure."""

    async def explode(arguments: str) -> str:  # noqa: ARG001
        raise RuntimeError("kaboom")

    transport = ScriptedTransport(calls(ToolCall(id="c", name="boom")), text("ok"))
    thread = make_thread(transport)
    thread.register_capability(FunctionCapability("boom", "Boom", {"type": "object"}, explode))

    events = await ask(thread, "go")

    [result] = [e for e in events if isinstance(e, ToolResult)]
    assert json.loads(result.result) == {"error": "Error executing boom: kaboom"}
    assert events[-1] == DONE


@pytest.mark.asyncio
async def test_missing_query_reaches_the_model_as_error() -> None:
    """calculate called with {} reports a missing query back to the model."""
    transport = ScriptedTransport(calls(ToolCall(id="c", name="calculate", arguments="{}")), text("Need a query."))
    thread = make_thread(transport)

    events = await ask(thread, "calc")

    [result] = [e for e in events if isinstance(e, ToolResult)]
    payload = json.loads(result.result)
    assert "missing query" in payload["error"]
    assert payload["status"] != "completed"


@pytest.mark.asyncio
async def test_tool_timeout_reported_in_payload() -> None:
    """Capabilities exceeding tool_timeout return a timeout payload."""

    async def slow(arguments: str) -> str:  # noqa: ARG001
        await asyncio.sleep(5)
        return "{}"

    transport = ScriptedTransport(calls(ToolCall(id="c", name="slow")), text("gave up"))
    thread = make_thread(transport, tool_timeout=0.01)
    thread.register_capability(FunctionCapability("slow", "Slow", {"type": "object"}, slow))

    events = await ask(thread, "go")

    [result] = [e for e in events if isinstance(e, ToolResult)]
    assert json.loads(result.result)["status"] == "timeout"


@pytest.mark.asyncio
async def test_round_limit_terminates() -> None:
    """A model that always wants tools is stopped after max_tool_rounds."""
    transport = ScriptedTransport(calls(ToolCall(id="c", name="calculate", arguments='{"query": "1"}')))
    thread = make_thread(transport, max_tool_rounds=2)

    events = await ask(thread, "loop forever")

    assert events[-2:] == [
        ERROR,
        Failure(FailureKind.ROUND_LIMIT_EXCEEDED, "Exceeded maximum tool rounds (2)."),
    ]
    assert len(transport.calls) == 3
    assert [m["role"] for m in thread.history] == ["user", "assistant", "tool", "assistant", "tool"]
    assert thread.state is StreamState.IDLE


# --- Failures ---


@pytest.mark.asyncio
async def test_transport_failure_ends_with_error() -> None:
    """A transport error becomes ERROR + Failure and commits nothing else."""
    transport = ScriptedTransport(TransportError("test", "unavailable", status_code=503))
    thread = make_thread(transport)

    events = await ask(thread, "hello?")

    assert events == [THINKING, ERROR, Failure(FailureKind.TRANSPORT, "[test] unavailable", 503)]
    assert thread.history == [{"role": "user", "content": "hello?"}]
    assert thread.state is StreamState.IDLE


@pytest.mark.asyncio
async def test_stream_failure_discards_partial_text() -> None:
    """Text streamed before a failure is never committed."""
    transport = ScriptedTransport([CompletionDelta(content="Half an ans"), TransportError("test", "reset")])
    thread = make_thread(transport)

    events = await ask(thread, "q")

    assert TextDelta("Half an ans") in events
    assert events[-1].kind is FailureKind.TRANSPORT
    assert [m["role"] for m in thread.history] == ["user"]


@pytest.mark.asyncio
async def test_thread_recovers_after_failure() -> None:
    """The next question after an error proceeds normally."""
    transport = ScriptedTransport(TransportError("test", "down"), text("back"))
    thread = make_thread(transport)

    await ask(thread, "first")
    events = await ask(thread, "second")

    assert events[-1] == DONE
    assert [m["content"] for m in thread.history] == ["first", "second", "back"]


@pytest.mark.asyncio
async def test_rate_limit_retries_surface_as_notices() -> None:
    """Retries by the transport reach the caller as service notices."""
    inner = ScriptedTransport(TransportRateLimitError("test", "slow down"), text("ok"))
    thread = make_thread(RetryingTransport(inner, sleep=AsyncMock()))

    events = await ask(thread, "q")

    assert events[-2:] == [ServiceNotice("Rate limit hit, retrying (1/3)..."), DONE]
    assert collect_text(events) == "ok"


# --- Conversation Continuity ---


@pytest.mark.asyncio
async def test_second_question_sees_prior_turns() -> None:
    """History spans questions and is sent in full every time."""
    transport = ScriptedTransport(text("Hi Ada."), text("Your name is Ada."))
    thread = make_thread(transport)
    thread.add_system_instruction("Be friendly.")

    await ask(thread, "I'm Ada.")
    await ask(thread, "What's my name?")

    sent = transport.calls[1]["messages"]
    assert [(m["role"], m["content"]) for m in sent] == [
        ("system", "Be friendly."),
        ("user", "I'm Ada."),
        ("assistant", "Hi Ada."),
        ("user", "What's my name?"),
    ]


def test_system_instruction_rejected_after_first_question() -> None:
    """System turns can only be added before any question."""
    thread = make_thread(ScriptedTransport(text("ok")))
    thread._history.add_user("already asked")

    with pytest.raises(ConversationError, match="before the first question"):
        thread.add_system_instruction("late rules")


def test_empty_inputs_rejected() -> None:
    """Empty questions and instructions are caller errors."""
    thread = make_thread(ScriptedTransport(text("ok")))

    with pytest.raises(ValueError, match="Question"):
        thread.ask_question("   ")
    with pytest.raises(ValueError, match="System instruction"):
        thread.add_system_instruction("")


def test_history_is_read_only_copy() -> None:
    """Mutating the history property doesn't affect the thread."""
    thread = make_thread(ScriptedTransport(text("ok")))
    thread.add_system_instruction("rules")

    thread.history.append({"role": "user", "content": "sneaky"})

    assert len(thread.history) == 1


def test_register_and_unregister_capabilities() -> None:
    """Capabilities can be added under aliases and removed."""
    thread = make_thread(ScriptedTransport(text("ok")))
    calculator = thread.registry.resolve("calculate")
    thread.register_capability(calculator, name="math")

    assert thread.registry.names == ["calculate", "math"]
    assert thread.unregister_capability("math") is True
    assert thread.unregister_capability(calculator) is True
    assert len(thread.registry) == 0


# --- Concurrency and Cancellation ---


@pytest.mark.asyncio
async def test_concurrent_question_rejected() -> None:
    """Asking while a question is in flight raises ConversationBusyError."""
    thread = make_thread(ScriptedTransport(text("ok")))

    first = thread.ask_question("one")
    assert await anext(first) == THINKING
    with pytest.raises(ConversationBusyError):
        thread.ask_question("two")

    await first.aclose()
    assert thread.state is StreamState.IDLE
    assert (await ask(thread, "three"))[-1] == DONE


@pytest.mark.asyncio
async def test_second_iterator_rejected_on_first_iteration() -> None:
    """Two pending iterators can't both run."""
    thread = make_thread(ScriptedTransport(text("ok")))
    first = thread.ask_question("one")
    second = thread.ask_question("two")

    assert await anext(first) == THINKING
    with pytest.raises(ConversationBusyError):
        await anext(second)

    await first.aclose()


@pytest.mark.asyncio
async def test_cancel_mid_stream_leaves_no_partial_turn() -> None:
    """Cancelling while the stream is stalled stops emission cleanly."""
    stream_closed = asyncio.Event()

    class StallingTransport:
        async def complete(self, messages: Any, **kwargs: Any) -> Any:  # noqa: ARG002
            async def deltas() -> Any:
                try:
                    yield CompletionDelta(content="Once upon")
                    await asyncio.Event().wait()
                    yield CompletionDelta(content=" a time")
                finally:
                    stream_closed.set()

            return deltas()

    thread = make_thread(StallingTransport())
    cancel = asyncio.Event()
    events = []

    async for event in thread.ask_question("Tell a story", cancel_event=cancel):
        events.append(event)
        if isinstance(event, TextDelta):
            asyncio.get_running_loop().call_later(0.01, cancel.set)

    assert events == [
        THINKING,
        STREAMING,
        TextDelta("Once upon"),
        ERROR,
        Failure(FailureKind.CANCELLED, "Question was cancelled."),
    ]
    assert stream_closed.is_set()
    assert thread.history == [{"role": "user", "content": "Tell a story"}]
    assert thread.state is StreamState.IDLE


@pytest.mark.asyncio
async def test_cancel_during_tool_execution() -> None:
    """In-flight capabilities are cancelled and no tool round is committed."""
    tool_cancelled = asyncio.Event()

    async def slow(arguments: str) -> str:  # noqa: ARG001
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            tool_cancelled.set()
            raise
        return "{}"

    transport = ScriptedTransport(calls(ToolCall(id="c", name="slow")), text("never"))
    thread = make_thread(transport)
    thread.register_capability(FunctionCapability("slow", "Slow", {"type": "object"}, slow))
    cancel = asyncio.Event()
    events = []

    async for event in thread.ask_question("go", cancel_event=cancel):
        events.append(event)
        if event == CALLING_TOOL:
            asyncio.get_running_loop().call_later(0.01, cancel.set)

    assert events[-2:] == [ERROR, Failure(FailureKind.CANCELLED, "Question was cancelled.")]
    assert not any(isinstance(e, ToolResult) for e in events)
    assert tool_cancelled.is_set()
    assert [m["role"] for m in thread.history] == ["user"]
    assert len(transport.calls) == 1


@pytest.mark.asyncio
async def test_cancel_before_request() -> None:
    """An already-set cancel event stops the question before the transport is called."""
    transport = ScriptedTransport(text("ok"))
    thread = make_thread(transport)
    cancel = asyncio.Event()
    cancel.set()

    events = await ask(thread, "q", cancel_event=cancel)

    assert events == [THINKING, ERROR, Failure(FailureKind.CANCELLED, "Question was cancelled.")]
    assert transport.calls == []


# --- Citations ---


@pytest.mark.asyncio
async def test_citations_repeated_across_chunks_emitted_once() -> None:
    """A URL cited by several stream chunks yields a single Citation."""
    transport = ScriptedTransport(
        [
            CompletionDelta(content="Paris.", citations=[CitationRef("https://a.example", "A")]),
            CompletionDelta(citations=[CitationRef("https://a.example", "A"), CitationRef("https://b.example")]),
            CompletionDelta(citations=[CitationRef("https://a.example", "A")]),
        ]
    )
    thread = make_thread(transport)

    events = await ask(thread, "Capital of France?")

    assert [e for e in events if isinstance(e, Citation)] == [
        Citation("https://a.example", "A"),
        Citation("https://b.example"),
    ]


# --- Calculator Under Load ---


@pytest.mark.asyncio
async def test_oversized_calculation_does_not_stall_the_question() -> None:
    """An enormous calculation fails quickly instead of freezing the loop."""
    transport = ScriptedTransport(
        calls(ToolCall(id="c", name="calculate", arguments='{"query": "factorial(10**7)"}')),
        text("Too big."),
    )
    thread = make_thread(transport, streaming=False, tool_timeout=0.5)

    start = time.monotonic()
    events = await ask(thread, "What is ten million factorial?")

    assert time.monotonic() - start < 2
    [result] = [e for e in events if isinstance(e, ToolResult)]
    assert json.loads(result.result)["status"] in ("failed", "timeout")
    assert events[-1] == DONE


# --- Logging Context ---


@pytest.mark.asyncio
async def test_log_events_carry_thread_and_question(monkeypatch: pytest.MonkeyPatch) -> None:
    """Question logs are bound to the thread id and a per-thread question number."""
    logger = MagicMock()
    monkeypatch.setattr("toolchat.conversation.runner.log", logger)
    transport = ScriptedTransport(text("one"), text("two"))
    thread = make_thread(transport)

    await ask(thread, "first")
    await ask(thread, "second")

    logger.bind.assert_called_once_with(thread_id=thread.thread_id)
    thread_log = logger.bind.return_value
    assert [c.kwargs for c in thread_log.bind.call_args_list] == [{"question": 1}, {"question": 2}]
    question_log = thread_log.bind.return_value
    assert [c.args[0] for c in question_log.info.call_args_list].count("question_complete") == 2
