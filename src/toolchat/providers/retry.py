"""Rate-limit retry decorator for transports."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from toolchat.observability.logging import get_logger
from toolchat.providers.base import (
    CompletionDelta,
    CompletionResponse,
    TransportRateLimitError,
    TransportResponseError,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable

    from toolchat.providers.base import Message, Transport
    from toolchat.tools import ToolDefinition

log = get_logger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """How many times to retry a rate-limited request, and how long to wait.

    Attributes:
        max_retries: Retries after the first attempt.
        default_delay: Seconds to wait when the backend sends no Retry-After.
    """

    max_retries: int = 3
    default_delay: float = 1.0

    def delay_for(self, error: TransportRateLimitError) -> float:
        if error.retry_after is not None:
            return error.retry_after
        return self.default_delay


@dataclass
class RetryState:
    """Backoff bookkeeping for one request.

    Created fresh for every ``complete`` call so concurrent requests never
    share counters.
    """

    policy: RetryPolicy
    retries: int = 0
    notices: list[str] = field(default_factory=list)

    @property
    def exhausted(self) -> bool:
        return self.retries >= self.policy.max_retries

    def record_retry(self) -> str:
        self.retries += 1
        notice = f"Rate limit hit, retrying ({self.retries}/{self.policy.max_retries})..."
        self.notices.append(notice)
        return notice


class RetryingTransport:
    """Wraps a transport and retries requests the backend rate-limited.

    Each retry produces a service notice: single-shot responses carry them in
    ``CompletionResponse.notices``, streams yield them as notice deltas. A
    stream is only retried while it hasn't produced its first delta; later
    failures propagate unchanged.

    Attributes:
        last_state: Retry state of the most recent request.
    """

    def __init__(
        self,
        transport: Transport,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._transport = transport
        self._policy = policy or RetryPolicy()
        self._sleep = sleep
        self.last_state: RetryState | None = None

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    async def complete(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
        model: str | None = None,
        stream: bool = False,
    ) -> CompletionResponse | AsyncIterator[CompletionDelta]:
        state = RetryState(self._policy)
        self.last_state = state
        if stream:
            return self._stream(state, messages, tools, model)

        while True:
            try:
                response = await self._transport.complete(messages, tools=tools, model=model)
            except TransportRateLimitError as e:
                _, delay = self._plan_retry(state, e)
                await self._sleep(delay)
                continue
            if not isinstance(response, CompletionResponse):
                raise TransportResponseError("retry", "Expected a single response, got a stream")
            if state.notices:
                response.notices = [*state.notices, *response.notices]
            return response

    async def _stream(
        self,
        state: RetryState,
        messages: list[Message],
        tools: list[ToolDefinition] | None,
        model: str | None,
    ) -> AsyncIterator[CompletionDelta]:
        while True:
            try:
                deltas = await self._transport.complete(messages, tools=tools, model=model, stream=True)
                if isinstance(deltas, CompletionResponse):
                    raise TransportResponseError("retry", "Expected a delta stream, got a single response")
                iterator = aiter(deltas)
                first = await anext(iterator)
            except StopAsyncIteration:
                return
            except TransportRateLimitError as e:
                notice, delay = self._plan_retry(state, e)
                yield CompletionDelta(notice=notice)
                await self._sleep(delay)
                continue
            break

        yield first
        async for delta in iterator:
            yield delta

    def _plan_retry(self, state: RetryState, error: TransportRateLimitError) -> tuple[str, float]:
        if state.exhausted:
            log.warning("rate_limit_retries_exhausted", retries=state.retries)
            raise error
        delay = self._policy.delay_for(error)
        notice = state.record_retry()
        log.info("rate_limited_retry", attempt=state.retries, delay=delay, notice=notice)
        return notice, delay

    async def close(self) -> None:
        if hasattr(self._transport, "close"):
            await self._transport.close()

    async def __aenter__(self) -> RetryingTransport:
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.close()
