"""Logging wrapper for completion transports."""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

from toolchat.observability.logging import get_logger
from toolchat.providers.base import CompletionResponse, TransportError

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from structlog.typing import FilteringBoundLogger

    from toolchat.providers.base import CompletionDelta, Message, Transport
    from toolchat.tools import ToolDefinition


class LoggingTransport:
    """Wrapper that logs every completion request.

    Delegates to an underlying transport and records model, message count,
    tool count, duration and outcome. Streams are logged when they finish.
    """

    def __init__(self, transport: Transport, logger: FilteringBoundLogger | None = None) -> None:
        """Initialize logging wrapper.

        Args:
            transport: Underlying transport to wrap.
            logger: structlog logger to use; defaults to this module's logger.
        """
        self._transport = transport
        self._log = logger or get_logger(__name__)

    async def complete(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
        model: str | None = None,
        stream: bool = False,
    ) -> CompletionResponse | AsyncIterator[CompletionDelta]:
        context = {
            "model": model,
            "messages": len(messages),
            "tools": len(tools or []),
            "stream": stream,
        }
        self._log.debug("transport_request", **context)
        start_time = time.perf_counter()

        try:
            result = await self._transport.complete(messages, tools=tools, model=model, stream=stream)
        except TransportError as e:
            self._log_failure(e, start_time, context)
            raise

        if isinstance(result, CompletionResponse):
            self._log.info(
                "transport_response",
                **context,
                duration=round(time.perf_counter() - start_time, 3),
                finish_reason=result.finish_reason,
                tool_calls=len(result.tool_calls),
                tokens_used=result.tokens_used,
            )
            return result
        return self._logged_stream(result, start_time, context)

    async def _logged_stream(
        self,
        deltas: AsyncIterator[CompletionDelta],
        start_time: float,
        context: dict[str, object],
    ) -> AsyncIterator[CompletionDelta]:
        chunks = 0
        try:
            async for delta in deltas:
                chunks += 1
                yield delta
        except TransportError as e:
            self._log_failure(e, start_time, context)
            raise
        self._log.info(
            "transport_stream_complete",
            **context,
            duration=round(time.perf_counter() - start_time, 3),
            chunks=chunks,
        )

    def _log_failure(self, error: TransportError, start_time: float, context: dict[str, object]) -> None:
        self._log.warning(
            "transport_error",
            **context,
            duration=round(time.perf_counter() - start_time, 3),
            status_code=error.status_code,
            error=str(error),
        )

    async def close(self) -> None:
        """Close underlying transport."""
        if hasattr(self._transport, "close"):
            await self._transport.close()

    async def __aenter__(self) -> LoggingTransport:
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.close()
