"""OpenAI-compatible chat completions transport (xAI, OpenAI, local gateways)."""

from __future__ import annotations

import json
import os
from typing import TYPE_CHECKING, Any

import httpx

from toolchat.observability.logging import get_logger
from toolchat.providers.base import (
    CitationRef,
    CompletionDelta,
    CompletionResponse,
    Message,
    ToolCallDelta,
    TransportConnectionError,
    TransportError,
    TransportRateLimitError,
    TransportResponseError,
)
from toolchat.tools.base import ToolCall

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from toolchat.tools.base import ToolDefinition

log = get_logger(__name__)

PROVIDER = "openai-compatible"
DEFAULT_BASE_URL = "https://api.x.ai/v1"
DEFAULT_MODEL = "grok-4-fast"
API_KEY_VARS = ("XAI_API_KEY", "OPENAI_API_KEY")
SSE_PREFIX = "data:"
SSE_DONE = "[DONE]"


class OpenAICompatibleTransport:
    """Transport for any backend speaking the ``/chat/completions`` protocol.

    Handles both single-shot JSON responses and Server-Sent Event streams,
    including streamed tool-call fragments and citations.

    Attributes:
        default_model: Model used when a request doesn't name one.
    """

    def __init__(
        self,
        api_key: str | None = None,
        default_model: str = DEFAULT_MODEL,
        base_url: str | None = None,
        temperature: float | None = None,
        timeout: float = 300.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the transport.

        Args:
            api_key: Bearer token. Defaults to XAI_API_KEY, then OPENAI_API_KEY.
            default_model: Model for requests that don't specify one.
            base_url: API root. Defaults to the xAI endpoint.
            temperature: Sampling temperature, omitted from requests if None.
            timeout: Request timeout in seconds.
            client: Pre-built HTTP client (tests inject one with a mock transport).

        Raises:
            TransportError: If no API key is available.
        """
        self._api_key = api_key or next((os.getenv(v) for v in API_KEY_VARS if os.getenv(v)), None)
        if not self._api_key:
            raise TransportError(
                PROVIDER,
                "API key required. Set XAI_API_KEY or OPENAI_API_KEY.",
            )

        self._default_model = default_model
        self._base_url = (base_url or DEFAULT_BASE_URL).rstrip("/")
        self._temperature = temperature
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

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
        """Send a chat completion request.

        Raises:
            TransportConnectionError: If the connection fails or times out.
            TransportRateLimitError: If the backend answers 429.
            TransportResponseError: If the payload can't be parsed.
            TransportError: For other non-success statuses.
        """
        payload = self._build_payload(messages, tools, model or self._default_model, stream)
        if stream:
            return self._stream(payload)
        return await self._complete_once(payload)

    def _build_payload(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None,
        model: str,
        stream: bool,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": model,
            "messages": [to_wire_message(m) for m in messages],
            "stream": stream,
        }
        if tools:
            payload["tools"] = [t.to_openai() for t in tools]
            payload["tool_choice"] = "auto"
        if self._temperature is not None:
            payload["temperature"] = self._temperature
        return payload

    @property
    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }

    async def _complete_once(self, payload: dict[str, Any]) -> CompletionResponse:
        url = f"{self._base_url}/chat/completions"
        try:
            response = await self._client.post(url, json=payload, headers=self._headers)
        except httpx.TimeoutException as e:
            raise TransportConnectionError(PROVIDER, f"Request timed out: {e}") from e
        except httpx.HTTPError as e:
            raise TransportConnectionError(PROVIDER, f"Failed to connect: {e}") from e

        _raise_for_status(response.status_code, response.text, response.headers)

        try:
            data = response.json()
        except ValueError as e:
            raise TransportResponseError(
                PROVIDER, f"Invalid JSON response: {e}", response.status_code, response.text
            ) from e

        return parse_completion(data, payload["model"], response.status_code)

    async def _stream(self, payload: dict[str, Any]) -> AsyncIterator[CompletionDelta]:
        url = f"{self._base_url}/chat/completions"
        try:
            async with self._client.stream(
                "POST", url, json=payload, headers=self._headers
            ) as response:
                if response.status_code != 200:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    _raise_for_status(response.status_code, body, response.headers)

                async for line in response.aiter_lines():
                    line = line.strip()
                    if not line.startswith(SSE_PREFIX):
                        continue
                    data = line[len(SSE_PREFIX) :].strip()
                    if data == SSE_DONE:
                        break
                    try:
                        chunk = json.loads(data)
                    except json.JSONDecodeError as e:
                        raise TransportResponseError(
                            PROVIDER, f"Failed to parse chunk: {data}", response.status_code, data
                        ) from e
                    delta = parse_chunk(chunk)
                    if delta is not None:
                        yield delta
        except httpx.TimeoutException as e:
            raise TransportConnectionError(PROVIDER, f"Stream timed out: {e}") from e
        except httpx.HTTPError as e:
            raise TransportConnectionError(PROVIDER, f"Stream failed: {e}") from e

    async def close(self) -> None:
        """Close the HTTP client if this transport created it."""
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> OpenAICompatibleTransport:
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.close()


def _raise_for_status(status: int, body: str, headers: httpx.Headers) -> None:
    if status == 200:
        return
    if status == 429:
        raise TransportRateLimitError(
            PROVIDER,
            "Rate limit exceeded.",
            status_code=status,
            body=body,
            headers=dict(headers),
        )
    if status == 401:
        raise TransportError(PROVIDER, "Invalid API key.", status, body, dict(headers))
    raise TransportError(PROVIDER, f"API error (status {status}): {body}", status, body, dict(headers))


def to_wire_message(message: Message) -> dict[str, Any]:
    """Convert a conversation turn to the chat completions message format."""
    wire: dict[str, Any] = {"role": message["role"], "content": message["content"]}
    if message["role"] == "tool":
        wire["tool_call_id"] = message.get("tool_call_id", "")
    tool_calls = message.get("tool_calls")
    if tool_calls:
        wire["tool_calls"] = [
            {
                "id": tc.id,
                "type": "function",
                "function": {"name": tc.name, "arguments": tc.arguments},
            }
            for tc in tool_calls
        ]
        if not message["content"]:
            wire["content"] = None
    return wire


def _arguments_text(arguments: Any) -> str:
    if arguments is None:
        return "{}"
    if isinstance(arguments, str):
        return arguments
    return json.dumps(arguments)


def parse_citations(data: dict[str, Any], message: dict[str, Any] | None = None) -> list[CitationRef]:
    """Collect citations from a response body and its message annotations.

    Top-level ``citations`` may be bare URLs or objects; annotations follow
    the ``url_citation`` shape, flat or nested. Duplicate URLs are dropped.
    """
    found: list[CitationRef] = []
    for item in data.get("citations") or []:
        if isinstance(item, str):
            found.append(CitationRef(url=item))
        elif isinstance(item, dict) and item.get("url"):
            found.append(CitationRef(url=item["url"], title=item.get("title")))

    for annotation in (message or {}).get("annotations") or []:
        if not isinstance(annotation, dict):
            continue
        source = annotation.get("url_citation") or annotation
        if source.get("url"):
            found.append(CitationRef(url=source["url"], title=source.get("title")))

    seen: set[str] = set()
    unique = []
    for citation in found:
        if citation.url not in seen:
            seen.add(citation.url)
            unique.append(citation)
    return unique


def parse_completion(data: dict[str, Any], model: str, status_code: int = 200) -> CompletionResponse:
    """Parse a non-streaming chat completion body.

    Raises:
        TransportResponseError: If the body has no choices.
    """
    choices = data.get("choices") or []
    if not choices:
        raise TransportResponseError(PROVIDER, "Empty response from API", status_code, json.dumps(data))

    choice = choices[0]
    message = choice.get("message") or {}

    tool_calls = []
    for i, tc in enumerate(message.get("tool_calls") or []):
        function = tc.get("function") or {}
        tool_calls.append(
            ToolCall(
                id=str(tc.get("id") or f"call_{i}"),
                name=function.get("name") or "",
                arguments=_arguments_text(function.get("arguments")),
            )
        )

    usage = data.get("usage") or {}
    return CompletionResponse(
        content=message.get("content") or "",
        model=data.get("model") or model,
        tool_calls=tool_calls,
        citations=parse_citations(data, message),
        finish_reason=choice.get("finish_reason") or "unknown",
        status_code=status_code,
        tokens_used=usage.get("total_tokens", 0),
    )


def parse_chunk(chunk: dict[str, Any]) -> CompletionDelta | None:
    """Parse one SSE chunk; returns None for chunks carrying nothing useful."""
    citations = parse_citations(chunk)
    choices = chunk.get("choices") or []
    if not choices:
        return CompletionDelta(citations=citations) if citations else None

    choice = choices[0]
    delta = choice.get("delta") or {}
    tool_deltas = []
    for i, tc in enumerate(delta.get("tool_calls") or []):
        function = tc.get("function") or {}
        arguments = function.get("arguments")
        tool_deltas.append(
            ToolCallDelta(
                index=tc.get("index", i),
                id=tc.get("id"),
                name=function.get("name"),
                arguments=arguments if arguments is None else _arguments_text(arguments),
            )
        )

    return CompletionDelta(
        content=delta.get("content") or None,
        tool_calls=tool_deltas,
        citations=citations,
        finish_reason=choice.get("finish_reason"),
    )
