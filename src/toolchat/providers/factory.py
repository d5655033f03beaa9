"""Factory for building the transport stack a thread talks to.

The stack is always ``RetryingTransport(LoggingTransport(backend))``: rate
limits are retried outside the logging layer so every attempt is logged.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from toolchat.config import ThreadConfig
from toolchat.observability.logging import get_logger
from toolchat.providers.langchain_wrapper import LangChainTransport
from toolchat.providers.logging_wrapper import LoggingTransport
from toolchat.providers.openai_provider import DEFAULT_MODEL, OpenAICompatibleTransport
from toolchat.providers.retry import RetryingTransport, RetryPolicy

if TYPE_CHECKING:
    import httpx
    from langchain_core.language_models import BaseChatModel

    from toolchat.providers.base import Transport

log = get_logger(__name__)


def create_transport(
    config: ThreadConfig | None = None,
    *,
    api_key: str | None = None,
    chat_model: BaseChatModel | None = None,
    client: httpx.AsyncClient | None = None,
) -> RetryingTransport:
    """Create a logged, rate-limit-retrying transport from thread settings.

    Args:
        config: Thread settings; defaults apply if None.
        api_key: Key for the OpenAI-compatible backend; falls back to the
            environment.
        chat_model: LangChain chat model to use instead of the HTTP backend.
            ``base_url``, ``temperature`` and ``request_timeout`` are then the
            model's own business.
        client: Pre-built HTTP client for the OpenAI-compatible backend.

    Returns:
        Configured transport.

    Raises:
        TransportError: If the HTTP backend has no API key.
    """
    config = config or ThreadConfig()
    model = config.default_model or DEFAULT_MODEL

    backend: Transport
    if chat_model is not None:
        backend = LangChainTransport(chat_model, default_model=model)
        kind = "langchain"
    else:
        backend = OpenAICompatibleTransport(
            api_key=api_key,
            default_model=model,
            base_url=config.base_url,
            temperature=config.temperature,
            timeout=config.request_timeout,
            client=client,
        )
        kind = "openai-compatible"

    policy = RetryPolicy(max_retries=config.max_retries, default_delay=config.retry_delay)
    log.debug("transport_created", backend=kind, model=model, max_retries=policy.max_retries)
    return RetryingTransport(LoggingTransport(backend), policy)
