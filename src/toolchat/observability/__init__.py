"""Observability helpers: structured logging for conversations and transports."""

from toolchat.observability.logging import (
    close_file_logging,
    configure_logging,
    get_logger,
)

__all__ = [
    "close_file_logging",
    "configure_logging",
    "get_logger",
]
