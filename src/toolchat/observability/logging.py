"""Structured logging configuration for toolchat.

Console output goes through Rich and is gated by a verbosity level.
An optional JSONL file receives every event regardless of verbosity.
Conversation threads bind ``thread_id`` and ``question`` onto their events,
so the JSONL file can be filtered per conversation.
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from pathlib import Path  # noqa: TC003 - used at runtime for path operations
from typing import TYPE_CHECKING

import structlog
from rich.console import Console
from rich.logging import RichHandler

if TYPE_CHECKING:
    from structlog.typing import Processor

_configured = False
_file_handler: logging.FileHandler | None = None

# Libraries whose DEBUG output buries conversation events
NOISY_LOGGERS = ("httpx", "httpcore", "langchain_core", "asyncio")


class JSONLFileHandler(logging.FileHandler):
    """File handler that writes one JSON object per record."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            entry = {
                "timestamp": datetime.now(UTC).isoformat(),
                "level": record.levelname,
                "logger": record.name,
            }

            # structlog hands the event dict over through record.msg
            if isinstance(record.msg, dict):
                event_dict = record.msg.copy()
                event_dict.pop("level", None)
                event_dict.pop("timestamp", None)
                entry["message"] = event_dict.pop("event", str(record.msg))
                entry.update(event_dict)
            else:
                entry["message"] = record.getMessage()

            if self.stream:
                self.stream.write(json.dumps(entry, default=str) + "\n")
                self.stream.flush()
        except Exception:
            self.handleError(record)


def configure_logging(verbosity: int = 0, log_file: Path | None = None) -> None:
    """Configure console and optional file logging.

    Args:
        verbosity: 0=WARNING (default), 1=INFO, 2+=DEBUG for the console.
        log_file: If given, every event is also appended to this JSONL file.
    """
    global _configured, _file_handler

    if _file_handler is not None:
        _file_handler.close()
        _file_handler = None

    levels = {0: logging.WARNING, 1: logging.INFO}
    console_level = levels.get(verbosity, logging.DEBUG)

    console_handler = RichHandler(
        console=Console(stderr=True),
        rich_tracebacks=True,
        show_time=verbosity >= 1,
        show_path=verbosity >= 2,
        markup=False,
        level=console_level,
    )
    handlers: list[logging.Handler] = [console_handler]

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        _file_handler = JSONLFileHandler(str(log_file), mode="a")
        _file_handler.setLevel(logging.DEBUG)
        handlers.append(_file_handler)

    root_level = logging.DEBUG if (verbosity > 0 or log_file is not None) else logging.WARNING
    logging.basicConfig(level=root_level, format="%(message)s", handlers=handlers, force=True)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.make_filtering_bound_logger(root_level),
        cache_logger_on_first_use=True,
    )

    _configured = True


def get_logger(name: str | None = None) -> structlog.typing.FilteringBoundLogger:
    """Return a structlog logger, configuring defaults on first use."""
    if not _configured:
        configure_logging()

    logger: structlog.typing.FilteringBoundLogger = structlog.get_logger(name)
    return logger


def close_file_logging() -> None:
    """Close the JSONL file handler if one is open."""
    global _file_handler
    if _file_handler:
        _file_handler.close()
        _file_handler = None
