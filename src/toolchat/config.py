"""Thread configuration loading."""

from __future__ import annotations

import os
from dataclasses import dataclass, fields
from pathlib import Path  # noqa: TC003 - used at runtime
from typing import Any

from dotenv import find_dotenv, load_dotenv
from ruamel.yaml import YAML

ENV_PREFIX = "TOOLCHAT_"
DEFAULT_MAX_TOOL_ROUNDS = 10
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY = 1.0
DEFAULT_REQUEST_TIMEOUT = 300.0

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


class ConfigError(Exception):
    """Raised when thread configuration is invalid or cannot be loaded."""

    def __init__(self, reason: str, path: Path | None = None) -> None:
        self.path = path
        self.reason = reason
        where = f" at {path}" if path is not None else ""
        super().__init__(f"Invalid configuration{where}: {reason}")


@dataclass
class ThreadConfig:
    """Settings for a conversation thread and the transports behind it.

    Attributes:
        default_model: Model used when a question doesn't name one. None
            leaves the choice to the transport.
        temperature: Sampling temperature, or None for the backend default.
        streaming: Request delta streams instead of single-shot responses.
        max_tool_rounds: Tool-calling rounds allowed per question.
        tool_timeout: Seconds a single capability may run, or None for no limit.
        max_retries: Retries after a rate-limited request.
        retry_delay: Seconds to wait when the backend sends no Retry-After.
        request_timeout: HTTP request timeout in seconds.
        base_url: API root for the OpenAI-compatible transport.
    """

    default_model: str | None = None
    temperature: float | None = None
    streaming: bool = True
    max_tool_rounds: int = DEFAULT_MAX_TOOL_ROUNDS
    tool_timeout: float | None = None
    max_retries: int = DEFAULT_MAX_RETRIES
    retry_delay: float = DEFAULT_RETRY_DELAY
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    base_url: str | None = None

    def __post_init__(self) -> None:
        if self.max_tool_rounds < 0:
            raise ConfigError(f"max_tool_rounds must be >= 0, got {self.max_tool_rounds}")
        if self.max_retries < 0:
            raise ConfigError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.retry_delay < 0:
            raise ConfigError(f"retry_delay must be >= 0, got {self.retry_delay}")
        if self.tool_timeout is not None and self.tool_timeout <= 0:
            raise ConfigError(f"tool_timeout must be positive, got {self.tool_timeout}")
        if self.request_timeout <= 0:
            raise ConfigError(f"request_timeout must be positive, got {self.request_timeout}")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ThreadConfig:
        """Create config from a mapping, converting values to field types.

        Raises:
            ConfigError: On unknown keys or values of the wrong type.
        """
        known = {f.name: f for f in fields(cls)}
        unknown = sorted(set(data) - set(known))
        if unknown:
            raise ConfigError(f"Unknown keys: {', '.join(unknown)}")

        values = {}
        for key, raw in data.items():
            values[key] = _coerce(key, str(known[key].type), raw)
        return cls(**values)


def _coerce(key: str, annotation: str, raw: Any) -> Any:
    optional = "None" in annotation
    if raw is None or (optional and isinstance(raw, str) and raw.strip().lower() in {"", "none"}):
        if optional:
            return None
        raise ConfigError(f"{key} must not be empty")

    try:
        if annotation.startswith("bool"):
            if isinstance(raw, bool):
                return raw
            text = str(raw).strip().lower()
            if text in _TRUE:
                return True
            if text in _FALSE:
                return False
            raise ValueError(f"not a boolean: {raw!r}")
        if annotation.startswith("int"):
            if isinstance(raw, bool):
                raise ValueError(f"not an integer: {raw!r}")
            return int(raw)
        if annotation.startswith("float"):
            if isinstance(raw, bool):
                raise ValueError(f"not a number: {raw!r}")
            return float(raw)
        return str(raw)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{key}: {e}") from e


def env_overrides(environ: dict[str, str] | None = None) -> dict[str, str]:
    """Collect ``TOOLCHAT_<FIELD>`` variables, keyed by field name."""
    environ = dict(os.environ) if environ is None else environ
    names = {f.name for f in fields(ThreadConfig)}
    overrides = {}
    for var, value in environ.items():
        if not var.startswith(ENV_PREFIX):
            continue
        key = var[len(ENV_PREFIX) :].lower()
        if key in names:
            overrides[key] = value
    return overrides


def load_config(path: Path | None = None, *, use_dotenv: bool = True) -> ThreadConfig:
    """Load thread configuration.

    Values come from the YAML file (if given and present), then from
    ``TOOLCHAT_*`` environment variables, which win. A ``.env`` file in the
    working directory is loaded first unless ``use_dotenv`` is False.

    Args:
        path: YAML file to read. A missing file means defaults.
        use_dotenv: Whether to load ``.env`` into the environment.

    Returns:
        ThreadConfig instance.

    Raises:
        ConfigError: If the file can't be parsed or holds invalid values.
    """
    if use_dotenv:
        load_dotenv(find_dotenv(usecwd=True))

    data: dict[str, Any] = {}
    if path is not None and path.exists():
        yaml = YAML(typ="safe")
        try:
            with path.open("r", encoding="utf-8") as f:
                loaded = yaml.load(f)
        except Exception as e:
            raise ConfigError(str(e), path) from e
        if loaded is not None:
            if not isinstance(loaded, dict):
                raise ConfigError("Top level must be a mapping", path)
            data.update(loaded)

    data.update(env_overrides())

    try:
        return ThreadConfig.from_dict(data)
    except ConfigError as e:
        if e.path is None and path is not None:
            raise ConfigError(e.reason, path) from e
        raise
