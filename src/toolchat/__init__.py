"""toolchat: multi-turn LLM conversations with concurrent tool calling."""

from toolchat.config import ConfigError, ThreadConfig, load_config
from toolchat.conversation import (
    ConversationBusyError,
    ConversationError,
    ConversationHistory,
    ConversationThread,
)
from toolchat.events import (
    Citation,
    Event,
    Failure,
    FailureKind,
    ServiceNotice,
    StateChange,
    StreamState,
    TextDelta,
    ToolResult,
    collect_text,
)

__version__ = "0.1.0"

__all__ = [
    "Citation",
    "ConfigError",
    "ConversationBusyError",
    "ConversationError",
    "ConversationHistory",
    "ConversationThread",
    "Event",
    "Failure",
    "FailureKind",
    "ServiceNotice",
    "StateChange",
    "StreamState",
    "TextDelta",
    "ThreadConfig",
    "ToolResult",
    "__version__",
    "collect_text",
    "load_config",
]
