"""Conversation management for tool-calling chat threads.

This package provides the ConversationThread orchestrator and the
append-only ConversationHistory it owns.
"""

from toolchat.conversation.runner import (
    ConversationBusyError,
    ConversationError,
    ConversationThread,
)
from toolchat.conversation.state import ConversationHistory

__all__ = [
    "ConversationBusyError",
    "ConversationError",
    "ConversationHistory",
    "ConversationThread",
]
