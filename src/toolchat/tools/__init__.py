"""Capabilities the model can call during a conversation.

This package provides the capability protocol, the registry that advertises
capabilities to the backend, and a few reference implementations.
"""

from toolchat.tools.base import (
    Capability,
    CapabilityError,
    FunctionCapability,
    ToolCall,
    ToolDefinition,
    error_payload,
    load_arguments,
)
from toolchat.tools.calculator import CalculateCapability
from toolchat.tools.polling import JobBackend, JobStatus, PollingCapability, poll_job
from toolchat.tools.registry import CapabilityRegistry

__all__ = [
    "CalculateCapability",
    "Capability",
    "CapabilityError",
    "CapabilityRegistry",
    "FunctionCapability",
    "JobBackend",
    "JobStatus",
    "PollingCapability",
    "ToolCall",
    "ToolDefinition",
    "error_payload",
    "load_arguments",
    "poll_job",
]
