"""Base types and protocol for capabilities (tools the model may call).

This module defines the core abstractions for tool calling:
- ToolDefinition: JSON Schema-based tool specification advertised to the model
- ToolCall: A tool invocation requested by the model
- Capability: Protocol for executable tools
- FunctionCapability: Capability built from a plain callable
"""

from __future__ import annotations

import inspect
import json
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, TypeVar, runtime_checkable

from pydantic import BaseModel, ValidationError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

ArgsT = TypeVar("ArgsT", bound=BaseModel)


@dataclass
class ToolDefinition:
    """Definition of a tool advertised to the model.

    Uses JSON Schema for parameters, compatible with OpenAI-style
    function calling.

    Attributes:
        name: Unique tool identifier (e.g., "calculate").
        description: Concise description so the model knows when to use it.
        parameters: JSON Schema object describing accepted arguments.

    Example:
        >>> ToolDefinition(
        ...     name="calculate",
        ...     description="Evaluate a math expression.",
        ...     parameters={
        ...         "type": "object",
        ...         "properties": {"query": {"type": "string"}},
        ...         "required": ["query"],
        ...     },
        ... )
    """

    name: str
    description: str
    parameters: dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})

    def to_openai(self) -> dict[str, Any]:
        """Return the OpenAI ``tools`` entry for this definition."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


@dataclass
class ToolCall:
    """A tool invocation requested by the model.

    Attributes:
        id: Identifier from the backend, used to correlate the tool result.
        name: Name of the tool being called.
        arguments: Raw JSON text of the arguments, exactly as received.
    """

    id: str
    name: str
    arguments: str = "{}"


@runtime_checkable
class Capability(Protocol):
    """Protocol for executable tools.

    ``execute`` receives the raw JSON arguments and returns JSON text. It must
    not raise for bad input: invalid or missing arguments are reported as an
    ``{"error": ...}`` payload so the model can correct itself.

    Example:
        >>> class EchoCapability:
        ...     @property
        ...     def definition(self) -> ToolDefinition:
        ...         return ToolDefinition(name="echo", description="Echo input.")
        ...
        ...     async def execute(self, arguments: str) -> str:
        ...         return arguments
    """

    @property
    def definition(self) -> ToolDefinition:
        """Return the tool definition advertised to the model."""
        ...

    async def execute(self, arguments: str) -> str:
        """Execute the tool.

        Args:
            arguments: JSON text of the arguments (may be empty or partial).

        Returns:
            JSON text sent back to the model.
        """
        ...


class CapabilityError(Exception):
    """Raised by capability helpers when arguments are unusable.

    Capabilities convert this into an ``error`` payload before returning.
    """


def load_arguments(raw: str | None, model: type[ArgsT]) -> ArgsT:
    """Parse raw JSON arguments into a pydantic model.

    Empty input is treated as ``{}`` so that required-field errors surface
    as validation problems rather than JSON errors.

    Raises:
        CapabilityError: If the JSON is malformed or fails validation.
    """
    text = (raw or "").strip() or "{}"
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise CapabilityError(f"Arguments are not valid JSON: {e.msg}") from e
    if not isinstance(data, dict):
        raise CapabilityError("Arguments must be a JSON object")
    try:
        return model.model_validate(data)
    except ValidationError as e:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
        raise CapabilityError(f"Invalid arguments: {fields}") from e


def error_payload(message: str, **extra: Any) -> str:
    """Serialize a structured error result."""
    return json.dumps({"error": message, **extra})


class FunctionCapability:
    """Capability backed by a callable taking and returning JSON text.

    The callable may be synchronous or a coroutine function.

    Example:
        >>> def weather(arguments: str) -> str:
        ...     return json.dumps({"forecast": "sunny"})
        >>> tool = FunctionCapability(
        ...     "get_weather", "Current weather for a city.", {"type": "object"}, weather
        ... )
    """

    def __init__(
        self,
        name: str,
        description: str,
        parameters: dict[str, Any],
        fn: Callable[[str], str | Awaitable[str]],
    ) -> None:
        if not name:
            raise ValueError("Capability name cannot be empty")
        self._definition = ToolDefinition(name=name, description=description, parameters=parameters)
        self._fn = fn

    @property
    def definition(self) -> ToolDefinition:
        return self._definition

    async def execute(self, arguments: str) -> str:
        result = self._fn(arguments)
        if inspect.isawaitable(result):
            result = await result
        return str(result)
