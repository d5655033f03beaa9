"""Name-keyed registry of capabilities available to a conversation."""

from __future__ import annotations

from typing import TYPE_CHECKING

from toolchat.observability.logging import get_logger
from toolchat.tools.base import Capability, ToolDefinition

if TYPE_CHECKING:
    from collections.abc import Iterator

log = get_logger(__name__)


class CapabilityRegistry:
    """Maps tool names to capabilities.

    Registration is idempotent per name: registering a second capability
    under an existing name replaces the first. A capability may also be
    registered under an alias, in which case the advertised definition
    carries the alias.

    Example:
        >>> registry = CapabilityRegistry()
        >>> registry.register(CalculateCapability())
        >>> registry.resolve("calculate") is not None
        True
        >>> [d.name for d in registry.advertise()]
        ['calculate']
    """

    def __init__(self) -> None:
        self._capabilities: dict[str, Capability] = {}

    def register(self, capability: Capability, name: str | None = None) -> None:
        """Register a capability, replacing any entry with the same name.

        Args:
            capability: The capability to register.
            name: Optional alias to register under instead of the
                capability's own name.

        Raises:
            TypeError: If the object doesn't implement the Capability protocol.
            ValueError: If the resulting name is empty.
        """
        if not isinstance(capability, Capability):
            raise TypeError(f"{capability!r} doesn't implement the Capability protocol")

        key = name if name is not None else capability.definition.name
        if not key:
            raise ValueError("Capability name cannot be empty")

        if key in self._capabilities:
            log.debug("capability_replaced", name=key)
        self._capabilities[key] = capability

    def unregister(self, target: str | Capability) -> bool:
        """Remove a capability by registered name or by instance.

        Removing by instance drops every name the instance is registered under.

        Returns:
            True if anything was removed.
        """
        if isinstance(target, str):
            return self._capabilities.pop(target, None) is not None

        names = [k for k, v in self._capabilities.items() if v is target]
        for key in names:
            del self._capabilities[key]
        return bool(names)

    def clear(self) -> None:
        """Remove all capabilities."""
        self._capabilities.clear()

    def resolve(self, name: str) -> Capability | None:
        """Return the capability registered under ``name``, if any."""
        return self._capabilities.get(name)

    def advertise(self) -> list[ToolDefinition]:
        """Return the definitions to send to the backend, in registration order."""
        definitions = []
        for key, capability in self._capabilities.items():
            definition = capability.definition
            if definition.name != key:
                definition = ToolDefinition(
                    name=key,
                    description=definition.description,
                    parameters=definition.parameters,
                )
            definitions.append(definition)
        return definitions

    @property
    def names(self) -> list[str]:
        return list(self._capabilities)

    def __contains__(self, name: object) -> bool:
        return name in self._capabilities

    def __len__(self) -> int:
        return len(self._capabilities)

    def __iter__(self) -> Iterator[str]:
        return iter(self._capabilities)
