"""Process-wide agent registry."""

from __future__ import annotations

import logging
import threading

from ..errors import DuplicateAgentError
from .types import AgentDefinition

__all__ = ["AgentRegistry", "AGENT_REGISTRY"]

LOGGER = logging.getLogger(__name__)


class AgentRegistry:
    """Name -> :class:`AgentDefinition` map, written at boot and read after."""

    def __init__(self) -> None:
        self._definitions: dict[str, AgentDefinition] = {}
        self._lock = threading.Lock()

    def register(self, definition: AgentDefinition) -> None:
        """Add ``definition``.

        Raises:
            DuplicateAgentError: If the name is already taken.
        """
        with self._lock:
            if definition.name in self._definitions:
                raise DuplicateAgentError(definition.name)
            self._definitions[definition.name] = definition
        LOGGER.debug("Registered agent: %s", definition.name)

    def get(self, name: str) -> AgentDefinition | None:
        return self._definitions.get(name)

    def list(self) -> list[AgentDefinition]:
        return sorted(self._definitions.values(), key=lambda item: item.name)

    def unregister(self, name: str) -> bool:
        with self._lock:
            return self._definitions.pop(name, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._definitions.clear()

    def __contains__(self, name: object) -> bool:
        return name in self._definitions

    def __len__(self) -> int:
        return len(self._definitions)


AGENT_REGISTRY = AgentRegistry()
