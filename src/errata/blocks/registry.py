"""Registry of per-agent default block factories."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from .types import AgentBlockContext, ContextBlock

__all__ = ["AgentBlockDefinition", "AgentBlockRegistry", "BLOCK_REGISTRY"]

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class AgentBlockDefinition:
    """How one agent's default prompt is built.

    Attributes:
        agent_name: Registered agent this definition belongs to.
        display_name: Short label for block editors.
        description: What the agent's context is for.
        create_default_blocks: Builds fresh default blocks from a block context.
        build_preview_context: ``(services, story_id)`` -> a representative
            block context, used to preview the compiled prompt without running.
        available_tools: Names of tools the agent may be given.
    """

    agent_name: str
    display_name: str
    description: str
    create_default_blocks: Callable[[AgentBlockContext], list[ContextBlock]]
    build_preview_context: Callable[[Any, str], AgentBlockContext]
    available_tools: tuple[str, ...] = field(default_factory=tuple)


class AgentBlockRegistry:
    def __init__(self) -> None:
        self._definitions: dict[str, AgentBlockDefinition] = {}

    def register(self, definition: AgentBlockDefinition) -> None:
        self._definitions[definition.agent_name] = definition
        LOGGER.debug("Registered block definition: %s", definition.agent_name)

    def get(self, agent_name: str) -> AgentBlockDefinition | None:
        return self._definitions.get(agent_name)

    def list(self) -> list[AgentBlockDefinition]:
        return list(self._definitions.values())

    def clear(self) -> None:
        self._definitions.clear()

    def __contains__(self, agent_name: object) -> bool:
        return agent_name in self._definitions


BLOCK_REGISTRY = AgentBlockRegistry()
