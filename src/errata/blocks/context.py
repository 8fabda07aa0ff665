"""Compile an agent's prompt from its default blocks and stored config."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Mapping

from ..errors import BlockDefinitionNotFoundError
from ..storage.stories import StoryStore
from ..tools.types import Tool, ToolSet, filter_tools
from .apply import apply_block_config
from .compiler import compile_blocks
from .registry import BLOCK_REGISTRY, AgentBlockRegistry
from .script import build_script_namespace, create_script_helpers
from .storage import BlockConfigStore
from .types import AgentBlockContext, ContextBlock, ContextMessage

__all__ = ["CompiledAgentContext", "compile_agent_context"]

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class CompiledAgentContext:
    messages: list[ContextMessage] = field(default_factory=list)
    blocks: list[ContextBlock] = field(default_factory=list)
    tools: ToolSet = field(default_factory=dict)


def compile_agent_context(
    store: StoryStore,
    story_id: str,
    agent_name: str,
    block_context: AgentBlockContext,
    tools: Mapping[str, Tool],
    *,
    block_store: BlockConfigStore | None = None,
    registry: AgentBlockRegistry | None = None,
) -> CompiledAgentContext:
    """Build the messages, final blocks and filtered tools for one agent run.

    Args:
        store: Storage backing script helpers and block config lookup.
        story_id: Story being worked on.
        agent_name: Agent whose block definition and config are used.
        block_context: Values the default block builders read.
        tools: Full tool set before ``disabled_tools`` filtering.
        block_store: Config store; defaults to one over ``store``.
        registry: Block definitions; defaults to the process registry.

    Raises:
        BlockDefinitionNotFoundError: If ``agent_name`` has no block definition.
    """
    definitions = registry if registry is not None else BLOCK_REGISTRY
    definition = definitions.get(agent_name)
    if definition is None:
        raise BlockDefinitionNotFoundError(agent_name)

    blocks = definition.create_default_blocks(block_context)
    config = (block_store or BlockConfigStore(store)).get(story_id, agent_name)
    namespace = build_script_namespace(block_context, create_script_helpers(store, story_id))
    blocks = apply_block_config(blocks, config, namespace)
    messages = compile_blocks(blocks)
    filtered = filter_tools(tools, config.disabled_tools)

    LOGGER.debug(
        "Compiled %s: %d blocks -> %d messages, %d/%d tools",
        agent_name,
        len(blocks),
        len(messages),
        len(filtered),
        len(tools),
    )
    return CompiledAgentContext(messages=messages, blocks=blocks, tools=filtered)
