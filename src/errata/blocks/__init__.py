"""Context blocks: defaults, user overrides, scripts and compilation."""

from .apply import apply_block_config, apply_content_mode
from .compiler import compile_blocks, sort_blocks
from .context import CompiledAgentContext, compile_agent_context
from .instructions import INSTRUCTION_REGISTRY, InstructionRegistry
from .registry import BLOCK_REGISTRY, AgentBlockDefinition, AgentBlockRegistry
from .storage import BlockConfigStore
from .types import (
    AgentBlockConfig,
    AgentBlockContext,
    BlockOverride,
    ContextBlock,
    ContextMessage,
    CustomBlockDefinition,
)

__all__ = [
    "AgentBlockConfig",
    "AgentBlockContext",
    "AgentBlockDefinition",
    "AgentBlockRegistry",
    "BLOCK_REGISTRY",
    "BlockConfigStore",
    "BlockOverride",
    "CompiledAgentContext",
    "ContextBlock",
    "ContextMessage",
    "CustomBlockDefinition",
    "INSTRUCTION_REGISTRY",
    "InstructionRegistry",
    "apply_block_config",
    "apply_content_mode",
    "compile_agent_context",
    "compile_blocks",
    "sort_blocks",
]
