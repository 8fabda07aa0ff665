"""Per-story, per-agent block configuration persistence.

Configs live under the story's branch-scoped content root at
``agent-blocks/<agent name>.json``. Missing or unreadable files behave as
the empty config, and writes are whole-document (last writer wins).
"""

from __future__ import annotations

import logging
from dataclasses import replace
from pathlib import Path
from typing import Any, Mapping, Sequence

from ..storage.stories import StoryStore
from ..utils.file_io import read_json, write_json
from .types import AgentBlockConfig, BlockOverride, CustomBlockDefinition

__all__ = ["BlockConfigStore"]

LOGGER = logging.getLogger(__name__)


class BlockConfigStore:
    def __init__(self, store: StoryStore) -> None:
        self._store = store

    def path_for(self, story_id: str, agent_name: str) -> Path:
        return self._store.content_root(story_id) / "agent-blocks" / f"{agent_name}.json"

    def get(self, story_id: str, agent_name: str) -> AgentBlockConfig:
        payload = read_json(self.path_for(story_id, agent_name))
        if not isinstance(payload, Mapping):
            return AgentBlockConfig()
        try:
            return AgentBlockConfig.from_dict(payload)
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            LOGGER.warning("Ignoring invalid block config for %s/%s: %s", story_id, agent_name, exc)
            return AgentBlockConfig()

    def save(self, story_id: str, agent_name: str, config: AgentBlockConfig) -> AgentBlockConfig:
        write_json(self.path_for(story_id, agent_name), config.to_dict())
        return config

    def add_custom_block(self, story_id: str, agent_name: str, block: CustomBlockDefinition) -> AgentBlockConfig:
        config = self.get(story_id, agent_name)
        config.custom_blocks.append(block)
        config.block_order.append(block.id)
        return self.save(story_id, agent_name, config)

    def update_custom_block(
        self,
        story_id: str,
        agent_name: str,
        block_id: str,
        updates: Mapping[str, Any],
    ) -> AgentBlockConfig | None:
        """Patch one custom block; returns ``None`` when it does not exist."""
        config = self.get(story_id, agent_name)
        for index, block in enumerate(config.custom_blocks):
            if block.id == block_id:
                changes = {key: value for key, value in updates.items() if key != "id"}
                merged = CustomBlockDefinition.from_dict({**block.to_dict(), **changes})
                config.custom_blocks[index] = replace(merged, id=block_id)
                return self.save(story_id, agent_name, config)
        return None

    def delete_custom_block(self, story_id: str, agent_name: str, block_id: str) -> AgentBlockConfig:
        config = self.get(story_id, agent_name)
        config.custom_blocks = [block for block in config.custom_blocks if block.id != block_id]
        config.block_order = [item for item in config.block_order if item != block_id]
        config.overrides.pop(block_id, None)
        return self.save(story_id, agent_name, config)

    def update_overrides(
        self,
        story_id: str,
        agent_name: str,
        overrides: Mapping[str, BlockOverride],
        block_order: Sequence[str] | None = None,
    ) -> AgentBlockConfig:
        config = self.get(story_id, agent_name)
        for block_id, override in overrides.items():
            current = config.overrides.get(block_id)
            config.overrides[block_id] = current.merged(override) if current else override
        if block_order is not None:
            config.block_order = list(block_order)
        return self.save(story_id, agent_name, config)

    def update_disabled_tools(self, story_id: str, agent_name: str, disabled_tools: Sequence[str]) -> AgentBlockConfig:
        config = self.get(story_id, agent_name)
        config.disabled_tools = list(disabled_tools)
        return self.save(story_id, agent_name, config)
