"""Apply a stored :class:`AgentBlockConfig` to freshly built default blocks."""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, Iterable, Mapping

from .script import evaluate_script
from .types import AgentBlockConfig, BlockOverride, ContextBlock, CustomBlockDefinition

__all__ = ["apply_block_config", "apply_content_mode", "render_custom_block"]

LOGGER = logging.getLogger(__name__)

SEPARATOR = "\n\n"


def apply_content_mode(content: str, override: BlockOverride) -> str:
    """Return ``content`` after the override's prepend/append/override edit."""
    mode = override.content_mode
    if mode is None:
        return content
    custom = override.custom_content or ""
    if mode == "override":
        return custom
    if mode == "prepend":
        return f"{custom}{SEPARATOR}{content}"
    if mode == "append":
        return f"{content}{SEPARATOR}{custom}"
    raise ValueError(f"Unknown content mode: {mode!r}")


def render_custom_block(
    definition: CustomBlockDefinition,
    script_namespace: Mapping[str, Any],
) -> ContextBlock | None:
    """Materialize a custom block; ``None`` means skip it.

    Script failures become placeholder content for this block only.
    """
    if definition.type != "script":
        return ContextBlock(
            id=definition.id,
            role=definition.role,
            content=definition.content,
            order=definition.order,
            source="custom",
        )
    try:
        value = evaluate_script(definition.content, script_namespace)
    except Exception as exc:
        LOGGER.warning("Script block %s failed: %s", definition.id, exc)
        content = f"[Script error: {exc}]"
    else:
        if value is None or value == "":
            return None
        content = str(value)
    return ContextBlock(
        id=definition.id,
        role=definition.role,
        content=content,
        order=definition.order,
        source="script",
    )


def _is_enabled(block_id: str, overrides: Mapping[str, BlockOverride]) -> bool:
    override = overrides.get(block_id)
    return override is None or override.enabled is not False


def apply_block_config(
    blocks: Iterable[ContextBlock],
    config: AgentBlockConfig,
    script_namespace: Mapping[str, Any] | None = None,
) -> list[ContextBlock]:
    """Merge custom blocks, drop disabled ones, edit content and reorder.

    Blocks listed in ``config.block_order`` take their list index as their
    order; unlisted blocks keep their default order. The returned list keeps
    insertion order (defaults, then custom blocks); sorting happens at
    compile time.
    """
    namespace = script_namespace or {}
    merged: list[ContextBlock] = list(blocks)
    for definition in config.custom_blocks:
        if not definition.enabled or not _is_enabled(definition.id, config.overrides):
            continue
        rendered = render_custom_block(definition, namespace)
        if rendered is not None:
            merged.append(rendered)

    positions = {block_id: index for index, block_id in enumerate(config.block_order)}
    result: list[ContextBlock] = []
    for block in merged:
        if not _is_enabled(block.id, config.overrides):
            continue
        override = config.overrides.get(block.id)
        if override is not None and override.content_mode is not None:
            block = replace(block, content=apply_content_mode(block.content, override))
        if block.id in positions:
            block = replace(block, order=positions[block.id])
        result.append(block)
    return result
