"""Reusable default-block builders.

Agent block factories compose these; helpers that may have nothing to say
return ``None`` and callers pass their output through :func:`compact_blocks`.
"""

from __future__ import annotations

from typing import Iterable, Sequence

from ..context_state import build_context_state
from ..storage.stories import StoryStore
from ..storage.types import Fragment
from .instructions import INSTRUCTION_REGISTRY, InstructionRegistry
from .types import AgentBlockContext, ContextBlock

__all__ = [
    "SYSTEM_PROMPT_TAG",
    "instructions_block",
    "system_fragments_block",
    "story_info_block",
    "sticky_fragments_block",
    "recent_prose_block",
    "prose_summaries_block",
    "prose_summary",
    "target_fragment_block",
    "all_characters_block",
    "shortlist_block",
    "compact_blocks",
    "build_base_preview_context",
    "load_system_prompt_fragments",
]

SYSTEM_PROMPT_TAG = "pass-to-librarian-system-prompt"

_FULL_CONTENT_LIMIT = 600
_TRUNCATE_AT = 500


def _listing(fragments: Iterable[Fragment]) -> list[str]:
    return [f"- {fragment.id}: {fragment.name} - {fragment.description}" for fragment in fragments]


def instructions_block(
    key: str,
    ctx: AgentBlockContext,
    registry: InstructionRegistry = INSTRUCTION_REGISTRY,
) -> ContextBlock:
    return ContextBlock(
        id="instructions",
        role="system",
        content=registry.resolve(key, ctx.model_id),
        order=100,
    )


def system_fragments_block(ctx: AgentBlockContext) -> ContextBlock | None:
    if not ctx.system_prompt_fragments:
        return None
    content = "\n\n".join(f"## {fragment.name}\n{fragment.content}" for fragment in ctx.system_prompt_fragments)
    return ContextBlock(id="system-fragments", role="system", content=content, order=200)


def story_info_block(ctx: AgentBlockContext) -> ContextBlock:
    parts = [f"## Story: {ctx.story.name}", ctx.story.description]
    if ctx.story.summary:
        parts.append(f"\n## Story Summary\n{ctx.story.summary}")
    return ContextBlock(id="story-info", role="user", content="\n".join(parts), order=100)


def sticky_fragments_block(ctx: AgentBlockContext) -> ContextBlock | None:
    fragments = [*ctx.sticky_guidelines, *ctx.sticky_knowledge, *ctx.sticky_characters]
    if not fragments:
        return None
    content = "\n".join(["## Active Context Fragments", *_listing(fragments)])
    return ContextBlock(id="sticky-fragments", role="user", content=content, order=300)


def recent_prose_block(ctx: AgentBlockContext) -> ContextBlock | None:
    if not ctx.prose_fragments:
        return None
    lines = ["## Recent Prose"]
    lines.extend(f"### {fragment.name} ({fragment.id})\n{fragment.content}" for fragment in ctx.prose_fragments)
    return ContextBlock(id="prose", role="user", content="\n".join(lines), order=200)


def prose_summary(fragment: Fragment) -> str:
    """Librarian summary if present, else the content (truncated when long)."""
    summary = fragment.librarian_summary
    if summary:
        return f"- {fragment.id}: {summary}"
    if len(fragment.content) < _FULL_CONTENT_LIMIT:
        return f"- {fragment.id}: \n{fragment.content}"
    head = fragment.content[:_TRUNCATE_AT].replace("\n", " ")
    return f"- {fragment.id}: {head}... [truncated]"


def prose_summaries_block(ctx: AgentBlockContext, header: str) -> ContextBlock | None:
    if not ctx.prose_fragments:
        return None
    lines = [header, *(prose_summary(fragment) for fragment in ctx.prose_fragments)]
    return ContextBlock(id="prose-summaries", role="user", content="\n".join(lines), order=200)


def target_fragment_block(ctx: AgentBlockContext, label: str, default_guidance: str) -> ContextBlock | None:
    target = ctx.target_fragment
    if target is None:
        return None
    parts = [f'Target {label}: {target.id} (type: {target.type}, name: "{target.name}")']
    if ctx.instructions:
        parts.append(f"\nUser instructions: {ctx.instructions}")
    else:
        parts.append(f"\n{default_guidance}")
    return ContextBlock(id="target", role="user", content="\n".join(parts), order=400)


def all_characters_block(ctx: AgentBlockContext) -> ContextBlock | None:
    if not ctx.all_characters:
        return None
    content = "\n".join(["## All Characters", *_listing(ctx.all_characters)])
    return ContextBlock(id="all-characters", role="user", content=content, order=350)


def shortlist_block(ctx: AgentBlockContext) -> ContextBlock | None:
    fragments = [*ctx.guideline_shortlist, *ctx.knowledge_shortlist, *ctx.character_shortlist]
    if not fragments:
        return None
    content = "\n".join(["## Other Available Fragments", *_listing(fragments)])
    return ContextBlock(id="shortlist", role="user", content=content, order=400)


def compact_blocks(blocks: Sequence[ContextBlock | None]) -> list[ContextBlock]:
    return [block for block in blocks if block is not None]


# ---------------------------------------------------------------------------
# Preview contexts
# ---------------------------------------------------------------------------


def load_system_prompt_fragments(store: StoryStore, story_id: str) -> list[Fragment]:
    return store.get_fragments_by_tag(story_id, SYSTEM_PROMPT_TAG)


def build_base_preview_context(store: StoryStore, story_id: str) -> AgentBlockContext:
    """Block context with the common story state and no agent extras."""
    state = build_context_state(store, story_id)
    return AgentBlockContext(
        story=state.story,
        prose_fragments=state.prose_fragments,
        sticky_guidelines=state.sticky_guidelines,
        sticky_knowledge=state.sticky_knowledge,
        sticky_characters=state.sticky_characters,
        guideline_shortlist=state.guideline_shortlist,
        knowledge_shortlist=state.knowledge_shortlist,
        character_shortlist=state.character_shortlist,
        system_prompt_fragments=load_system_prompt_fragments(store, story_id),
    )
