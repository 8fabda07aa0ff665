"""Suggest where the story could go next."""

from __future__ import annotations

import json
import re
import time
from typing import Any, Mapping

from ...ai.roles import ROLE_REGISTRY, ModelRoleDefinition
from ...blocks.context import CompiledAgentContext
from ...blocks.helpers import build_base_preview_context, compact_blocks, instructions_block, system_fragments_block
from ...blocks.instructions import INSTRUCTION_REGISTRY
from ...blocks.registry import BLOCK_REGISTRY, AgentBlockDefinition
from ...blocks.types import AgentBlockContext, ContextBlock
from ...pipeline.streaming import StreamingRunnerConfig, create_streaming_runner
from ...storage.types import StoryMeta
from ..registry import AGENT_REGISTRY
from ..schemas import object_schema
from ..types import AgentDefinition, AgentInvocationContext

__all__ = ["SUGGEST_AGENT", "build_suggest_prompt", "parse_suggestions", "register", "suggest_directions"]

SUGGEST_AGENT = "directions.suggest"
DEFAULT_COUNT = 4
_RECENT_PROSE = 3

DIRECTIONS_SYSTEM_PROMPT = (
    "You are a creative writing assistant that suggests possible story directions. Given the full story "
    "context, propose distinct and compelling directions the narrative could take. Each suggestion should "
    "have a short evocative title, a brief description, and a detailed instruction prompt suitable for a writer."
)

DEFAULT_SUGGEST_PROMPT = """Based on everything in the story so far, suggest exactly {{count}} possible directions the story could go next. Return ONLY a JSON array with no other text. Each element must have:
- "title": a short evocative title (3-6 words)
- "description": 1-2 sentences describing this direction
- "instruction": a detailed writing prompt (2-3 sentences) that could be given to a writer to produce this continuation

Consider a mix of: advancing the main plot, exploring character relationships, introducing tension or conflict, quiet character moments, and unexpected developments. Make each suggestion meaningfully different from the others.

Respond with ONLY the JSON array, no markdown fences or other text."""

_FENCE_OPEN = re.compile(r"^```(?:json)?\s*\n?")
_FENCE_CLOSE = re.compile(r"\n?```\s*$")


def parse_suggestions(text: str) -> list[Any]:
    """Parse the model's reply, tolerating a surrounding code fence.

    Raises:
        ValueError: If the reply is not a JSON array.
    """
    body = _FENCE_CLOSE.sub("", _FENCE_OPEN.sub("", text.strip()))
    suggestions = json.loads(body)
    if not isinstance(suggestions, list):
        raise ValueError("Model response is not a JSON array")
    return suggestions


def create_directions_blocks(ctx: AgentBlockContext) -> list[ContextBlock]:
    blocks: list[ContextBlock | None] = [
        instructions_block(f"{SUGGEST_AGENT}.system", ctx),
        system_fragments_block(ctx),
        ContextBlock(
            id="story-summary",
            role="user",
            content=f"## Story Summary\n{ctx.story.summary or '(No summary yet.)'}",
            order=100,
        ),
    ]
    characters: dict[str, Any] = {}
    for fragment in (*ctx.sticky_characters, *ctx.character_shortlist):
        characters.setdefault(fragment.id, fragment)
    if characters:
        body = "\n\n".join(f"### {item.name}\n{item.content}" for item in characters.values())
        blocks.append(ContextBlock(id="characters", role="user", content=f"## Characters\n{body}", order=200))
    if ctx.prose_fragments:
        recent = "\n\n---\n\n".join(item.content for item in ctx.prose_fragments[-_RECENT_PROSE:])
        blocks.append(ContextBlock(id="recent-prose", role="user", content=f"## Recent Prose\n{recent}", order=300))
    return compact_blocks(blocks)


def build_directions_preview_context(services: Any, story_id: str) -> AgentBlockContext:
    return build_base_preview_context(services.store, story_id)


def build_suggest_prompt(story: StoryMeta | None, count: int | None) -> str:
    template = (story.settings.guided_suggest_prompt if story is not None else None) or DEFAULT_SUGGEST_PROMPT
    return template.replace("{{count}}", str(count or DEFAULT_COUNT))


def _messages(compiled: CompiledAgentContext, opts: Mapping[str, Any]) -> list[dict[str, str]]:
    messages = [message.to_dict() for message in compiled.messages if message.role != "system"]
    messages.append({"role": "user", "content": opts["suggest_prompt"]})
    return messages


_run_suggest = create_streaming_runner(
    StreamingRunnerConfig(
        name=SUGGEST_AGENT,
        role="directions",
        max_steps=1,
        tool_choice="none",
        read_only="none",
        messages=_messages,
    )
)


async def suggest_directions(ctx: AgentInvocationContext, input: Mapping[str, Any]) -> dict[str, Any]:
    """Ask the directions model for ``count`` suggestions.

    Returns:
        ``{"suggestions", "model_id", "duration_ms"}``.
    """
    opts = dict(input)
    opts["suggest_prompt"] = build_suggest_prompt(ctx.services.store.get_story(ctx.story_id), opts.get("count"))

    started = time.perf_counter()
    stream = await _run_suggest(ctx.data_dir, ctx.story_id, opts, services=ctx.services)
    completion = await stream.completion
    duration_ms = int((time.perf_counter() - started) * 1000)

    suggestions = parse_suggestions(completion.text)
    model_id = ctx.services.models.resolve(ctx.story_id, "directions").model_id
    ctx.logger.info("Generated %d suggestion(s) in %dms", len(suggestions), duration_ms)
    return {"suggestions": suggestions, "model_id": model_id, "duration_ms": duration_ms}


SUGGEST_DEFINITION = AgentDefinition(
    name=SUGGEST_AGENT,
    description="Suggest possible story directions based on current context.",
    input_schema=object_schema({"count": {"type": "integer", "minimum": 1}}, additional=False),
    output_schema=object_schema(
        {
            "suggestions": {"type": "array"},
            "model_id": {"type": "string"},
            "duration_ms": {"type": "integer"},
        },
        required=("suggestions", "model_id", "duration_ms"),
    ),
    run=suggest_directions,
)


def register() -> None:
    INSTRUCTION_REGISTRY.register_default(f"{SUGGEST_AGENT}.system", DIRECTIONS_SYSTEM_PROMPT)
    AGENT_REGISTRY.register(SUGGEST_DEFINITION)
    ROLE_REGISTRY.register(ModelRoleDefinition("directions", "Directions", "Story direction suggestions"))
    BLOCK_REGISTRY.register(
        AgentBlockDefinition(
            agent_name=SUGGEST_AGENT,
            display_name="Directions",
            description="Suggests possible story directions based on current context.",
            create_default_blocks=create_directions_blocks,
            build_preview_context=build_directions_preview_context,
        )
    )
