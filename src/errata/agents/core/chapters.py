"""Chapter summaries written onto chapter marker fragments."""

from __future__ import annotations

import time
from typing import Any, Mapping

from ...blocks.helpers import compact_blocks, instructions_block
from ...blocks.instructions import INSTRUCTION_REGISTRY
from ...blocks.registry import BLOCK_REGISTRY, AgentBlockDefinition
from ...blocks.types import AgentBlockContext, ContextBlock
from ...errors import FragmentNotFoundError, StoryNotFoundError
from ...pipeline.streaming import StreamingRunRequest, StreamingRunnerConfig, create_streaming_runner
from ...storage.stories import StoryStore
from ...storage.types import MARKER_TYPE, Fragment, StoryMeta
from ..registry import AGENT_REGISTRY
from ..schemas import object_schema
from ..types import AgentDefinition, AgentInvocationContext

__all__ = ["SUMMARIZE_AGENT", "chapter_prose", "register", "summarize_chapter"]

SUMMARIZE_AGENT = "chapters.summarize"
SUMMARIZE_ROLE = "librarian"

CHAPTER_SUMMARIZE_SYSTEM_PROMPT = """
You are a story summarizer for a collaborative writing app.
Given prose content from a chapter, write a concise 2 paragraph summary capturing the key events, character actions, and mood.
Respond with only the summary text.
"""


def chapter_prose(store: StoryStore, story: StoryMeta, marker_id: str) -> list[Fragment]:
    """Prose from just after ``marker_id`` up to the next marker or the chain's end.

    Raises:
        ValueError: If the marker is not in the prose chain.
    """
    try:
        start = story.prose_chain.index(marker_id)
    except ValueError:
        raise ValueError("Marker not found in prose chain") from None
    prose: list[Fragment] = []
    for fragment_id in story.prose_chain[start + 1 :]:
        fragment = store.get_fragment(story.id, fragment_id)
        if fragment is None:
            continue
        if fragment.type == MARKER_TYPE:
            break
        prose.append(fragment)
    return prose


def create_summarize_blocks(ctx: AgentBlockContext) -> list[ContextBlock]:
    blocks: list[ContextBlock | None] = [instructions_block(f"{SUMMARIZE_AGENT}.system", ctx)]
    prose = ctx.get("chapter_prose")
    if prose:
        content = "Summarize this chapter:\n\n" + "\n\n".join(prose)
        blocks.append(ContextBlock(id="chapter-prose", role="user", content=content, order=100))
    return compact_blocks(blocks)


def build_summarize_preview_context(services: Any, story_id: str) -> AgentBlockContext:
    story = services.store.get_story(story_id)
    if story is None:
        raise StoryNotFoundError(story_id)
    return AgentBlockContext(
        story=story,
        extra={"chapter_prose": ["(Preview: the chapter's prose will appear here)"]},
    )


def _validate(request: StreamingRunRequest) -> list[str]:
    fragment_id = request.opts["fragment_id"]
    marker = request.services.store.get_fragment(request.story_id, fragment_id)
    if marker is None:
        raise FragmentNotFoundError(fragment_id)
    if marker.type != MARKER_TYPE:
        raise ValueError(f"Fragment {fragment_id} is not a chapter marker")
    prose = chapter_prose(request.services.store, request.story, fragment_id)
    if not prose:
        raise ValueError("No prose content in this chapter to summarize")
    return [fragment.content for fragment in prose]


_run_summarize = create_streaming_runner(
    StreamingRunnerConfig(
        name=SUMMARIZE_AGENT,
        role=SUMMARIZE_ROLE,
        max_steps=1,
        tool_choice="none",
        build_context=False,
        read_only="none",
        validate=_validate,
        extra_context=lambda request: {"chapter_prose": request.validated},
    )
)


async def summarize_chapter(ctx: AgentInvocationContext, input: Mapping[str, Any]) -> dict[str, Any]:
    """Summarize the prose under a chapter marker and save it as the marker's content.

    Returns:
        ``{"summary", "reasoning", "model_id", "duration_ms"}``.
    """
    fragment_id = input["fragment_id"]
    started = time.perf_counter()
    stream = await _run_summarize(ctx.data_dir, ctx.story_id, input, services=ctx.services)
    completion = await stream.completion
    duration_ms = int((time.perf_counter() - started) * 1000)
    summary = completion.text.strip()

    store = ctx.services.store
    marker = store.get_fragment(ctx.story_id, fragment_id)
    if marker is None:
        ctx.logger.error("Chapter marker %s disappeared during summarization", fragment_id)
    else:
        store.save_fragment(ctx.story_id, marker.with_updates(content=summary))
        ctx.logger.info("Saved chapter summary to %s (%d chars, %dms)", fragment_id, len(summary), duration_ms)

    model_id = ctx.services.models.resolve(ctx.story_id, SUMMARIZE_ROLE).model_id
    return {
        "summary": summary,
        "reasoning": completion.reasoning,
        "model_id": model_id,
        "duration_ms": duration_ms,
    }


SUMMARIZE_DEFINITION = AgentDefinition(
    name=SUMMARIZE_AGENT,
    description="Summarize the prose of a chapter into its marker fragment.",
    input_schema=object_schema({"fragment_id": {"type": "string", "minLength": 1}}, required=("fragment_id",)),
    output_schema=object_schema(
        {
            "summary": {"type": "string"},
            "reasoning": {"type": "string"},
            "model_id": {"type": "string"},
            "duration_ms": {"type": "integer"},
        },
        required=("summary", "reasoning", "model_id", "duration_ms"),
    ),
    run=summarize_chapter,
)


def register() -> None:
    INSTRUCTION_REGISTRY.register_default(f"{SUMMARIZE_AGENT}.system", CHAPTER_SUMMARIZE_SYSTEM_PROMPT.strip())
    AGENT_REGISTRY.register(SUMMARIZE_DEFINITION)
    BLOCK_REGISTRY.register(
        AgentBlockDefinition(
            agent_name=SUMMARIZE_AGENT,
            display_name="Chapter Summarize",
            description="Summarizes the prose between a chapter marker and the next one.",
            create_default_blocks=create_summarize_blocks,
            build_preview_context=build_summarize_preview_context,
        )
    )
