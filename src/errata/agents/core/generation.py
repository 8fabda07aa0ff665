"""The writer agent: continues the story from the author's direction."""

from __future__ import annotations

from typing import Any

from ...ai.roles import ROLE_REGISTRY, ModelRoleDefinition
from ...blocks.helpers import (
    build_base_preview_context,
    compact_blocks,
    instructions_block,
    recent_prose_block,
    shortlist_block,
    sticky_fragments_block,
    story_info_block,
    system_fragments_block,
)
from ...blocks.instructions import INSTRUCTION_REGISTRY
from ...blocks.registry import BLOCK_REGISTRY, AgentBlockDefinition
from ...blocks.types import AgentBlockContext, ContextBlock
from ...pipeline.streaming import StreamingRunRequest, StreamingRunnerConfig, create_streaming_runner
from ..registry import AGENT_REGISTRY
from ..schemas import object_schema
from ..types import AgentDefinition, AgentInvocationContext

__all__ = ["WRITE_AGENT", "create_generation_blocks", "register", "write_prose"]

WRITE_AGENT = "generation.write"
INSTRUCTIONS_KEY = "generation.system"

GENERATION_SYSTEM_PROMPT = """
You are a creative writing assistant. Your task is to write prose that continues the story based on the author's direction.
IMPORTANT: Output the prose directly as your text response. Do NOT use tools to write or save prose; that is handled automatically.
Only use tools to look up context you need before writing.

Use the get/list tools to retrieve details about characters, guidelines or knowledge when needed.
After gathering any context you need, output the prose directly as text. Do not explain what you are doing. Just write the prose.
"""

READ_TOOLS = ("getFragment", "listFragments", "searchFragments", "listFragmentTypes")


def _author_input_block(ctx: AgentBlockContext) -> ContextBlock | None:
    author_input = ctx.get("author_input")
    if not author_input:
        return None
    return ContextBlock(
        id="author-input",
        role="user",
        content=f"The author wants the following to happen next: {author_input}",
        order=500,
    )


def create_generation_blocks(ctx: AgentBlockContext) -> list[ContextBlock]:
    return compact_blocks(
        [
            instructions_block(INSTRUCTIONS_KEY, ctx),
            system_fragments_block(ctx),
            story_info_block(ctx),
            recent_prose_block(ctx),
            sticky_fragments_block(ctx),
            shortlist_block(ctx),
            _author_input_block(ctx),
        ]
    )


def build_generation_preview_context(services: Any, story_id: str) -> AgentBlockContext:
    return build_base_preview_context(services.store, story_id).merged({"author_input": "(preview)"})


def _extra_context(request: StreamingRunRequest) -> dict[str, Any]:
    return {"author_input": request.opts["author_input"]}


write_prose = create_streaming_runner(
    StreamingRunnerConfig(
        name=WRITE_AGENT,
        role="generation",
        read_only=True,
        extra_context=_extra_context,
    )
)


async def _run(ctx: AgentInvocationContext, input: dict[str, Any]) -> Any:
    return await write_prose(ctx.data_dir, ctx.story_id, input, services=ctx.services)


WRITE_DEFINITION = AgentDefinition(
    name=WRITE_AGENT,
    description="Continue the story in prose, following the author's direction.",
    input_schema=object_schema(
        {
            "author_input": {"type": "string", "minLength": 1},
            "max_steps": {"type": "integer", "minimum": 1},
        },
        required=("author_input",),
        additional=False,
    ),
    run=_run,
    allowed_calls=(),
)


def register() -> None:
    INSTRUCTION_REGISTRY.register_default(INSTRUCTIONS_KEY, GENERATION_SYSTEM_PROMPT)
    AGENT_REGISTRY.register(WRITE_DEFINITION)
    ROLE_REGISTRY.register(ModelRoleDefinition("generation", "Generation", "Main prose writing"))
    BLOCK_REGISTRY.register(
        AgentBlockDefinition(
            agent_name=WRITE_AGENT,
            display_name="Writer",
            description="Prose continuation and generation",
            create_default_blocks=create_generation_blocks,
            build_preview_context=build_generation_preview_context,
            available_tools=READ_TOOLS,
        )
    )
