"""In-character conversation with one of the story's characters."""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Mapping

from ...ai.roles import ROLE_REGISTRY, ModelRoleDefinition
from ...blocks.context import CompiledAgentContext
from ...blocks.helpers import build_base_preview_context, prose_summary
from ...blocks.instructions import INSTRUCTION_REGISTRY
from ...blocks.registry import BLOCK_REGISTRY, AgentBlockDefinition
from ...blocks.types import AgentBlockContext, ContextBlock
from ...errors import FragmentNotFoundError
from ...pipeline.streaming import StreamingRunRequest, StreamingRunnerConfig, create_streaming_runner
from ...storage.types import Fragment
from ..registry import AGENT_REGISTRY
from ..schemas import object_schema
from ..types import AgentDefinition, AgentInvocationContext

__all__ = ["CHARACTER_CHAT_AGENT", "build_persona_description", "character_chat", "register"]

CHARACTER_CHAT_AGENT = "character-chat.chat"

INSTRUCTION_DEFAULTS: Mapping[str, str] = {
    "character-chat.system": "You are roleplaying as {{characterName}}. Stay in character at all times.",
    "character-chat.instructions": "\n".join(
        [
            "1. Respond as {{characterName}} would, using their voice, mannerisms, and knowledge.",
            "2. You only know events up to the selected story point. Do not reference future events.",
            "3. You may use tools to look up fragment details when needed, but do NOT mention your use of tools in conversation.",
            "4. If asked about events beyond your knowledge cutoff, respond with genuine uncertainty; the character does not know.",
            "5. Stay in character. Do not break the fourth wall unless the character would.",
            "6. Keep responses natural and conversational.",
        ]
    ),
    "character-chat.persona.character": "You are speaking with {{personaName}}. {{personaDescription}}",
    "character-chat.persona.stranger": "You are speaking with a stranger you have just met. You do not know who they are.",
    "character-chat.persona.custom": "You are speaking with someone described as: {{prompt}}",
}

READ_TOOLS = ("getFragment", "listFragments", "searchFragments", "listFragmentTypes")


def _fill(template: str, **values: str) -> str:
    for key, value in values.items():
        template = template.replace("{{" + key + "}}", value)
    return template


@dataclass(slots=True, frozen=True)
class _ChatTarget:
    character: Fragment
    persona_name: str | None = None
    persona_description: str | None = None


def build_persona_description(
    persona: Mapping[str, Any],
    persona_name: str | None = None,
    persona_description: str | None = None,
    model_id: str | None = None,
) -> str:
    kind = persona["type"]
    template = INSTRUCTION_REGISTRY.resolve(f"character-chat.persona.{kind}", model_id)
    if kind == "character":
        return _fill(
            template,
            personaName=persona_name or "another character",
            personaDescription=persona_description or "",
        )
    if kind == "custom":
        return _fill(template, prompt=persona.get("prompt", ""))
    return template


# -----------------------------------------------------------------------------
# Blocks
# -----------------------------------------------------------------------------


def create_character_chat_blocks(ctx: AgentBlockContext) -> list[ContextBlock]:
    blocks: list[ContextBlock] = []
    character: Fragment | None = ctx.get("character")

    if character is not None:
        system = _fill(INSTRUCTION_REGISTRY.resolve("character-chat.system", ctx.model_id), characterName=character.name)
        content = "\n".join(
            [system, "", "## Character Details", character.content, "", "## Character Description", character.description]
        )
        blocks.append(ContextBlock(id="character", role="system", content=content, order=100))

    persona = ctx.get("persona_description")
    if persona:
        blocks.append(
            ContextBlock(id="persona", role="system", content=f"## Who You Are Speaking With\n{persona}", order=200)
        )

    parts = [f"## Story: {ctx.story.name}", ctx.story.description]
    if ctx.story.summary:
        parts.append(f"\n## Story Summary\n{ctx.story.summary}")
    if ctx.prose_fragments:
        parts.append("\n## Story Events (use getFragment to read full prose)")
        parts.extend(prose_summary(fragment) for fragment in ctx.prose_fragments)
    sticky = [*ctx.sticky_guidelines, *ctx.sticky_knowledge, *ctx.sticky_characters]
    if sticky:
        parts.append("\n## World Context")
        parts.extend(f"- {item.id}: {item.name} - {item.description}" for item in sticky)

    name = character.name if character is not None else "the character"
    instructions = _fill(INSTRUCTION_REGISTRY.resolve("character-chat.instructions", ctx.model_id), characterName=name)
    content = "\n".join(["## Story Context", "\n".join(parts), "", "## Instructions", instructions])
    blocks.append(ContextBlock(id="story-context", role="system", content=content, order=300))
    return blocks


def build_character_chat_preview_context(services: Any, story_id: str) -> AgentBlockContext:
    base = build_base_preview_context(services.store, story_id)
    return replace(
        base,
        extra={"persona_description": INSTRUCTION_REGISTRY.resolve("character-chat.persona.stranger")},
    )


# -----------------------------------------------------------------------------
# Runner
# -----------------------------------------------------------------------------


def _validate(request: StreamingRunRequest) -> _ChatTarget:
    store = request.services.store
    character_id = request.opts["character_id"]
    character = store.get_fragment(request.story_id, character_id)
    if character is None or character.type != "character":
        raise FragmentNotFoundError(character_id, kind="Character")

    persona = request.opts["persona"]
    if persona["type"] != "character":
        return _ChatTarget(character)
    other = store.get_fragment(request.story_id, persona["character_id"])
    if other is None:
        return _ChatTarget(character)
    return _ChatTarget(character, persona_name=other.name, persona_description=other.description)


def _extra_context(request: StreamingRunRequest) -> dict[str, Any]:
    target: _ChatTarget = request.validated
    return {
        "character": target.character,
        "persona_description": build_persona_description(
            request.opts["persona"],
            target.persona_name,
            target.persona_description,
            request.model_id,
        ),
    }


def _messages(_compiled: CompiledAgentContext, opts: Mapping[str, Any]) -> list[dict[str, str]]:
    return [{"role": item["role"], "content": item["content"]} for item in opts["messages"]]


character_chat = create_streaming_runner(
    StreamingRunnerConfig(
        name=CHARACTER_CHAT_AGENT,
        read_only=True,
        validate=_validate,
        context_options=lambda opts: {"prose_before_fragment_id": opts.get("story_point_fragment_id")},
        extra_context=_extra_context,
        messages=_messages,
    )
)


async def _run(ctx: AgentInvocationContext, input: dict[str, Any]) -> Any:
    return await character_chat(ctx.data_dir, ctx.story_id, input, services=ctx.services)


_PERSONA_SCHEMA = {
    "oneOf": [
        object_schema(
            {"type": {"const": "character"}, "character_id": {"type": "string", "minLength": 1}},
            required=("type", "character_id"),
        ),
        object_schema({"type": {"const": "stranger"}}, required=("type",)),
        object_schema({"type": {"const": "custom"}, "prompt": {"type": "string"}}, required=("type", "prompt")),
    ]
}

CHARACTER_CHAT_DEFINITION = AgentDefinition(
    name=CHARACTER_CHAT_AGENT,
    description="In-character conversation with a story character.",
    input_schema=object_schema(
        {
            "character_id": {"type": "string", "minLength": 1},
            "persona": _PERSONA_SCHEMA,
            "story_point_fragment_id": {"type": ["string", "null"]},
            "messages": {
                "type": "array",
                "items": object_schema(
                    {"role": {"enum": ["user", "assistant"]}, "content": {"type": "string"}},
                    required=("role", "content"),
                ),
            },
            "max_steps": {"type": "integer", "minimum": 1},
        },
        required=("character_id", "persona", "messages"),
    ),
    run=_run,
    allowed_calls=(),
)


def register() -> None:
    for key, text in INSTRUCTION_DEFAULTS.items():
        INSTRUCTION_REGISTRY.register_default(key, text)
    AGENT_REGISTRY.register(CHARACTER_CHAT_DEFINITION)
    ROLE_REGISTRY.register(ModelRoleDefinition("character-chat", "Character Chat", "In-character conversations"))
    BLOCK_REGISTRY.register(
        AgentBlockDefinition(
            agent_name=CHARACTER_CHAT_AGENT,
            display_name="Character Chat",
            description="In-character conversation with a story character.",
            create_default_blocks=create_character_chat_blocks,
            build_preview_context=build_character_chat_preview_context,
            available_tools=READ_TOOLS,
        )
    )
