"""Librarian agents: continuity analysis, refinement, prose transforms and chat.

``librarian.analyze`` is the only agent here that consumes its own stream:
the model reports through the collector tools, the collected summary and
character mentions are written back onto the prose fragment, and the other
findings (contradictions, knowledge suggestions, timeline events, directions)
are returned to the caller. The refine, prose-transform and chat agents hand
their streams to the caller.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Mapping

from ...ai.roles import ROLE_REGISTRY, ModelRoleDefinition
from ...blocks.compiler import find_message
from ...blocks.context import CompiledAgentContext
from ...blocks.helpers import (
    build_base_preview_context,
    compact_blocks,
    instructions_block,
    prose_summaries_block,
    recent_prose_block,
    shortlist_block,
    sticky_fragments_block,
    story_info_block,
    system_fragments_block,
    target_fragment_block,
)
from ...blocks.instructions import INSTRUCTION_REGISTRY
from ...blocks.registry import BLOCK_REGISTRY, AgentBlockDefinition
from ...blocks.types import AgentBlockContext, ContextBlock
from ...errors import FragmentNotFoundError, StoryNotFoundError
from ...pipeline.streaming import StreamingRunRequest, StreamingRunnerConfig, create_streaming_runner
from ...storage.types import Fragment
from ...tools.types import FunctionTool, ToolSet, ToolSpec
from ..registry import AGENT_REGISTRY
from ..schemas import object_schema
from ..types import AgentDefinition, AgentInvocationContext

__all__ = [
    "ANALYZE_AGENT",
    "CHAT_AGENT",
    "PROSE_TRANSFORM_AGENT",
    "REFINE_AGENT",
    "AnalysisCollector",
    "analyze_fragment",
    "create_analysis_tools",
    "register",
    "transform_prose",
]

LOGGER = logging.getLogger(__name__)

ANALYZE_AGENT = "librarian.analyze"
REFINE_AGENT = "librarian.refine"
CHAT_AGENT = "librarian.chat"
PROSE_TRANSFORM_AGENT = "librarian.prose-transform"

ANALYZE_SYSTEM_PROMPT = """
You are a librarian agent for a collaborative writing app.
Your job is to analyze new prose fragments and maintain story continuity.

You have six reporting tools. Use them to report your findings:

1. updateSummary: Provide a concise summary of what happened in the new prose.
   Also provide structured fields when possible: events[], stateChanges[], openThreads[].
   If the summary text is blank, structured fields are required.
2. reportMentions: Report each character reference by name, nickname or title (not pronouns).
   Include the character ID and the exact text used.
3. reportContradictions: Flag when the new prose contradicts established facts in the summary,
   character descriptions or knowledge. Only flag clear contradictions, not ambiguities.
4. suggestKnowledge: Suggest creating or updating character/knowledge fragments based on new information.
   To refine an existing fragment, set targetFragmentId to its ID and give the updated name, description and content.
   For truly new information, omit targetFragmentId.
   Use type "character" for characters and "knowledge" for world-building details, locations, items or facts.
5. reportTimeline: Note significant events. "position" is relative to the previous prose:
   "before" for a flashback, "during" if concurrent, "after" if it follows sequentially.
6. suggestDirections: Suggest 3-5 possible directions the story could go next, each with a short title,
   a description of what would happen and an instruction the writer could follow.

Always call updateSummary and suggestDirections. Only call the other tools if there are relevant findings.
Only return 'Analysis complete' in your final output.
"""

PROSE_TRANSFORM_SYSTEM_PROMPT = """
You transform selected prose spans for an author in a writing app.

Rules:
- Follow the requested operation exactly.
- Preserve story facts, continuity, tense, and point of view.
- Do not add metadata, explanations, markdown, quotes, or labels.
- Return only the transformed replacement text for the selected span.
"""

OPERATION_GUIDANCE: Mapping[str, str] = {
    "rewrite": "Rewrite the selected span for clarity and flow while preserving the original meaning and voice.",
    "expand": "Expand the selected span with more detail while preserving intent, continuity, and point of view.",
    "compress": (
        "Compress the selected span to a tighter version while preserving essential meaning and continuity."
    ),
}
CUSTOM_DEFAULT_GUIDANCE = "Improve the selected text."
PROSE_OPERATIONS = (*OPERATION_GUIDANCE, "custom")

REFINE_SYSTEM_PROMPT = """
You are a fragment refinement agent for a collaborative writing app. Your job is to improve a specific fragment (character, guideline or knowledge) based on the story context.

Instructions:
1. First, read the target fragment using the appropriate get tool (getCharacter, getKnowledge, getGuideline).
2. Analyze the story context provided: prose, summary and other fragments.
3. Use the updateFragment or editFragment tool to improve the target fragment.
4. Explain what you changed and why in your text response.

Guidelines for refinement:
- If the user provides specific instructions, follow them precisely.
- Preserve the fragment's existing voice and style unless asked otherwise.
- Keep descriptions within the 250 character limit.
- Do NOT delete fragments unless explicitly asked.
- Do NOT modify prose fragments, only characters, guidelines and knowledge.
"""

CHAT_SYSTEM_PROMPT = """
You are a conversational librarian assistant for a collaborative writing app. Your job is to help the author maintain story continuity by answering questions and performing fragment edits through tools.

Instructions:
1. Your context includes a story summary and fragment summaries, not full content. Use getFragment(id) to read the full content of any fragment you need.
2. For character, guideline or knowledge changes, use editFragment or updateFragment with the fragment ID.
3. When the author asks to add new lore, characters or rules, use createFragment.
4. For sweeping changes, use listFragments and getFragment to find the relevant fragments, then update each one.
5. Explain what you changed and why after making edits.
6. Ask clarifying questions when the request is ambiguous.
7. Keep fragment descriptions within the 250 character limit.

Fragment ID prefixes: pr- (prose), ch- (character), gl- (guideline), kn- (knowledge).
"""

REFINE_DEFAULT_GUIDANCE = (
    "No specific instructions provided. Improve this fragment based on recent story events "
    "for consistency, clarity, and depth."
)
NO_SUMMARY_YET = "(No summary yet, this may be the beginning of the story.)"
CHAT_CONTEXT_ACK = "I have the story context. How can I help you with your fragments?"

READ_TOOLS = ("getFragment", "listFragments", "searchFragments", "listFragmentTypes")
WRITE_TOOLS = (*READ_TOOLS, "createFragment", "updateFragment", "editFragment", "deleteFragment")

_SUMMARY_LINE_LIMIT = 8


# -----------------------------------------------------------------------------
# Analysis collector tools
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class AnalysisCollector:
    """Findings reported by the model through the analysis tools."""

    summary: str = ""
    structured: dict[str, list[str]] = field(default_factory=dict)
    mentions: list[dict[str, str]] = field(default_factory=list)
    contradictions: list[dict[str, Any]] = field(default_factory=list)
    knowledge_suggestions: list[dict[str, str]] = field(default_factory=list)
    timeline_events: list[dict[str, str]] = field(default_factory=list)
    directions: list[dict[str, str]] = field(default_factory=list)

    def findings(self) -> dict[str, list[dict[str, Any]]]:
        """Everything beyond the summary and mentions, keyed for output."""
        return {
            "contradictions": list(self.contradictions),
            "knowledge_suggestions": list(self.knowledge_suggestions),
            "timeline_events": list(self.timeline_events),
            "directions": list(self.directions),
        }


def _unique_lines(values: Any) -> list[str]:
    seen: list[str] = []
    for value in values or ():
        text = str(value).strip()
        if text and text not in seen:
            seen.append(text)
    return seen[:_SUMMARY_LINE_LIMIT]


def _render_structured(structured: Mapping[str, list[str]]) -> str:
    labels = (("events", "Events"), ("stateChanges", "State changes"), ("openThreads", "Open threads"))
    parts = []
    for key, label in labels:
        lines = structured.get(key) or []
        if lines:
            parts.append(f"{label}: " + "; ".join(lines))
    return "\n".join(parts)


_LINE_LIST = {"type": "array", "items": {"type": "string", "maxLength": 200}, "maxItems": 12}


def _object_list(properties: Mapping[str, Any], required: tuple[str, ...], **bounds: int) -> dict[str, Any]:
    item = {"type": "object", "properties": dict(properties), "required": list(required)}
    return {"type": "array", "items": item, **bounds}


def _suggestion_key(suggestion: Mapping[str, Any]) -> tuple[str, str]:
    return suggestion["type"], suggestion["name"].strip().lower()


def create_analysis_tools(collector: AnalysisCollector) -> ToolSet:
    """Build the six reporting tools, all writing into ``collector``."""

    def update_summary(args: Mapping[str, Any]) -> dict[str, Any]:
        structured = {key: _unique_lines(args.get(key)) for key in ("events", "stateChanges", "openThreads")}
        summary = str(args.get("summary", "")).strip()
        if not summary and not any(structured.values()):
            return {"error": "Provide either summary text or at least one structured summary signal."}
        collector.structured = structured
        collector.summary = summary or _render_structured(structured)
        return {"ok": True}

    def report_mentions(args: Mapping[str, Any]) -> dict[str, Any]:
        seen = {mention["characterId"] for mention in collector.mentions}
        for mention in args.get("mentions") or ():
            character_id = mention["characterId"]
            if character_id in seen:
                continue
            seen.add(character_id)
            collector.mentions.append({"characterId": character_id, "text": mention["text"]})
        return {"ok": True}

    def report_contradictions(args: Mapping[str, Any]) -> dict[str, Any]:
        for item in args["contradictions"]:
            collector.contradictions.append(
                {"description": item["description"], "fragmentIds": list(item["fragmentIds"])}
            )
        return {"ok": True}

    def suggest_knowledge(args: Mapping[str, Any]) -> dict[str, Any]:
        # First suggestion per type and name wins.
        seen = {_suggestion_key(item) for item in collector.knowledge_suggestions}
        for suggestion in args["suggestions"]:
            key = _suggestion_key(suggestion)
            if key in seen:
                continue
            seen.add(key)
            entry = {
                "type": suggestion["type"],
                "name": suggestion["name"],
                "description": suggestion["description"],
                "content": suggestion["content"],
            }
            if suggestion.get("targetFragmentId"):
                entry["targetFragmentId"] = suggestion["targetFragmentId"]
            collector.knowledge_suggestions.append(entry)
        return {"ok": True}

    def report_timeline(args: Mapping[str, Any]) -> dict[str, Any]:
        collector.timeline_events.extend(
            {"event": item["event"], "position": item["position"]} for item in args["events"]
        )
        return {"ok": True}

    def suggest_directions(args: Mapping[str, Any]) -> dict[str, Any]:
        collector.directions = [
            {"title": item["title"], "description": item["description"], "instruction": item["instruction"]}
            for item in args["directions"]
        ]
        return {"ok": True}

    summary_spec = ToolSpec(
        name="updateSummary",
        description=(
            "Set or update the summary for this prose fragment. Describes what happened in the new prose. "
            "Last call wins."
        ),
        parameters={
            "type": "object",
            "properties": {
                "summary": {"type": "string", "maxLength": 1200},
                "events": _LINE_LIST,
                "stateChanges": _LINE_LIST,
                "openThreads": _LINE_LIST,
            },
            "required": ["summary"],
            "additionalProperties": False,
        },
    )
    mentions_spec = ToolSpec(
        name="reportMentions",
        description=(
            "Report character mentions found in the new prose. Call once with all mentions. "
            "Each character should appear only once; use the primary name."
        ),
        parameters={
            "type": "object",
            "properties": {
                "mentions": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            "characterId": {"type": "string"},
                            "text": {"type": "string"},
                        },
                        "required": ["characterId", "text"],
                    },
                }
            },
            "required": ["mentions"],
        },
    )
    contradictions_spec = ToolSpec(
        name="reportContradictions",
        description=(
            "Report contradictions between the new prose and established facts. Only flag clear contradictions."
        ),
        parameters={
            "type": "object",
            "properties": {
                "contradictions": _object_list(
                    {
                        "description": {"type": "string"},
                        "fragmentIds": {"type": "array", "items": {"type": "string"}},
                    },
                    ("description", "fragmentIds"),
                )
            },
            "required": ["contradictions"],
        },
    )
    knowledge_spec = ToolSpec(
        name="suggestKnowledge",
        description=(
            "Suggest creating or updating character/knowledge fragments based on new information in the prose. "
            "Each character or knowledge entry should appear only once."
        ),
        parameters={
            "type": "object",
            "properties": {
                "suggestions": _object_list(
                    {
                        "type": {"enum": ["character", "knowledge"]},
                        "targetFragmentId": {"type": "string"},
                        "name": {"type": "string", "minLength": 1},
                        "description": {"type": "string"},
                        "content": {"type": "string"},
                    },
                    ("type", "name", "description", "content"),
                )
            },
            "required": ["suggestions"],
        },
    )
    timeline_spec = ToolSpec(
        name="reportTimeline",
        description="Report significant timeline events from the new prose.",
        parameters={
            "type": "object",
            "properties": {
                "events": _object_list(
                    {"event": {"type": "string"}, "position": {"enum": ["before", "during", "after"]}},
                    ("event", "position"),
                )
            },
            "required": ["events"],
        },
    )
    directions_spec = ToolSpec(
        name="suggestDirections",
        description="Suggest 3-5 possible directions the story could go next.",
        parameters={
            "type": "object",
            "properties": {
                "directions": _object_list(
                    {
                        "title": {"type": "string"},
                        "description": {"type": "string"},
                        "instruction": {"type": "string"},
                    },
                    ("title", "description", "instruction"),
                    minItems=3,
                    maxItems=5,
                )
            },
            "required": ["directions"],
        },
    )
    return {
        summary_spec.name: FunctionTool(summary_spec, update_summary),
        mentions_spec.name: FunctionTool(mentions_spec, report_mentions),
        contradictions_spec.name: FunctionTool(contradictions_spec, report_contradictions),
        knowledge_spec.name: FunctionTool(knowledge_spec, suggest_knowledge),
        timeline_spec.name: FunctionTool(timeline_spec, report_timeline),
        directions_spec.name: FunctionTool(directions_spec, suggest_directions),
    }


ANALYSIS_TOOLS = (
    "updateSummary",
    "reportMentions",
    "reportContradictions",
    "suggestKnowledge",
    "reportTimeline",
    "suggestDirections",
)


# -----------------------------------------------------------------------------
# Blocks
# -----------------------------------------------------------------------------


def create_analyze_blocks(ctx: AgentBlockContext) -> list[ContextBlock]:
    blocks: list[ContextBlock | None] = [
        instructions_block(f"{ANALYZE_AGENT}.system", ctx),
        system_fragments_block(ctx),
        ContextBlock(
            id="story-summary",
            role="user",
            content="## Story Summary So Far\n" + (ctx.story.summary or NO_SUMMARY_YET),
            order=100,
        ),
    ]
    if ctx.all_characters:
        lines = [f"- {item.id}: {item.name} - {item.description}" for item in ctx.all_characters]
        content = "\n".join(["## Known Characters", *lines])
        blocks.append(ContextBlock(id="characters", role="user", content=content, order=200))
    if ctx.all_knowledge:
        lines = [f"- {item.id}: {item.name} - {item.content}" for item in ctx.all_knowledge]
        content = "\n".join(["## Knowledge Base", *lines])
        blocks.append(ContextBlock(id="knowledge", role="user", content=content, order=300))
    new_prose = ctx.get("new_prose")
    if new_prose:
        content = "\n".join(["## New Prose Fragment", f"Fragment ID: {new_prose['id']}", new_prose["content"]])
        blocks.append(ContextBlock(id="new-prose", role="user", content=content, order=400))
    return compact_blocks(blocks)


def create_refine_blocks(ctx: AgentBlockContext) -> list[ContextBlock]:
    return compact_blocks(
        [
            instructions_block(f"{REFINE_AGENT}.system", ctx),
            story_info_block(ctx),
            recent_prose_block(ctx),
            sticky_fragments_block(ctx),
            target_fragment_block(ctx, "fragment to refine", REFINE_DEFAULT_GUIDANCE),
        ]
    )


def create_chat_blocks(ctx: AgentBlockContext) -> list[ContextBlock]:
    return compact_blocks(
        [
            instructions_block(f"{CHAT_AGENT}.system", ctx),
            system_fragments_block(ctx),
            story_info_block(ctx),
            prose_summaries_block(ctx, "## Prose Fragments (use getFragment to read/edit)"),
            sticky_fragments_block(ctx),
            shortlist_block(ctx),
        ]
    )


def create_prose_transform_blocks(ctx: AgentBlockContext) -> list[ContextBlock]:
    blocks: list[ContextBlock | None] = [instructions_block(f"{PROSE_TRANSFORM_AGENT}.system", ctx)]
    operation = ctx.get("operation")
    if operation:
        content = "\n".join([f"Operation: {operation}", ctx.get("guidance") or ""]).strip()
        blocks.append(ContextBlock(id="operation", role="user", content=content, order=100))
    blocks.append(
        ContextBlock(
            id="story-summary",
            role="user",
            content="Story summary:\n" + (ctx.story.summary or "(none)"),
            order=200,
        )
    )
    source = ctx.get("source_content")
    if source:
        blocks.append(ContextBlock(id="source", role="user", content=f"Fragment context:\n{source}", order=300))
    selected = ctx.get("selected_text")
    if selected:
        content = "\n".join(
            [
                "Selected span to transform:",
                selected,
                "",
                "Context before selected span:",
                (ctx.get("context_before") or "").strip() or "(none)",
                "",
                "Context after selected span:",
                (ctx.get("context_after") or "").strip() or "(none)",
            ]
        )
        blocks.append(ContextBlock(id="selection", role="user", content=content, order=400))
    return compact_blocks(blocks)


def build_analyze_preview_context(services: Any, story_id: str) -> AgentBlockContext:
    base = build_base_preview_context(services.store, story_id)
    return AgentBlockContext(
        story=base.story,
        system_prompt_fragments=base.system_prompt_fragments,
        all_characters=services.store.list_fragments(story_id, "character"),
        all_knowledge=services.store.list_fragments(story_id, "knowledge"),
        extra={
            "new_prose": {
                "id": "pr-preview",
                "content": "(Preview: the actual prose will appear here during analysis)",
            }
        },
    )


def build_refine_preview_context(services: Any, story_id: str) -> AgentBlockContext:
    base = build_base_preview_context(services.store, story_id)
    return replace(
        base,
        system_prompt_fragments=[],
        instructions="(Preview: the actual instructions will appear during refinement)",
    )


def build_chat_preview_context(services: Any, story_id: str) -> AgentBlockContext:
    return build_base_preview_context(services.store, story_id)


def build_prose_transform_preview_context(services: Any, story_id: str) -> AgentBlockContext:
    story = services.store.get_story(story_id)
    if story is None:
        raise StoryNotFoundError(story_id)
    return AgentBlockContext(
        story=story,
        extra={
            "operation": "rewrite",
            "guidance": OPERATION_GUIDANCE["rewrite"],
            "selected_text": "(Preview: the selected text will appear here)",
            "source_content": "(Preview: the full prose fragment will appear here)",
        },
    )


# -----------------------------------------------------------------------------
# Streaming runners
# -----------------------------------------------------------------------------


def _load_fragment(request: StreamingRunRequest) -> Fragment:
    fragment_id = request.opts["fragment_id"]
    fragment = request.services.store.get_fragment(request.story_id, fragment_id)
    if fragment is None:
        raise FragmentNotFoundError(fragment_id)
    return fragment


def _validate_analyze(request: StreamingRunRequest) -> Fragment:
    fragment = _load_fragment(request)
    if fragment.type != "prose":
        raise ValueError(f"Fragment {fragment.id} is not prose")
    return fragment


def _analyze_context(request: StreamingRunRequest) -> dict[str, Any]:
    store = request.services.store
    fragment: Fragment = request.validated
    return {
        "all_characters": store.list_fragments(request.story_id, "character"),
        "all_knowledge": store.list_fragments(request.story_id, "knowledge"),
        "new_prose": {"id": fragment.id, "content": fragment.content},
    }


def _validate_refine(request: StreamingRunRequest) -> Fragment:
    fragment = _load_fragment(request)
    if fragment.type == "prose":
        raise ValueError("Cannot refine prose fragments; use a non-prose fragment")
    return fragment


def _refine_context(request: StreamingRunRequest) -> dict[str, Any]:
    return {"target_fragment": request.validated, "instructions": request.opts.get("instructions")}


def _validate_prose_transform(request: StreamingRunRequest) -> Fragment:
    fragment = _validate_analyze(request)
    if not str(request.opts.get("selected_text") or "").strip():
        raise ValueError("Selected text is required")
    return fragment


def _prose_transform_context(request: StreamingRunRequest) -> dict[str, Any]:
    opts = request.opts
    fragment: Fragment = request.validated
    operation = opts["operation"]
    if operation == "custom":
        guidance = opts.get("instruction") or CUSTOM_DEFAULT_GUIDANCE
    else:
        guidance = OPERATION_GUIDANCE[operation]
    return {
        "operation": operation,
        "guidance": guidance,
        "selected_text": opts["selected_text"].strip(),
        "source_content": (opts.get("source_content") or fragment.content).strip(),
        "context_before": opts.get("context_before"),
        "context_after": opts.get("context_after"),
    }


def _chat_messages(compiled: CompiledAgentContext, opts: Mapping[str, Any]) -> list[dict[str, str]]:
    context = find_message(compiled.messages, "user")
    messages: list[dict[str, str]] = []
    if context is not None and context.content:
        messages.append(
            {
                "role": "user",
                "content": (
                    f"Here is the current story context for reference:\n\n{context.content}\n\n"
                    "I'm ready to chat about this story. Please acknowledge briefly."
                ),
            }
        )
        messages.append({"role": "assistant", "content": CHAT_CONTEXT_ACK})
    messages.extend({"role": item["role"], "content": item["content"]} for item in opts.get("messages") or ())
    return messages


_ANALYZE_CONFIG = StreamingRunnerConfig(
    name=ANALYZE_AGENT,
    max_steps=3,
    build_context=False,
    validate=_validate_analyze,
    extra_context=_analyze_context,
)

refine_fragment = create_streaming_runner(
    StreamingRunnerConfig(
        name=REFINE_AGENT,
        max_steps=5,
        read_only=False,
        validate=_validate_refine,
        context_options=lambda opts: {"exclude_fragment_id": opts["fragment_id"]},
        extra_context=_refine_context,
    )
)

transform_prose = create_streaming_runner(
    StreamingRunnerConfig(
        name=PROSE_TRANSFORM_AGENT,
        max_steps=1,
        tool_choice="none",
        build_context=False,
        read_only="none",
        validate=_validate_prose_transform,
        extra_context=_prose_transform_context,
    )
)

librarian_chat = create_streaming_runner(
    StreamingRunnerConfig(
        name=CHAT_AGENT,
        read_only=False,
        messages=_chat_messages,
    )
)


def _save_analysis(ctx: AgentInvocationContext, fragment_id: str, collector: AnalysisCollector) -> None:
    if not collector.summary and not collector.mentions:
        return
    store = ctx.services.store
    fragment = store.get_fragment(ctx.story_id, fragment_id)
    if fragment is None:
        LOGGER.warning("Prose fragment %s disappeared before analysis was saved", fragment_id)
        return
    meta = dict(fragment.meta)
    if collector.summary:
        existing = meta.get("_librarian")
        librarian = dict(existing) if isinstance(existing, Mapping) else {}
        librarian["summary"] = collector.summary
        if collector.structured:
            librarian["structured"] = collector.structured
        meta["_librarian"] = librarian
    if collector.mentions:
        meta["annotations"] = [
            {"type": "mention", "fragmentId": mention["characterId"], "text": mention["text"]}
            for mention in collector.mentions
        ]
    store.save_fragment(ctx.story_id, fragment.with_updates(meta=meta))
    ctx.logger.debug(
        "Saved librarian metadata to %s (summary=%s, annotations=%d)",
        fragment_id,
        bool(collector.summary),
        len(collector.mentions),
    )


async def analyze_fragment(ctx: AgentInvocationContext, input: Mapping[str, Any]) -> dict[str, Any]:
    """Analyze one prose fragment and store the findings on it.

    Returns:
        ``{"fragment_id", "summary", "mentions"}`` plus the collected
        contradictions, knowledge suggestions, timeline events and directions.
    """
    collector = AnalysisCollector()
    config = replace(_ANALYZE_CONFIG, tools=lambda _request, _tools: create_analysis_tools(collector))
    run = create_streaming_runner(config)
    stream = await run(ctx.data_dir, ctx.story_id, input, services=ctx.services)
    completion = await stream.completion

    if not collector.summary and completion.text.strip():
        collector.summary = completion.text.strip()
    _save_analysis(ctx, input["fragment_id"], collector)
    ctx.logger.info("Analysis of %s finished in %d step(s)", input["fragment_id"], completion.step_count)
    return {
        "fragment_id": input["fragment_id"],
        "summary": collector.summary,
        "mentions": list(collector.mentions),
        **collector.findings(),
    }


async def _run_refine(ctx: AgentInvocationContext, input: dict[str, Any]) -> Any:
    return await refine_fragment(ctx.data_dir, ctx.story_id, input, services=ctx.services)


async def _run_chat(ctx: AgentInvocationContext, input: dict[str, Any]) -> Any:
    return await librarian_chat(ctx.data_dir, ctx.story_id, input, services=ctx.services)


async def _run_prose_transform(ctx: AgentInvocationContext, input: dict[str, Any]) -> Any:
    return await transform_prose(ctx.data_dir, ctx.story_id, input, services=ctx.services)


_CHAT_MESSAGE = object_schema(
    {"role": {"enum": ["user", "assistant"]}, "content": {"type": "string"}},
    required=("role", "content"),
)
_MAX_STEPS = {"type": "integer", "minimum": 1}

ANALYZE_DEFINITION = AgentDefinition(
    name=ANALYZE_AGENT,
    description="Analyze a prose fragment for continuity signals and summary updates.",
    input_schema=object_schema({"fragment_id": {"type": "string", "minLength": 1}}, required=("fragment_id",)),
    output_schema=object_schema(
        {
            "fragment_id": {"type": "string"},
            "summary": {"type": "string"},
            "mentions": {"type": "array"},
            "contradictions": {"type": "array"},
            "knowledge_suggestions": {"type": "array"},
            "timeline_events": {"type": "array"},
            "directions": {"type": "array"},
        },
        required=("fragment_id", "summary", "mentions"),
    ),
    run=analyze_fragment,
)

REFINE_DEFINITION = AgentDefinition(
    name=REFINE_AGENT,
    description="Refine a non-prose fragment using story context and fragment tools.",
    input_schema=object_schema(
        {
            "fragment_id": {"type": "string", "minLength": 1},
            "instructions": {"type": "string"},
            "max_steps": _MAX_STEPS,
        },
        required=("fragment_id",),
    ),
    run=_run_refine,
    allowed_calls=(ANALYZE_AGENT,),
)

CHAT_DEFINITION = AgentDefinition(
    name=CHAT_AGENT,
    description="Conversational librarian assistant with write-enabled tools.",
    input_schema=object_schema(
        {"messages": {"type": "array", "items": _CHAT_MESSAGE}, "max_steps": _MAX_STEPS},
        required=("messages",),
    ),
    run=_run_chat,
    allowed_calls=(REFINE_AGENT, ANALYZE_AGENT),
)

PROSE_TRANSFORM_DEFINITION = AgentDefinition(
    name=PROSE_TRANSFORM_AGENT,
    description="Rewrite, expand or compress a selected span of prose.",
    input_schema=object_schema(
        {
            "fragment_id": {"type": "string", "minLength": 1},
            "selected_text": {"type": "string", "minLength": 1},
            "operation": {"enum": list(PROSE_OPERATIONS)},
            "instruction": {"type": "string"},
            "source_content": {"type": "string"},
            "context_before": {"type": "string"},
            "context_after": {"type": "string"},
        },
        required=("fragment_id", "selected_text", "operation"),
    ),
    run=_run_prose_transform,
)


def register() -> None:
    INSTRUCTION_REGISTRY.register_default(f"{ANALYZE_AGENT}.system", ANALYZE_SYSTEM_PROMPT.strip())
    INSTRUCTION_REGISTRY.register_default(f"{REFINE_AGENT}.system", REFINE_SYSTEM_PROMPT.strip())
    INSTRUCTION_REGISTRY.register_default(f"{CHAT_AGENT}.system", CHAT_SYSTEM_PROMPT.strip())
    INSTRUCTION_REGISTRY.register_default(
        f"{PROSE_TRANSFORM_AGENT}.system", PROSE_TRANSFORM_SYSTEM_PROMPT.strip()
    )

    for definition in (ANALYZE_DEFINITION, REFINE_DEFINITION, CHAT_DEFINITION, PROSE_TRANSFORM_DEFINITION):
        AGENT_REGISTRY.register(definition)

    ROLE_REGISTRY.register(ModelRoleDefinition("librarian", "Librarian", "Background analysis and summaries"))
    ROLE_REGISTRY.register(
        ModelRoleDefinition(PROSE_TRANSFORM_AGENT, "Prose Transform", "Rewrite, expand or compress selected prose")
    )

    BLOCK_REGISTRY.register(
        AgentBlockDefinition(
            agent_name=ANALYZE_AGENT,
            display_name="Librarian Analyze",
            description="Analyzes prose fragments for continuity signals and summary updates.",
            create_default_blocks=create_analyze_blocks,
            build_preview_context=build_analyze_preview_context,
            available_tools=ANALYSIS_TOOLS,
        )
    )
    BLOCK_REGISTRY.register(
        AgentBlockDefinition(
            agent_name=REFINE_AGENT,
            display_name="Librarian Refine",
            description="Refines non-prose fragments using story context and fragment tools.",
            create_default_blocks=create_refine_blocks,
            build_preview_context=build_refine_preview_context,
            available_tools=WRITE_TOOLS,
        )
    )
    BLOCK_REGISTRY.register(
        AgentBlockDefinition(
            agent_name=CHAT_AGENT,
            display_name="Librarian Chat",
            description="Conversational librarian assistant with write-enabled fragment tools.",
            create_default_blocks=create_chat_blocks,
            build_preview_context=build_chat_preview_context,
            available_tools=WRITE_TOOLS,
        )
    )
    BLOCK_REGISTRY.register(
        AgentBlockDefinition(
            agent_name=PROSE_TRANSFORM_AGENT,
            display_name="Prose Transform",
            description="Rewrites, expands or compresses a selected span of prose.",
            create_default_blocks=create_prose_transform_blocks,
            build_preview_context=build_prose_transform_preview_context,
        )
    )
