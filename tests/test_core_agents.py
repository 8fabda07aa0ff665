"""Tests for the built-in agents: librarian, character chat, directions and chapters."""

from __future__ import annotations

import json

import pytest

from errata.agents.bootstrap import ensure_core_agents_registered
from errata.agents.core.chapters import SUMMARIZE_AGENT, chapter_prose
from errata.agents.core.character_chat import CHARACTER_CHAT_AGENT, build_persona_description
from errata.agents.core.directions import SUGGEST_AGENT, build_suggest_prompt, parse_suggestions
from errata.agents.core.librarian import (
    ANALYZE_AGENT,
    CHAT_AGENT,
    CHAT_CONTEXT_ACK,
    PROSE_TRANSFORM_AGENT,
    REFINE_AGENT,
    AnalysisCollector,
    create_analysis_tools,
)
from errata.agents.registry import AGENT_REGISTRY
from errata.agents.runner import invoke_agent
from errata.blocks.context import compile_agent_context
from errata.blocks.registry import BLOCK_REGISTRY
from errata.errors import AgentValidationError, FragmentNotFoundError
from errata.services.container import Services
from errata.storage.types import Fragment, StoryMeta, StorySettings
from errata.tools.types import ToolArgumentError
from tests.conftest import STORY_ID
from tests.helpers import FakeModelClient, finish, text, tool_call

pytestmark = pytest.mark.usefixtures("core_agents")

CORE_AGENTS = (
    "generation.write",
    ANALYZE_AGENT,
    REFINE_AGENT,
    CHAT_AGENT,
    PROSE_TRANSFORM_AGENT,
    CHARACTER_CHAT_AGENT,
    SUGGEST_AGENT,
    SUMMARIZE_AGENT,
)


class TestBootstrap:
    """Registration of the built-in agents."""

    def test_all_core_agents_registered(self) -> None:
        for name in CORE_AGENTS:
            assert name in AGENT_REGISTRY
            assert name in BLOCK_REGISTRY

    def test_registration_is_idempotent(self) -> None:
        before = len(AGENT_REGISTRY)

        ensure_core_agents_registered()
        ensure_core_agents_registered()

        assert len(AGENT_REGISTRY) == before

    def test_call_whitelists(self) -> None:
        assert AGENT_REGISTRY.get(CHAT_AGENT).allowed_calls == (REFINE_AGENT, ANALYZE_AGENT)
        assert AGENT_REGISTRY.get(REFINE_AGENT).allowed_calls == (ANALYZE_AGENT,)
        assert AGENT_REGISTRY.get("generation.write").allowed_calls == ()
        assert AGENT_REGISTRY.get(ANALYZE_AGENT).allowed_calls is None

    @pytest.mark.parametrize("agent_name", CORE_AGENTS)
    def test_preview_contexts_compile(self, services: Services, agent_name: str) -> None:
        definition = BLOCK_REGISTRY.get(agent_name)
        context = definition.build_preview_context(services, STORY_ID)

        compiled = compile_agent_context(services.store, STORY_ID, agent_name, context, {})

        assert compiled.messages
        assert compiled.messages[0].role == "system"


class TestAnalysisTools:
    """The collector tools the analysis model reports through."""

    @pytest.mark.asyncio
    async def test_last_summary_wins(self) -> None:
        collector = AnalysisCollector()
        tools = create_analysis_tools(collector)

        await tools["updateSummary"].execute({"summary": "First."})
        await tools["updateSummary"].execute({"summary": "Second.", "events": ["a", "a", " b "]})

        assert collector.summary == "Second."
        assert collector.structured["events"] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_structured_only_summary_is_rendered(self) -> None:
        collector = AnalysisCollector()
        tools = create_analysis_tools(collector)

        await tools["updateSummary"].execute({"summary": "", "openThreads": ["Who wrote the letter?"]})

        assert collector.summary == "Open threads: Who wrote the letter?"

    @pytest.mark.asyncio
    async def test_empty_summary_is_an_error(self) -> None:
        collector = AnalysisCollector()
        tools = create_analysis_tools(collector)

        result = await tools["updateSummary"].execute({"summary": "  "})

        assert "error" in result
        assert collector.summary == ""

    @pytest.mark.asyncio
    async def test_mentions_deduplicate_by_character(self) -> None:
        collector = AnalysisCollector()
        tools = create_analysis_tools(collector)

        await tools["reportMentions"].execute(
            {"mentions": [{"characterId": "ch-mara", "text": "Mara"}, {"characterId": "ch-mara", "text": "the keeper"}]}
        )
        await tools["reportMentions"].execute({"mentions": [{"characterId": "ch-tom", "text": "Tom"}]})

        assert collector.mentions == [
            {"characterId": "ch-mara", "text": "Mara"},
            {"characterId": "ch-tom", "text": "Tom"},
        ]

    @pytest.mark.asyncio
    async def test_contradictions_and_timeline_accumulate(self) -> None:
        collector = AnalysisCollector()
        tools = create_analysis_tools(collector)

        await tools["reportContradictions"].execute(
            {"contradictions": [{"description": "Mara fears the sea but swims out", "fragmentIds": ["ch-mara"]}]}
        )
        await tools["reportContradictions"].execute(
            {"contradictions": [{"description": "The bay is sandy", "fragmentIds": ["kn-bay", "pr-two"]}]}
        )
        result = await tools["reportTimeline"].execute(
            {
                "events": [
                    {"event": "The storm arrives", "position": "before"},
                    {"event": "Letter read", "position": "after"},
                ]
            }
        )

        assert result == {"ok": True}
        assert [item["fragmentIds"] for item in collector.contradictions] == [["ch-mara"], ["kn-bay", "pr-two"]]
        assert [item["position"] for item in collector.timeline_events] == ["before", "after"]

    @pytest.mark.asyncio
    async def test_knowledge_suggestions_keep_first_per_type_and_name(self) -> None:
        collector = AnalysisCollector()
        tools = create_analysis_tools(collector)

        await tools["suggestKnowledge"].execute(
            {
                "suggestions": [
                    {"type": "knowledge", "name": "The Letter", "description": "Unsigned", "content": "Old paper."},
                    {"type": "character", "name": "The Letter", "description": "?", "content": "?"},
                ]
            }
        )
        await tools["suggestKnowledge"].execute(
            {
                "suggestions": [
                    {"type": "knowledge", "name": " the letter ", "description": "Later", "content": "Ignored."},
                    {
                        "type": "character",
                        "targetFragmentId": "ch-mara",
                        "name": "Mara",
                        "description": "The keeper",
                        "content": "Braver now.",
                    },
                ]
            }
        )

        assert [(item["type"], item["name"]) for item in collector.knowledge_suggestions] == [
            ("knowledge", "The Letter"),
            ("character", "The Letter"),
            ("character", "Mara"),
        ]
        assert collector.knowledge_suggestions[0]["content"] == "Old paper."
        assert "targetFragmentId" not in collector.knowledge_suggestions[0]
        assert collector.knowledge_suggestions[2]["targetFragmentId"] == "ch-mara"

    @pytest.mark.asyncio
    async def test_directions_are_replaced(self) -> None:
        collector = AnalysisCollector()
        tools = create_analysis_tools(collector)

        def directions(*titles: str) -> dict:
            return {
                "directions": [
                    {"title": title, "description": f"{title}.", "instruction": f"Write {title}."} for title in titles
                ]
            }

        await tools["suggestDirections"].execute(directions("Storm", "Letter", "Tom"))
        await tools["suggestDirections"].execute(directions("Dawn", "Sea", "Lamp", "Boat"))

        assert [item["title"] for item in collector.directions] == ["Dawn", "Sea", "Lamp", "Boat"]

    @pytest.mark.asyncio
    async def test_directions_need_three_to_five(self) -> None:
        collector = AnalysisCollector()
        tools = create_analysis_tools(collector)

        with pytest.raises(ToolArgumentError):
            await tools["suggestDirections"].execute(
                {"directions": [{"title": "Only", "description": "One.", "instruction": "Write it."}]}
            )
        assert collector.directions == []


class TestLibrarianAnalyze:
    """Analysis writes its findings onto the prose fragment."""

    @pytest.mark.asyncio
    async def test_summary_and_mentions_are_saved(self, services: Services, fake_client: FakeModelClient) -> None:
        fake_client.queue(
            [
                tool_call(
                    "updateSummary",
                    {"summary": "Mara reads the letter.", "events": ["The letter is opened"]},
                    call_id="c1",
                ),
                tool_call(
                    "reportMentions",
                    {"mentions": [{"characterId": "ch-mara", "text": "Mara"}]},
                    call_id="c2",
                    index=1,
                ),
                tool_call(
                    "reportTimeline",
                    {"events": [{"event": "Mara opens the letter", "position": "after"}]},
                    call_id="c3",
                    index=2,
                ),
                finish("tool_calls"),
            ],
            [text("Analysis complete"), finish("stop")],
        )

        result = await invoke_agent(services, STORY_ID, ANALYZE_AGENT, {"fragment_id": "pr-two"})

        assert result.output == {
            "fragment_id": "pr-two",
            "summary": "Mara reads the letter.",
            "mentions": [{"characterId": "ch-mara", "text": "Mara"}],
            "contradictions": [],
            "knowledge_suggestions": [],
            "timeline_events": [{"event": "Mara opens the letter", "position": "after"}],
            "directions": [],
        }
        fragment = services.store.get_fragment(STORY_ID, "pr-two")
        assert fragment.librarian_summary == "Mara reads the letter."
        assert fragment.meta["_librarian"]["structured"]["events"] == ["The letter is opened"]
        assert fragment.meta["annotations"] == [{"type": "mention", "fragmentId": "ch-mara", "text": "Mara"}]

        first_call = fake_client.calls[0]
        assert {tool["function"]["name"] for tool in first_call["tools"]} == {
            "updateSummary",
            "reportMentions",
            "reportContradictions",
            "suggestKnowledge",
            "reportTimeline",
            "suggestDirections",
        }
        user = first_call["messages"][1]["content"]
        assert "## Known Characters" in user
        assert "- ch-mara: Mara - The lighthouse keeper" in user
        assert "Fragment ID: pr-two\nMara unfolded the letter." in user

    @pytest.mark.asyncio
    async def test_final_text_is_the_fallback_summary(self, services: Services, fake_client: FakeModelClient) -> None:
        fake_client.queue([text("A quiet evening."), finish("stop")])

        result = await invoke_agent(services, STORY_ID, ANALYZE_AGENT, {"fragment_id": "pr-one"})

        assert result.output["summary"] == "A quiet evening."
        assert services.store.get_fragment(STORY_ID, "pr-one").librarian_summary == "A quiet evening."

    @pytest.mark.asyncio
    async def test_rejects_non_prose(self, services: Services) -> None:
        with pytest.raises(ValueError, match="not prose"):
            await invoke_agent(services, STORY_ID, ANALYZE_AGENT, {"fragment_id": "ch-mara"})

    @pytest.mark.asyncio
    async def test_missing_fragment(self, services: Services) -> None:
        with pytest.raises(FragmentNotFoundError):
            await invoke_agent(services, STORY_ID, ANALYZE_AGENT, {"fragment_id": "pr-gone"})


class TestLibrarianRefine:
    """Refinement of non-prose fragments with write tools."""

    @pytest.mark.asyncio
    async def test_refine_edits_the_target(self, services: Services, fake_client: FakeModelClient) -> None:
        fake_client.queue(
            [
                tool_call("editFragment", {"fragmentId": "ch-mara", "oldText": "kind", "newText": "gentle"}),
                finish("tool_calls"),
            ],
            [text("Softened her description."), finish("stop")],
        )

        result = await invoke_agent(
            services, STORY_ID, REFINE_AGENT, {"fragment_id": "ch-mara", "instructions": "Make her gentler"}
        )
        completion = await result.output.completion

        assert completion.text == "Softened her description."
        assert services.store.get_fragment(STORY_ID, "ch-mara").content == "Stubborn, gentle, afraid of the sea."
        user = fake_client.calls[0]["messages"][1]["content"]
        assert 'Target fragment to refine: ch-mara (type: character, name: "Mara")' in user
        assert "User instructions: Make her gentler" in user

    @pytest.mark.asyncio
    async def test_default_guidance_without_instructions(
        self, services: Services, fake_client: FakeModelClient
    ) -> None:
        result = await invoke_agent(services, STORY_ID, REFINE_AGENT, {"fragment_id": "gl-tone"})
        await result.output.completion

        assert "No specific instructions provided." in fake_client.last_messages[1]["content"]

    @pytest.mark.asyncio
    async def test_rejects_prose(self, services: Services) -> None:
        with pytest.raises(ValueError, match="Cannot refine prose"):
            await invoke_agent(services, STORY_ID, REFINE_AGENT, {"fragment_id": "pr-one"})

    @pytest.mark.asyncio
    async def test_missing_fragment(self, services: Services) -> None:
        with pytest.raises(FragmentNotFoundError, match="Fragment ch-ghost not found"):
            await invoke_agent(services, STORY_ID, REFINE_AGENT, {"fragment_id": "ch-ghost"})


class TestLibrarianChat:
    """Conversation seeded with the story context."""

    @pytest.mark.asyncio
    async def test_context_then_history(self, services: Services, fake_client: FakeModelClient) -> None:
        history = [
            {"role": "user", "content": "Who is Mara?"},
            {"role": "assistant", "content": "The keeper."},
            {"role": "user", "content": "Make her braver."},
        ]

        result = await invoke_agent(services, STORY_ID, CHAT_AGENT, {"messages": history})
        await result.output.completion

        messages = fake_client.last_messages
        assert messages[0]["role"] == "system"
        assert messages[1]["role"] == "user"
        assert messages[1]["content"].startswith("Here is the current story context for reference:")
        assert "## Prose Fragments (use getFragment to read/edit)" in messages[1]["content"]
        assert messages[2] == {"role": "assistant", "content": CHAT_CONTEXT_ACK}
        assert messages[3:] == history
        assert "createFragment" in {tool["function"]["name"] for tool in fake_client.calls[0]["tools"]}


class TestProseTransform:
    """Rewriting a selected span of prose."""

    @pytest.mark.asyncio
    async def test_rewrite_prompt_and_reply(self, services: Services, fake_client: FakeModelClient) -> None:
        fake_client.queue([text("The gale arrived as the light failed."), finish("stop")])

        result = await invoke_agent(
            services,
            STORY_ID,
            PROSE_TRANSFORM_AGENT,
            {
                "fragment_id": "pr-one",
                "selected_text": " The storm rolled in at dusk. ",
                "operation": "rewrite",
                "context_after": "  ",
            },
        )
        completion = await result.output.completion

        assert completion.text == "The gale arrived as the light failed."
        call = fake_client.calls[0]
        assert call["tools"] is None
        assert call["messages"][0]["content"].startswith("You transform selected prose spans")
        user = call["messages"][1]["content"]
        assert user.startswith("Operation: rewrite\nRewrite the selected span for clarity")
        assert "Story summary:\nMara found a letter in the lamp room." in user
        assert "Fragment context:\nThe storm rolled in at dusk." in user
        assert "Selected span to transform:\nThe storm rolled in at dusk.\n" in user
        assert "Context before selected span:\n(none)" in user
        assert "Context after selected span:\n(none)" in user

    @pytest.mark.asyncio
    async def test_custom_operation_uses_instruction(self, services: Services, fake_client: FakeModelClient) -> None:
        result = await invoke_agent(
            services,
            STORY_ID,
            PROSE_TRANSFORM_AGENT,
            {
                "fragment_id": "pr-two",
                "selected_text": "Mara unfolded the letter.",
                "operation": "custom",
                "instruction": "Make it ominous.",
                "context_before": "The storm rolled in at dusk.",
            },
        )
        await result.output.completion

        user = fake_client.last_messages[1]["content"]
        assert user.startswith("Operation: custom\nMake it ominous.")
        assert "Context before selected span:\nThe storm rolled in at dusk." in user

    @pytest.mark.asyncio
    async def test_rejects_non_prose(self, services: Services) -> None:
        with pytest.raises(ValueError, match="Fragment ch-mara is not prose"):
            await invoke_agent(
                services,
                STORY_ID,
                PROSE_TRANSFORM_AGENT,
                {"fragment_id": "ch-mara", "selected_text": "kind", "operation": "expand"},
            )

    @pytest.mark.asyncio
    async def test_blank_selection(self, services: Services) -> None:
        with pytest.raises(ValueError, match="Selected text is required"):
            await invoke_agent(
                services,
                STORY_ID,
                PROSE_TRANSFORM_AGENT,
                {"fragment_id": "pr-one", "selected_text": "   ", "operation": "compress"},
            )

    @pytest.mark.asyncio
    async def test_unknown_operation(self, services: Services) -> None:
        with pytest.raises(AgentValidationError):
            await invoke_agent(
                services,
                STORY_ID,
                PROSE_TRANSFORM_AGENT,
                {"fragment_id": "pr-one", "selected_text": "storm", "operation": "translate"},
            )


def _add_chapters(services: Services) -> None:
    store = services.store
    for fragment in (
        Fragment(id="mk-one", type="marker", name="Chapter 1", description="Arrival"),
        Fragment(id="mk-two", type="marker", name="Chapter 2", description="The letter"),
        Fragment(id="mk-empty", type="marker", name="Chapter 3"),
    ):
        store.save_fragment(STORY_ID, fragment)
    story = store.get_story(STORY_ID)
    chain = ["mk-one", "pr-one", "pr-missing", "mk-two", "pr-two", "mk-empty"]
    store.save_story(StoryMeta.from_dict({**story.to_dict(), "prose_chain": chain}))


class TestChapterSummarize:
    """Summaries written onto chapter markers."""

    def test_chapter_prose_stops_at_next_marker(self, services: Services) -> None:
        _add_chapters(services)
        story = services.store.get_story(STORY_ID)

        assert [item.id for item in chapter_prose(services.store, story, "mk-one")] == ["pr-one"]
        assert [item.id for item in chapter_prose(services.store, story, "mk-two")] == ["pr-two"]
        assert chapter_prose(services.store, story, "mk-empty") == []

    @pytest.mark.asyncio
    async def test_summary_is_saved_on_the_marker(self, services: Services, fake_client: FakeModelClient) -> None:
        _add_chapters(services)
        fake_client.queue([text("  A storm gathers over the lighthouse.  "), finish("stop")])

        result = await invoke_agent(services, STORY_ID, SUMMARIZE_AGENT, {"fragment_id": "mk-one"})

        assert result.output["summary"] == "A storm gathers over the lighthouse."
        assert result.output["model_id"] == "test-model"
        marker = services.store.get_fragment(STORY_ID, "mk-one")
        assert marker.content == "A storm gathers over the lighthouse."
        assert marker.name == "Chapter 1"
        call = fake_client.calls[0]
        assert call["tools"] is None
        assert call["messages"][0]["content"].startswith("You are a story summarizer")
        assert call["messages"][1]["content"] == "Summarize this chapter:\n\nThe storm rolled in at dusk."

    @pytest.mark.asyncio
    async def test_markers_do_not_reach_other_agents_as_prose(
        self, services: Services, fake_client: FakeModelClient
    ) -> None:
        _add_chapters(services)

        result = await invoke_agent(services, STORY_ID, REFINE_AGENT, {"fragment_id": "gl-tone"})
        await result.output.completion

        user = fake_client.last_messages[1]["content"]
        assert "(pr-one)" in user
        assert "mk-one" not in user

    @pytest.mark.asyncio
    async def test_empty_chapter(self, services: Services) -> None:
        _add_chapters(services)

        with pytest.raises(ValueError, match="No prose content in this chapter"):
            await invoke_agent(services, STORY_ID, SUMMARIZE_AGENT, {"fragment_id": "mk-empty"})

    @pytest.mark.asyncio
    async def test_marker_outside_chain(self, services: Services) -> None:
        services.store.save_fragment(STORY_ID, Fragment(id="mk-loose", type="marker", name="Loose"))

        with pytest.raises(ValueError, match="Marker not found in prose chain"):
            await invoke_agent(services, STORY_ID, SUMMARIZE_AGENT, {"fragment_id": "mk-loose"})

    @pytest.mark.asyncio
    async def test_rejects_non_marker(self, services: Services) -> None:
        with pytest.raises(ValueError, match="not a chapter marker"):
            await invoke_agent(services, STORY_ID, SUMMARIZE_AGENT, {"fragment_id": "pr-one"})

    @pytest.mark.asyncio
    async def test_missing_marker(self, services: Services) -> None:
        with pytest.raises(FragmentNotFoundError):
            await invoke_agent(services, STORY_ID, SUMMARIZE_AGENT, {"fragment_id": "mk-ghost"})


class TestCharacterChat:
    """In-character conversation."""

    @pytest.mark.asyncio
    async def test_persona_and_story_point(self, services: Services, fake_client: FakeModelClient) -> None:
        result = await invoke_agent(
            services,
            STORY_ID,
            CHARACTER_CHAT_AGENT,
            {
                "character_id": "ch-mara",
                "persona": {"type": "character", "character_id": "ch-tom"},
                "story_point_fragment_id": "pr-two",
                "messages": [{"role": "user", "content": "Evening, Mara."}],
            },
        )
        await result.output.completion

        system, user = fake_client.last_messages
        assert system["role"] == "system"
        assert "You are roleplaying as Mara." in system["content"]
        assert "You are speaking with Tom. A fisherman" in system["content"]
        assert "- pr-one:" in system["content"]
        assert "pr-two" not in system["content"]
        assert "Respond as Mara would" in system["content"]
        assert user == {"role": "user", "content": "Evening, Mara."}

    @pytest.mark.asyncio
    async def test_unknown_character(self, services: Services) -> None:
        with pytest.raises(FragmentNotFoundError, match="Character kn-bay not found"):
            await invoke_agent(
                services,
                STORY_ID,
                CHARACTER_CHAT_AGENT,
                {"character_id": "kn-bay", "persona": {"type": "stranger"}, "messages": []},
            )

    @pytest.mark.asyncio
    async def test_persona_must_match_a_variant(self, services: Services) -> None:
        with pytest.raises(AgentValidationError):
            await invoke_agent(
                services,
                STORY_ID,
                CHARACTER_CHAT_AGENT,
                {"character_id": "ch-mara", "persona": {"type": "custom"}, "messages": []},
            )

    def test_persona_descriptions(self) -> None:
        assert build_persona_description({"type": "stranger"}).startswith("You are speaking with a stranger")
        assert build_persona_description({"type": "custom", "prompt": "a tired sailor"}) == (
            "You are speaking with someone described as: a tired sailor"
        )
        assert build_persona_description({"type": "character"}, "Tom", "A fisherman") == (
            "You are speaking with Tom. A fisherman"
        )


class TestDirections:
    """Story direction suggestions."""

    def test_parse_plain_and_fenced(self) -> None:
        payload = [{"title": "Storm", "description": "d", "instruction": "i"}]

        assert parse_suggestions(json.dumps(payload)) == payload
        assert parse_suggestions(f"```json\n{json.dumps(payload)}\n```") == payload

    def test_parse_rejects_non_array(self) -> None:
        with pytest.raises(ValueError, match="not a JSON array"):
            parse_suggestions('{"title": "x"}')

    def test_prompt_uses_story_template(self) -> None:
        story = StoryMeta(id="s", name="S", settings=StorySettings(guided_suggest_prompt="Give {{count}} ideas"))

        assert build_suggest_prompt(story, 3) == "Give 3 ideas"
        assert "exactly 4 possible directions" in build_suggest_prompt(None, None)

    @pytest.mark.asyncio
    async def test_suggest_returns_parsed_suggestions(self, services: Services, fake_client: FakeModelClient) -> None:
        suggestions = [
            {"title": "The Second Letter", "description": "Another letter arrives.", "instruction": "Write it."},
            {"title": "Tom's Secret", "description": "Tom lies.", "instruction": "Reveal it."},
        ]
        fake_client.queue([text("```json\n"), text(json.dumps(suggestions)), text("\n```"), finish("stop")])

        result = await invoke_agent(services, STORY_ID, SUGGEST_AGENT, {"count": 2})

        assert result.output["suggestions"] == suggestions
        assert result.output["model_id"] == "test-model"
        assert result.output["duration_ms"] >= 0
        call = fake_client.calls[0]
        assert call["tools"] is None
        assert call["messages"][-1]["content"].startswith("Based on everything in the story so far, suggest exactly 2")
        assert "## Recent Prose" in call["messages"][-2]["content"]

    @pytest.mark.asyncio
    async def test_unparseable_reply_fails(self, services: Services, fake_client: FakeModelClient) -> None:
        fake_client.queue([text("Here are some ideas!"), finish("stop")])

        with pytest.raises(ValueError):
            await invoke_agent(services, STORY_ID, SUGGEST_AGENT, {})

        assert services.traces.list_runs(STORY_ID)[0].status == "error"
