"""Tests for story context loading and the fragment tool set."""

from __future__ import annotations

import pytest

from errata.context_state import build_context_state
from errata.errors import StoryNotFoundError
from errata.storage.stories import FileStoryStore
from errata.storage.types import Fragment, StoryMeta
from errata.tools.fragment_tools import create_fragment_tools, pluralize, tool_name_for_type
from errata.tools.types import ToolArgumentError, filter_tools
from tests.conftest import STORY_ID


def _ids(fragments) -> list[str]:
    return [fragment.id for fragment in fragments]


class TestContextState:
    """Prose selection and sticky/shortlist split."""

    def test_prose_sorted_and_references_split(self, store: FileStoryStore, story: StoryMeta) -> None:
        state = build_context_state(store, STORY_ID)

        assert _ids(state.prose_fragments) == ["pr-one", "pr-two"]
        assert _ids(state.sticky_characters) == ["ch-mara"]
        assert _ids(state.character_shortlist) == ["ch-tom"]
        assert _ids(state.sticky_guidelines) == ["gl-tone"]
        assert "gl-system" in _ids(state.guideline_shortlist)
        assert _ids(state.knowledge_shortlist) == ["kn-bay"]

    def test_limit_keeps_the_latest(self, store: FileStoryStore, story: StoryMeta) -> None:
        assert _ids(build_context_state(store, STORY_ID, prose_limit=1).prose_fragments) == ["pr-two"]
        assert build_context_state(store, STORY_ID, prose_limit=0).prose_fragments == []

    def test_exclude_and_story_point(self, store: FileStoryStore, story: StoryMeta) -> None:
        assert _ids(build_context_state(store, STORY_ID, exclude_fragment_id="pr-one").prose_fragments) == ["pr-two"]
        assert _ids(build_context_state(store, STORY_ID, prose_before_fragment_id="pr-two").prose_fragments) == [
            "pr-one"
        ]

    def test_prose_chain_skips_missing_entries(self, store: FileStoryStore, story: StoryMeta) -> None:
        story.prose_chain = ["pr-two", "pr-missing"]
        store.save_story(story)

        assert _ids(build_context_state(store, STORY_ID).prose_fragments) == ["pr-two"]

    def test_unknown_story(self, store: FileStoryStore) -> None:
        with pytest.raises(StoryNotFoundError):
            build_context_state(store, "nope")


class TestToolNaming:
    """Per-type tool names."""

    def test_pluralize(self) -> None:
        assert pluralize("Character") == "Characters"
        assert pluralize("Prose") == "Prose"
        assert pluralize("Knowledge") == "Knowledge"

    def test_tool_name_for_type(self) -> None:
        assert tool_name_for_type("guideline") == "Guideline"


class TestFragmentTools:
    """Lookups and write tools over the story store."""

    def test_read_only_set(self, store: FileStoryStore, story: StoryMeta) -> None:
        tools = create_fragment_tools(store, STORY_ID)

        assert {"getCharacter", "listCharacters", "getProse", "listProse", "listKnowledge", "getFragment"} <= set(tools)
        assert not any(tool.spec.is_write for tool in tools.values())
        assert "createFragment" not in tools

    def test_write_set(self, store: FileStoryStore, story: StoryMeta) -> None:
        tools = create_fragment_tools(store, STORY_ID, read_only=False)

        assert {"createFragment", "updateFragment", "editFragment", "deleteFragment"} <= set(tools)

    @pytest.mark.asyncio
    async def test_get_and_not_found(self, store: FileStoryStore, story: StoryMeta) -> None:
        tools = create_fragment_tools(store, STORY_ID)

        found = await tools["getCharacter"].execute({"id": "ch-mara"})
        missing = await tools["getCharacter"].execute({"id": "ch-nobody"})

        assert found["content"] == "Stubborn, kind, afraid of the sea."
        assert missing == {"error": "Fragment not found: ch-nobody"}

    @pytest.mark.asyncio
    async def test_list_and_search(self, store: FileStoryStore, story: StoryMeta) -> None:
        tools = create_fragment_tools(store, STORY_ID)

        listed = await tools["listCharacters"].execute({})
        search = await tools["searchFragments"].execute({"query": "LETTER"})

        assert [item["id"] for item in listed["fragments"]] == ["ch-mara", "ch-tom"]
        assert {match["id"] for match in search["matches"]} == {"pr-two"}
        assert "letter" in search["matches"][0]["snippet"]

    @pytest.mark.asyncio
    async def test_arguments_are_validated(self, store: FileStoryStore, story: StoryMeta) -> None:
        tools = create_fragment_tools(store, STORY_ID)

        with pytest.raises(ToolArgumentError):
            await tools["getFragment"].execute({"identifier": "ch-mara"})

    @pytest.mark.asyncio
    async def test_create_edit_delete(self, store: FileStoryStore, story: StoryMeta) -> None:
        tools = create_fragment_tools(store, STORY_ID, read_only=False)

        created = await tools["createFragment"].execute(
            {"type": "knowledge", "name": "Fog Horn", "content": "It sounds at midnight."}
        )
        fragment_id = created["id"]
        assert fragment_id.startswith("kn-")

        edited = await tools["editFragment"].execute(
            {"fragmentId": fragment_id, "oldText": "midnight", "newText": "dawn"}
        )
        assert edited == {"ok": True, "id": fragment_id}
        assert store.get_fragment(STORY_ID, fragment_id).content == "It sounds at dawn."

        missing_text = await tools["editFragment"].execute(
            {"fragmentId": fragment_id, "oldText": "noon", "newText": "x"}
        )
        assert "error" in missing_text

        assert await tools["deleteFragment"].execute({"fragmentId": fragment_id}) == {"ok": True, "id": fragment_id}
        assert store.get_fragment(STORY_ID, fragment_id) is None

    @pytest.mark.asyncio
    async def test_update_keeps_identity(self, store: FileStoryStore, story: StoryMeta) -> None:
        tools = create_fragment_tools(store, STORY_ID, read_only=False)

        await tools["updateFragment"].execute(
            {"fragmentId": "kn-bay", "newContent": "Jagged rocks.", "newDescription": "Dangerous inlet"}
        )

        fragment = store.get_fragment(STORY_ID, "kn-bay")
        assert (fragment.name, fragment.content, fragment.description) == ("The Bay", "Jagged rocks.", "Dangerous inlet")

    def test_filter_tools(self, store: FileStoryStore, story: StoryMeta) -> None:
        tools = create_fragment_tools(store, STORY_ID)
        subset = {name: tools[name] for name in ("getFragment", "listFragments", "searchFragments", "listFragmentTypes", "getProse")}

        filtered = filter_tools(subset, ["searchFragments", "notATool"])

        assert len(filtered) == 4
        assert "searchFragments" not in filtered
        assert len(subset) == 5

    def test_prose_fragment_round_trip_through_store(self, store: FileStoryStore, story: StoryMeta) -> None:
        store.save_fragment(STORY_ID, Fragment(id="pr-three", type="prose", name="Three", content="Dawn.", order=3))

        assert _ids(build_context_state(store, STORY_ID).prose_fragments)[-1] == "pr-three"
