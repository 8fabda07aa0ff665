"""Load the fragments a story's agents build their context from."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from .errors import StoryNotFoundError
from .storage.stories import StoryStore
from .storage.types import MARKER_TYPE, Fragment, StoryMeta

__all__ = ["ContextState", "DEFAULT_PROSE_LIMIT", "build_context_state"]

LOGGER = logging.getLogger(__name__)

DEFAULT_PROSE_LIMIT = 10


@dataclass(slots=True)
class ContextState:
    story: StoryMeta
    prose_fragments: list[Fragment] = field(default_factory=list)
    sticky_guidelines: list[Fragment] = field(default_factory=list)
    sticky_knowledge: list[Fragment] = field(default_factory=list)
    sticky_characters: list[Fragment] = field(default_factory=list)
    guideline_shortlist: list[Fragment] = field(default_factory=list)
    knowledge_shortlist: list[Fragment] = field(default_factory=list)
    character_shortlist: list[Fragment] = field(default_factory=list)


def _sort_key(fragment: Fragment) -> tuple[int, str]:
    return (fragment.order, fragment.created_at)


def _split_sticky(fragments: list[Fragment]) -> tuple[list[Fragment], list[Fragment]]:
    sticky = sorted((item for item in fragments if item.sticky), key=_sort_key)
    shortlist = [item for item in fragments if not item.sticky]
    return sticky, shortlist


def _load_prose(store: StoryStore, story: StoryMeta, exclude_fragment_id: str | None) -> list[Fragment]:
    if not story.prose_chain:
        return [
            fragment
            for fragment in store.list_fragments(story.id, "prose")
            if fragment.id != exclude_fragment_id
        ]
    prose: list[Fragment] = []
    for fragment_id in story.prose_chain:
        if fragment_id == exclude_fragment_id:
            continue
        fragment = store.get_fragment(story.id, fragment_id)
        if fragment is None:
            LOGGER.warning("Prose fragment %s in chain for %s not found", fragment_id, story.id)
            continue
        if fragment.type == MARKER_TYPE:
            continue
        prose.append(fragment)
    return prose


def build_context_state(
    store: StoryStore,
    story_id: str,
    *,
    prose_limit: int = DEFAULT_PROSE_LIMIT,
    exclude_fragment_id: str | None = None,
    prose_before_fragment_id: str | None = None,
) -> ContextState:
    """Collect recent prose plus sticky/shortlisted reference fragments.

    Prose comes from the story's prose chain when it has one, otherwise from
    every prose fragment. It is sorted by ``(order, created_at)``, cut just
    before ``prose_before_fragment_id`` when given, and trimmed to the last
    ``prose_limit`` entries.

    Raises:
        StoryNotFoundError: If the story does not exist.
    """
    story = store.get_story(story_id)
    if story is None:
        raise StoryNotFoundError(story_id)

    prose = sorted(_load_prose(store, story, exclude_fragment_id), key=_sort_key)
    if prose_before_fragment_id is not None:
        for index, fragment in enumerate(prose):
            if fragment.id == prose_before_fragment_id:
                prose = prose[:index]
                break
    if prose_limit >= 0:
        prose = prose[-prose_limit:] if prose_limit else []

    sticky_guidelines, guideline_shortlist = _split_sticky(store.list_fragments(story_id, "guideline"))
    sticky_knowledge, knowledge_shortlist = _split_sticky(store.list_fragments(story_id, "knowledge"))
    sticky_characters, character_shortlist = _split_sticky(store.list_fragments(story_id, "character"))

    LOGGER.debug(
        "Context state for %s: prose=%d sticky=%d shortlist=%d",
        story_id,
        len(prose),
        len(sticky_guidelines) + len(sticky_knowledge) + len(sticky_characters),
        len(guideline_shortlist) + len(knowledge_shortlist) + len(character_shortlist),
    )
    return ContextState(
        story=story,
        prose_fragments=prose,
        sticky_guidelines=sticky_guidelines,
        sticky_knowledge=sticky_knowledge,
        sticky_characters=sticky_characters,
        guideline_shortlist=guideline_shortlist,
        knowledge_shortlist=knowledge_shortlist,
        character_shortlist=character_shortlist,
    )
