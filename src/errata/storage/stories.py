"""File-backed story and fragment storage.

The engine only needs a narrow read/write surface from storage, captured by
the :class:`StoryStore` protocol. :class:`FileStoryStore` is the default
implementation that keeps one JSON document per story and per fragment::

    <data_dir>/stories/<story_id>/meta.json
    <content_root>/fragments/<fragment_id>.json

Fragments and per-agent block configs are branch scoped: ``content_root``
is the story directory on the ``main`` branch and
``stories/<story_id>/branches/<branch_id>`` otherwise.
"""

from __future__ import annotations

import logging
import uuid
from pathlib import Path
from typing import Protocol, runtime_checkable

from ..utils.file_io import read_json, write_json
from .types import FRAGMENT_ID_PREFIXES, Fragment, StoryMeta, utcnow_iso

__all__ = ["StoryStore", "FileStoryStore", "new_fragment_id", "MAIN_BRANCH"]

LOGGER = logging.getLogger(__name__)

MAIN_BRANCH = "main"


def new_fragment_id(fragment_type: str) -> str:
    prefix = FRAGMENT_ID_PREFIXES.get(fragment_type, fragment_type[:2] or "fr")
    return f"{prefix}-{uuid.uuid4().hex[:6]}"


@runtime_checkable
class StoryStore(Protocol):
    """Storage capability consumed by the engine."""

    @property
    def data_dir(self) -> Path:
        ...

    def get_story(self, story_id: str) -> StoryMeta | None:
        ...

    def save_story(self, story: StoryMeta) -> StoryMeta:
        ...

    def get_fragment(self, story_id: str, fragment_id: str) -> Fragment | None:
        ...

    def list_fragments(self, story_id: str, fragment_type: str | None = None) -> list[Fragment]:
        ...

    def get_fragments_by_tag(self, story_id: str, tag: str) -> list[Fragment]:
        ...

    def save_fragment(self, story_id: str, fragment: Fragment) -> Fragment:
        ...

    def delete_fragment(self, story_id: str, fragment_id: str) -> bool:
        ...

    def content_root(self, story_id: str) -> Path:
        ...


class FileStoryStore:
    """JSON-on-disk implementation of :class:`StoryStore`."""

    def __init__(self, data_dir: Path | str) -> None:
        self._data_dir = Path(data_dir).expanduser()

    @property
    def data_dir(self) -> Path:
        return self._data_dir

    def story_dir(self, story_id: str) -> Path:
        return self._data_dir / "stories" / story_id

    # ------------------------------------------------------------------
    # Stories
    # ------------------------------------------------------------------

    def get_story(self, story_id: str) -> StoryMeta | None:
        payload = read_json(self.story_dir(story_id) / "meta.json")
        if not isinstance(payload, dict):
            return None
        try:
            return StoryMeta.from_dict(payload)
        except (KeyError, TypeError, ValueError) as exc:
            LOGGER.warning("Story %s has an unreadable meta.json: %s", story_id, exc)
            return None

    def save_story(self, story: StoryMeta) -> StoryMeta:
        story.updated_at = utcnow_iso()
        write_json(self.story_dir(story.id) / "meta.json", story.to_dict())
        return story

    def list_stories(self) -> list[StoryMeta]:
        root = self._data_dir / "stories"
        if not root.exists():
            return []
        stories = [self.get_story(entry.name) for entry in sorted(root.iterdir()) if entry.is_dir()]
        return [story for story in stories if story is not None]

    # ------------------------------------------------------------------
    # Branches
    # ------------------------------------------------------------------

    def active_branch(self, story_id: str) -> str:
        payload = read_json(self.story_dir(story_id) / "branches.json", default={})
        if isinstance(payload, dict):
            branch = payload.get("active_branch_id")
            if isinstance(branch, str) and branch:
                return branch
        return MAIN_BRANCH

    def set_active_branch(self, story_id: str, branch_id: str) -> None:
        path = self.story_dir(story_id) / "branches.json"
        payload = read_json(path, default={})
        if not isinstance(payload, dict):
            payload = {}
        payload["active_branch_id"] = branch_id
        write_json(path, payload)

    def content_root(self, story_id: str) -> Path:
        branch = self.active_branch(story_id)
        if branch == MAIN_BRANCH:
            return self.story_dir(story_id)
        return self.story_dir(story_id) / "branches" / branch

    # ------------------------------------------------------------------
    # Fragments
    # ------------------------------------------------------------------

    def _fragment_dir(self, story_id: str) -> Path:
        return self.content_root(story_id) / "fragments"

    def get_fragment(self, story_id: str, fragment_id: str) -> Fragment | None:
        payload = read_json(self._fragment_dir(story_id) / f"{fragment_id}.json")
        if not isinstance(payload, dict):
            return None
        return Fragment.from_dict(payload)

    def list_fragments(self, story_id: str, fragment_type: str | None = None) -> list[Fragment]:
        directory = self._fragment_dir(story_id)
        if not directory.exists():
            return []
        fragments: list[Fragment] = []
        for path in sorted(directory.glob("*.json")):
            payload = read_json(path)
            if not isinstance(payload, dict):
                continue
            fragment = Fragment.from_dict(payload)
            if fragment_type is None or fragment.type == fragment_type:
                fragments.append(fragment)
        fragments.sort(key=lambda item: (item.order, item.created_at))
        return fragments

    def get_fragments_by_tag(self, story_id: str, tag: str) -> list[Fragment]:
        return [fragment for fragment in self.list_fragments(story_id) if tag in fragment.tags]

    def save_fragment(self, story_id: str, fragment: Fragment) -> Fragment:
        write_json(self._fragment_dir(story_id) / f"{fragment.id}.json", fragment.to_dict())
        return fragment

    def delete_fragment(self, story_id: str, fragment_id: str) -> bool:
        path = self._fragment_dir(story_id) / f"{fragment_id}.json"
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        return True
