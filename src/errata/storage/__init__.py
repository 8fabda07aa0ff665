"""Storage collaborator: stories, fragments and branch-scoped content roots."""

from .stories import MAIN_BRANCH, FileStoryStore, StoryStore, new_fragment_id
from .types import (
    FRAGMENT_TYPES,
    Fragment,
    ModelOverride,
    StoryMeta,
    StorySettings,
    utcnow_iso,
)

__all__ = [
    "FRAGMENT_TYPES",
    "MAIN_BRANCH",
    "FileStoryStore",
    "Fragment",
    "ModelOverride",
    "StoryMeta",
    "StorySettings",
    "StoryStore",
    "new_fragment_id",
    "utcnow_iso",
]
