"""Fragment read/write tools exposed to agents.

Read tools are generated per fragment type (``getCharacter``,
``listCharacters``, ``getProse``, ``listProse`` ...) alongside generic
lookups. Write tools are only added when ``read_only`` is false.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Mapping

from ..storage.stories import StoryStore, new_fragment_id
from ..storage.types import FRAGMENT_ID_PREFIXES, FRAGMENT_TYPES, Fragment, utcnow_iso
from .types import EMPTY_PARAMETERS, FunctionTool, ToolSet, ToolSpec

__all__ = ["create_fragment_tools", "tool_name_for_type", "pluralize"]

LOGGER = logging.getLogger(__name__)

_MASS_NOUNS = frozenset({"prose", "knowledge"})
_SEARCH_LIMIT = 20
_SNIPPET_RADIUS = 80


def pluralize(name: str) -> str:
    if name.lower() in _MASS_NOUNS:
        return name
    return f"{name}s"


def tool_name_for_type(fragment_type: str) -> str:
    return fragment_type[:1].upper() + fragment_type[1:]


def _not_found(fragment_id: str) -> dict[str, Any]:
    return {"error": f"Fragment not found: {fragment_id}"}


def _fragment_detail(fragment: Fragment) -> dict[str, Any]:
    return {
        "id": fragment.id,
        "type": fragment.type,
        "name": fragment.name,
        "description": fragment.description,
        "content": fragment.content,
        "tags": list(fragment.tags),
        "sticky": fragment.sticky,
    }


def _listing(fragment: Fragment) -> dict[str, Any]:
    return {"id": fragment.id, "name": fragment.name, "description": fragment.description}


def _snippet(content: str, index: int, length: int) -> str:
    start = max(0, index - _SNIPPET_RADIUS)
    end = min(len(content), index + length + _SNIPPET_RADIUS)
    prefix = "..." if start > 0 else ""
    suffix = "..." if end < len(content) else ""
    return f"{prefix}{content[start:end]}{suffix}".replace("\n", " ")


def _id_parameter(description: str, key: str = "id") -> dict[str, Any]:
    return {
        "type": "object",
        "properties": {key: {"type": "string", "description": description}},
        "required": [key],
        "additionalProperties": False,
    }


_TYPE_FILTER = {"type": "string", "enum": list(FRAGMENT_TYPES)}


def create_fragment_tools(store: StoryStore, story_id: str, read_only: bool = True) -> ToolSet:
    """Build the fragment tool set for ``story_id``.

    Args:
        store: Storage used by every handler.
        story_id: Story the tools are scoped to.
        read_only: When true (the default) only lookups are included.

    Returns:
        A fresh ``name -> tool`` mapping.
    """
    tools: ToolSet = {}

    def add(spec: ToolSpec, handler: Any) -> None:
        tools[spec.name] = FunctionTool(spec=spec, handler=handler)

    for fragment_type in FRAGMENT_TYPES:
        _add_type_tools(add, store, story_id, fragment_type)

    def get_fragment(args: Mapping[str, Any]) -> dict[str, Any]:
        fragment = store.get_fragment(story_id, args["id"])
        if fragment is None:
            return _not_found(args["id"])
        return _fragment_detail(fragment)

    def list_fragments(args: Mapping[str, Any]) -> dict[str, Any]:
        fragments = store.list_fragments(story_id, args.get("type"))
        return {"fragments": [fragment.to_summary() for fragment in fragments]}

    def search_fragments(args: Mapping[str, Any]) -> dict[str, Any]:
        query = str(args["query"]).strip()
        needle = query.lower()
        matches: list[dict[str, Any]] = []
        if needle:
            for fragment in store.list_fragments(story_id, args.get("type")):
                haystack = fragment.content.lower()
                index = haystack.find(needle)
                in_name = needle in fragment.name.lower() or needle in fragment.description.lower()
                if index < 0 and not in_name:
                    continue
                entry = fragment.to_summary()
                if index >= 0:
                    entry["snippet"] = _snippet(fragment.content, index, len(needle))
                matches.append(entry)
                if len(matches) >= _SEARCH_LIMIT:
                    break
        LOGGER.debug("Tool: searchFragments %r -> %d matches", query, len(matches))
        return {"query": query, "matches": matches}

    def list_fragment_types(_args: Mapping[str, Any]) -> dict[str, Any]:
        return {
            "types": [
                {"type": fragment_type, "prefix": FRAGMENT_ID_PREFIXES[fragment_type]}
                for fragment_type in FRAGMENT_TYPES
            ]
        }

    add(
        ToolSpec("getFragment", "Get the full content of any fragment by its ID", _id_parameter("The fragment ID")),
        get_fragment,
    )
    add(
        ToolSpec(
            "listFragments",
            "List fragments (id, type, name, description), optionally filtered by type",
            {"type": "object", "properties": {"type": _TYPE_FILTER}, "additionalProperties": False},
        ),
        list_fragments,
    )
    add(
        ToolSpec(
            "searchFragments",
            "Search fragment names, descriptions and content for a case-insensitive text match",
            {
                "type": "object",
                "properties": {
                    "query": {"type": "string", "description": "Text to look for"},
                    "type": _TYPE_FILTER,
                },
                "required": ["query"],
                "additionalProperties": False,
            },
        ),
        search_fragments,
    )
    add(ToolSpec("listFragmentTypes", "List all available fragment types"), list_fragment_types)

    if not read_only:
        _add_write_tools(add, store, story_id)
    return tools


def _add_type_tools(add: Any, store: StoryStore, story_id: str, fragment_type: str) -> None:
    name = tool_name_for_type(fragment_type)
    plural = pluralize(name)
    prefix = FRAGMENT_ID_PREFIXES[fragment_type]

    def get_typed(args: Mapping[str, Any]) -> dict[str, Any]:
        started = time.perf_counter()
        fragment = store.get_fragment(story_id, args["id"])
        duration_ms = (time.perf_counter() - started) * 1000
        if fragment is None:
            LOGGER.warning("Tool: get%s - fragment %s not found (%.1fms)", name, args["id"], duration_ms)
            return _not_found(args["id"])
        LOGGER.debug("Tool: get%s %s (%.1fms)", name, fragment.id, duration_ms)
        return _fragment_detail(fragment)

    def list_typed(_args: Mapping[str, Any]) -> dict[str, Any]:
        return {"fragments": [_listing(fragment) for fragment in store.list_fragments(story_id, fragment_type)]}

    add(
        ToolSpec(
            f"get{name}",
            f"Get the full content of a {fragment_type} fragment by its ID",
            _id_parameter(f"The {fragment_type} fragment ID (e.g. {prefix}-a1b2c3)"),
        ),
        get_typed,
    )
    add(
        ToolSpec(f"list{plural}", f"List all {fragment_type} fragments (returns id, name, description)"),
        list_typed,
    )


def _add_write_tools(add: Any, store: StoryStore, story_id: str) -> None:
    def create_fragment(args: Mapping[str, Any]) -> dict[str, Any]:
        fragment = Fragment(
            id=new_fragment_id(args["type"]),
            type=args["type"],
            name=args["name"],
            description=args.get("description", ""),
            content=args["content"],
            tags=list(args.get("tags") or ()),
        )
        store.save_fragment(story_id, fragment)
        LOGGER.info("Tool: createFragment %s (%s)", fragment.id, fragment.type)
        return {"ok": True, "id": fragment.id}

    def update_fragment(args: Mapping[str, Any]) -> dict[str, Any]:
        fragment = store.get_fragment(story_id, args["fragmentId"])
        if fragment is None:
            return _not_found(args["fragmentId"])
        changes: dict[str, Any] = {"content": args["newContent"]}
        if "newDescription" in args:
            changes["description"] = args["newDescription"]
        store.save_fragment(story_id, fragment.with_updates(**changes))
        return {"ok": True, "id": fragment.id}

    def edit_fragment(args: Mapping[str, Any]) -> dict[str, Any]:
        fragment_id = args["fragmentId"]
        fragment = store.get_fragment(story_id, fragment_id)
        if fragment is None:
            return _not_found(fragment_id)
        old_text = args["oldText"]
        if old_text not in fragment.content:
            return {"error": f'Text not found in fragment {fragment_id}: "{old_text}"'}
        content = fragment.content.replace(old_text, args["newText"], 1)
        store.save_fragment(story_id, fragment.with_updates(content=content))
        return {"ok": True, "id": fragment_id}

    def delete_fragment(args: Mapping[str, Any]) -> dict[str, Any]:
        fragment_id = args["fragmentId"]
        if not store.delete_fragment(story_id, fragment_id):
            return _not_found(fragment_id)
        return {"ok": True, "id": fragment_id}

    add(
        ToolSpec(
            "createFragment",
            "Create a new fragment",
            {
                "type": "object",
                "properties": {
                    "type": _TYPE_FILTER,
                    "name": {"type": "string", "minLength": 1},
                    "description": {"type": "string", "maxLength": 250},
                    "content": {"type": "string"},
                    "tags": {"type": "array", "items": {"type": "string"}},
                },
                "required": ["type", "name", "content"],
                "additionalProperties": False,
            },
            is_write=True,
        ),
        create_fragment,
    )
    add(
        ToolSpec(
            "updateFragment",
            "Overwrite a fragment with entirely new content",
            {
                "type": "object",
                "properties": {
                    "fragmentId": {"type": "string"},
                    "newContent": {"type": "string"},
                    "newDescription": {"type": "string", "maxLength": 250},
                },
                "required": ["fragmentId", "newContent"],
                "additionalProperties": False,
            },
            is_write=True,
        ),
        update_fragment,
    )
    add(
        ToolSpec(
            "editFragment",
            "Edit a fragment by replacing one exact text span",
            {
                "type": "object",
                "properties": {
                    "fragmentId": {"type": "string"},
                    "oldText": {"type": "string", "minLength": 1},
                    "newText": {"type": "string"},
                },
                "required": ["fragmentId", "oldText", "newText"],
                "additionalProperties": False,
            },
            is_write=True,
        ),
        edit_fragment,
    )
    add(
        ToolSpec("deleteFragment", "Delete a fragment", _id_parameter("The fragment ID to delete", "fragmentId"), is_write=True),
        delete_fragment,
    )
