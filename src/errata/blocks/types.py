"""Context block records and the per-agent block configuration."""

from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from typing import Any, Literal, Mapping

from ..storage.types import Fragment, StoryMeta

__all__ = [
    "BlockRole",
    "BlockSource",
    "ContentMode",
    "ContextBlock",
    "ContextMessage",
    "BlockOverride",
    "CustomBlockDefinition",
    "AgentBlockConfig",
    "AgentBlockContext",
]

BlockRole = Literal["system", "user"]
BlockSource = Literal["builtin", "custom", "script"]
ContentMode = Literal["prepend", "append", "override"]

_ROLES = ("system", "user")
_CONTENT_MODES = ("prepend", "append", "override")


@dataclass(slots=True, frozen=True)
class ContextBlock:
    """One ordered, role-tagged piece of an agent prompt."""

    id: str
    role: BlockRole
    content: str
    order: float
    source: BlockSource = "builtin"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "order": self.order,
            "source": self.source,
        }


@dataclass(slots=True, frozen=True)
class ContextMessage:
    role: str
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(slots=True, frozen=True)
class BlockOverride:
    """User edits to one block, keyed by block id in :class:`AgentBlockConfig`."""

    enabled: bool | None = None
    content_mode: ContentMode | None = None
    custom_content: str | None = None

    def merged(self, other: BlockOverride) -> BlockOverride:
        """Shallow merge: fields set on ``other`` win."""
        return BlockOverride(
            enabled=other.enabled if other.enabled is not None else self.enabled,
            content_mode=other.content_mode if other.content_mode is not None else self.content_mode,
            custom_content=other.custom_content if other.custom_content is not None else self.custom_content,
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        if self.enabled is not None:
            payload["enabled"] = self.enabled
        if self.content_mode is not None:
            payload["content_mode"] = self.content_mode
        if self.custom_content is not None:
            payload["custom_content"] = self.custom_content
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> BlockOverride:
        if not isinstance(payload, Mapping):
            raise TypeError(f"Block override must be an object, not {type(payload).__name__}")
        enabled = payload.get("enabled")
        mode = payload.get("content_mode", payload.get("contentMode"))
        custom = payload.get("custom_content", payload.get("customContent"))
        if mode is not None and mode not in _CONTENT_MODES:
            raise ValueError(f"Unknown content mode: {mode!r}")
        return cls(
            enabled=bool(enabled) if enabled is not None else None,
            content_mode=mode,
            custom_content=str(custom) if custom is not None else None,
        )


@dataclass(slots=True, frozen=True)
class CustomBlockDefinition:
    """A user-authored block: literal text (``simple``) or a ``script``."""

    id: str
    name: str
    role: BlockRole
    order: float
    content: str
    enabled: bool = True
    type: Literal["simple", "script"] = "simple"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "role": self.role,
            "order": self.order,
            "enabled": self.enabled,
            "type": self.type,
            "content": self.content,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> CustomBlockDefinition:
        if not isinstance(payload, Mapping):
            raise TypeError(f"Custom block must be an object, not {type(payload).__name__}")
        role = payload.get("role", "user")
        if role not in _ROLES:
            raise ValueError(f"Unknown block role: {role!r}")
        block_type = payload.get("type", "simple")
        if block_type not in ("simple", "script"):
            raise ValueError(f"Unknown custom block type: {block_type!r}")
        return cls(
            id=str(payload["id"]),
            name=str(payload.get("name", payload["id"])),
            role=role,
            order=float(payload.get("order", 0)),
            content=str(payload.get("content", "")),
            enabled=bool(payload.get("enabled", True)),
            type=block_type,
        )


@dataclass(slots=True)
class AgentBlockConfig:
    """Persisted per story and agent: overrides, ordering, custom blocks, tool filter."""

    overrides: dict[str, BlockOverride] = field(default_factory=dict)
    block_order: list[str] = field(default_factory=list)
    custom_blocks: list[CustomBlockDefinition] = field(default_factory=list)
    disabled_tools: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "overrides": {key: value.to_dict() for key, value in self.overrides.items()},
            "block_order": list(self.block_order),
            "custom_blocks": [block.to_dict() for block in self.custom_blocks],
            "disabled_tools": list(self.disabled_tools),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> AgentBlockConfig:
        overrides = payload.get("overrides") or {}
        if not isinstance(overrides, Mapping):
            raise TypeError("Block overrides must be an object")
        return cls(
            overrides={str(key): BlockOverride.from_dict(value) for key, value in overrides.items()},
            block_order=[str(item) for item in payload.get("block_order") or ()],
            custom_blocks=[CustomBlockDefinition.from_dict(item) for item in payload.get("custom_blocks") or ()],
            disabled_tools=[str(item) for item in payload.get("disabled_tools") or ()],
        )


@dataclass(slots=True)
class AgentBlockContext:
    """Everything default block builders may read.

    Agent-specific values (author input, the prose under analysis, chat
    persona ...) travel in ``extra``; :meth:`merged` folds a mapping in,
    routing known keys onto fields.
    """

    story: StoryMeta
    prose_fragments: list[Fragment] = field(default_factory=list)
    sticky_guidelines: list[Fragment] = field(default_factory=list)
    sticky_knowledge: list[Fragment] = field(default_factory=list)
    sticky_characters: list[Fragment] = field(default_factory=list)
    guideline_shortlist: list[Fragment] = field(default_factory=list)
    knowledge_shortlist: list[Fragment] = field(default_factory=list)
    character_shortlist: list[Fragment] = field(default_factory=list)
    system_prompt_fragments: list[Fragment] = field(default_factory=list)
    all_characters: list[Fragment] = field(default_factory=list)
    all_knowledge: list[Fragment] = field(default_factory=list)
    target_fragment: Fragment | None = None
    instructions: str | None = None
    model_id: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def get(self, key: str, default: Any = None) -> Any:
        return self.extra.get(key, default)

    def merged(self, values: Mapping[str, Any] | None) -> AgentBlockContext:
        if not values:
            return replace(self, extra=dict(self.extra))
        known = {item.name for item in fields(self)} - {"extra"}
        direct = {key: value for key, value in values.items() if key in known}
        extra = dict(self.extra)
        extra.update({key: value for key, value in values.items() if key not in known})
        return replace(self, extra=extra, **direct)
