"""Story and fragment records shared by storage and the engine."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Mapping

__all__ = [
    "FRAGMENT_TYPES",
    "FRAGMENT_ID_PREFIXES",
    "MARKER_TYPE",
    "Fragment",
    "ModelOverride",
    "StorySettings",
    "StoryMeta",
    "utcnow_iso",
]

FRAGMENT_TYPES: tuple[str, ...] = ("prose", "character", "guideline", "knowledge")
# Chapter markers live in the prose chain but are not editable through fragment tools.
MARKER_TYPE = "marker"
FRAGMENT_ID_PREFIXES: Mapping[str, str] = {
    "prose": "pr",
    "character": "ch",
    "guideline": "gl",
    "knowledge": "kn",
    MARKER_TYPE: "mk",
}


def utcnow_iso() -> str:
    """Return the current UTC time in ISO-8601 form."""
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


@dataclass(slots=True)
class Fragment:
    """A unit of story content: prose, character sheet, guideline or lore."""

    id: str
    type: str
    name: str
    description: str = ""
    content: str = ""
    tags: list[str] = field(default_factory=list)
    sticky: bool = False
    order: int = 0
    meta: dict[str, Any] = field(default_factory=dict)
    created_at: str = field(default_factory=utcnow_iso)
    updated_at: str = field(default_factory=utcnow_iso)

    @property
    def librarian_summary(self) -> str | None:
        payload = self.meta.get("_librarian")
        if isinstance(payload, Mapping):
            summary = payload.get("summary")
            if isinstance(summary, str) and summary:
                return summary
        return None

    def with_updates(self, **changes: Any) -> Fragment:
        changes.setdefault("updated_at", utcnow_iso())
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "name": self.name,
            "description": self.description,
            "content": self.content,
            "tags": list(self.tags),
            "sticky": self.sticky,
            "order": self.order,
            "meta": dict(self.meta),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    def to_summary(self) -> dict[str, Any]:
        """Compact listing form used by tools."""
        return {
            "id": self.id,
            "type": self.type,
            "name": self.name,
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> Fragment:
        return cls(
            id=str(payload["id"]),
            type=str(payload.get("type", "knowledge")),
            name=str(payload.get("name", "")),
            description=str(payload.get("description", "")),
            content=str(payload.get("content", "")),
            tags=[str(tag) for tag in payload.get("tags") or ()],
            sticky=bool(payload.get("sticky", False)),
            order=int(payload.get("order", 0) or 0),
            meta=dict(payload.get("meta") or {}),
            created_at=str(payload.get("created_at") or utcnow_iso()),
            updated_at=str(payload.get("updated_at") or utcnow_iso()),
        )


@dataclass(slots=True, frozen=True)
class ModelOverride:
    """Per-role provider/model pin stored in a story's settings."""

    provider_id: str | None = None
    model_id: str | None = None
    temperature: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider_id": self.provider_id,
            "model_id": self.model_id,
            "temperature": self.temperature,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> ModelOverride:
        temperature = payload.get("temperature")
        return cls(
            provider_id=payload.get("provider_id") or None,
            model_id=payload.get("model_id") or None,
            temperature=float(temperature) if temperature is not None else None,
        )


@dataclass(slots=True)
class StorySettings:
    model_overrides: dict[str, ModelOverride] = field(default_factory=dict)
    guided_suggest_prompt: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "model_overrides": {key: value.to_dict() for key, value in self.model_overrides.items()},
            "guided_suggest_prompt": self.guided_suggest_prompt,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any] | None) -> StorySettings:
        payload = payload or {}
        overrides_payload = payload.get("model_overrides") or {}
        overrides = {
            str(role): ModelOverride.from_dict(value)
            for role, value in overrides_payload.items()
            if isinstance(value, Mapping)
        }
        return cls(
            model_overrides=overrides,
            guided_suggest_prompt=payload.get("guided_suggest_prompt") or None,
        )


@dataclass(slots=True)
class StoryMeta:
    """Story-level metadata: identity, rolling summary and settings."""

    id: str
    name: str
    description: str = ""
    summary: str = ""
    prose_chain: list[str] = field(default_factory=list)
    settings: StorySettings = field(default_factory=StorySettings)
    created_at: str = field(default_factory=utcnow_iso)
    updated_at: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "summary": self.summary,
            "prose_chain": list(self.prose_chain),
            "settings": self.settings.to_dict(),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> StoryMeta:
        return cls(
            id=str(payload["id"]),
            name=str(payload.get("name", "")),
            description=str(payload.get("description", "")),
            summary=str(payload.get("summary", "")),
            prose_chain=[str(item) for item in payload.get("prose_chain") or ()],
            settings=StorySettings.from_dict(payload.get("settings")),
            created_at=str(payload.get("created_at") or utcnow_iso()),
            updated_at=str(payload.get("updated_at") or utcnow_iso()),
        )
