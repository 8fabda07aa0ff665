"""Model role registry and fallback-chain resolution.

Roles are dot-namespaced keys (``librarian.chat``) that inherit provider and
model choices from their ancestors. The chain for a key is built by dropping
trailing segments one at a time and always ends at the root ``generation``
role::

    >>> get_fallback_chain("librarian.chat.summarize")
    ['librarian.chat.summarize', 'librarian.chat', 'librarian', 'generation']
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Mapping

from ..storage.types import ModelOverride

__all__ = [
    "GENERATION_ROLE",
    "ModelRoleDefinition",
    "ModelRoleRegistry",
    "ModelTarget",
    "ROLE_REGISTRY",
    "get_fallback_chain",
    "resolve_provider",
    "resolve_model_target",
    "resolve_inherited_temperature",
]

LOGGER = logging.getLogger(__name__)

GENERATION_ROLE = "generation"


def get_fallback_chain(key: str) -> list[str]:
    """Return ``key`` followed by each ancestor role, ending at ``generation``."""
    chain = [key]
    parts = key.split(".")
    while len(parts) > 1:
        parts.pop()
        chain.append(".".join(parts))
    if chain[-1] != GENERATION_ROLE:
        chain.append(GENERATION_ROLE)
    return chain


def resolve_provider(
    key: str,
    overrides: Mapping[str, ModelOverride] | None,
    default_provider_id: str | None,
) -> str | None:
    """Walk the fallback chain and return the first explicit provider id."""
    overrides = overrides or {}
    for role in get_fallback_chain(key):
        override = overrides.get(role)
        if override is not None and override.provider_id:
            return override.provider_id
    return default_provider_id


@dataclass(slots=True, frozen=True)
class ModelTarget:
    """Outcome of walking the chain: which provider and (optionally) model."""

    provider_id: str | None
    model_id: str | None
    source_role: str | None


def resolve_model_target(
    key: str,
    overrides: Mapping[str, ModelOverride] | None,
    default_provider_id: str | None,
) -> ModelTarget:
    """Resolve provider and model together.

    The model id is taken from the same chain entry that supplied the
    provider, since a model id is only meaningful for its own provider.
    """
    overrides = overrides or {}
    for role in get_fallback_chain(key):
        override = overrides.get(role)
        if override is not None and override.provider_id:
            return ModelTarget(override.provider_id, override.model_id, role)
    return ModelTarget(default_provider_id, None, None)


def resolve_inherited_temperature(
    key: str,
    overrides: Mapping[str, ModelOverride] | None,
    provider_temperature: float | None = None,
) -> float | None:
    overrides = overrides or {}
    for role in get_fallback_chain(key):
        override = overrides.get(role)
        if override is not None and override.temperature is not None:
            return override.temperature
    return provider_temperature


@dataclass(slots=True, frozen=True)
class ModelRoleDefinition:
    key: str
    label: str
    description: str = ""


class ModelRoleRegistry:
    """Process-wide list of known roles, shown to users when picking models."""

    def __init__(self) -> None:
        self._definitions: dict[str, ModelRoleDefinition] = {}

    def register(self, definition: ModelRoleDefinition) -> None:
        self._definitions[definition.key] = definition
        LOGGER.debug("Registered model role: %s", definition.key)

    def get(self, key: str) -> ModelRoleDefinition | None:
        return self._definitions.get(key)

    def list(self) -> list[ModelRoleDefinition]:
        return list(self._definitions.values())

    def get_fallback_chain(self, key: str) -> list[str]:
        return get_fallback_chain(key)

    def clear(self) -> None:
        self._definitions.clear()
        self.register(_GENERATION_DEFINITION)

    def __contains__(self, key: object) -> bool:
        return key in self._definitions


_GENERATION_DEFINITION = ModelRoleDefinition(
    key=GENERATION_ROLE,
    label="Generation",
    description="Main prose writing",
)

ROLE_REGISTRY = ModelRoleRegistry()
ROLE_REGISTRY.register(_GENERATION_DEFINITION)
