"""Default instruction texts, with optional per-model replacements."""

from __future__ import annotations

import logging

__all__ = ["InstructionRegistry", "INSTRUCTION_REGISTRY"]

LOGGER = logging.getLogger(__name__)


class InstructionRegistry:
    def __init__(self) -> None:
        self._defaults: dict[str, str] = {}
        self._model_overrides: dict[str, dict[str, str]] = {}

    def register_default(self, key: str, text: str) -> None:
        self._defaults[key] = text.strip()

    def set_model_override(self, model_id: str, key: str, text: str) -> None:
        self._model_overrides.setdefault(model_id, {})[key] = text.strip()

    def clear_model_overrides(self, model_id: str | None = None) -> None:
        if model_id is None:
            self._model_overrides.clear()
        else:
            self._model_overrides.pop(model_id, None)

    def resolve(self, key: str, model_id: str | None = None) -> str:
        """Return the text for ``key``, preferring an override for ``model_id``.

        Raises:
            KeyError: If no default is registered for ``key``.
        """
        if model_id:
            override = self._model_overrides.get(model_id, {}).get(key)
            if override is not None:
                LOGGER.debug("Using %s instructions override for model %s", key, model_id)
                return override
        try:
            return self._defaults[key]
        except KeyError:
            raise KeyError(f"No instructions registered for {key}") from None

    def keys(self) -> list[str]:
        return sorted(self._defaults)

    def __contains__(self, key: object) -> bool:
        return key in self._defaults


INSTRUCTION_REGISTRY = InstructionRegistry()
