"""Token estimates for compiled prompts, backed by tiktoken."""

from __future__ import annotations

import logging
from typing import Any, Dict

import tiktoken

__all__ = ["TokenCounter", "TokenCounterRegistry"]

LOGGER = logging.getLogger(__name__)
_FALLBACK_ENCODING = "cl100k_base"


class TokenCounter:
    """Counts tokens for one model; unknown models use ``cl100k_base``."""

    def __init__(self, model_name: str | None = None) -> None:
        self.model_name = model_name
        self._encoding = self._load_encoding(model_name)

    def count(self, text: str) -> int:
        if not text:
            return 0
        return len(self._encoding.encode(text, disallowed_special=()))

    @staticmethod
    def _load_encoding(model_name: str | None) -> Any:
        if model_name:
            try:
                return tiktoken.encoding_for_model(model_name)
            except KeyError:
                LOGGER.debug("Falling back to %s encoding for model %s", _FALLBACK_ENCODING, model_name)
        return tiktoken.get_encoding(_FALLBACK_ENCODING)


class TokenCounterRegistry:
    """Registry maintaining tokenizer implementations per model."""

    _shared: TokenCounterRegistry | None = None

    def __init__(self) -> None:
        self._counters: Dict[str, TokenCounter] = {}

    @classmethod
    def global_instance(cls) -> TokenCounterRegistry:
        if cls._shared is None:
            cls._shared = TokenCounterRegistry()
        return cls._shared

    def get(self, model_name: str | None = None) -> TokenCounter:
        key = (model_name or "").strip().lower()
        counter = self._counters.get(key)
        if counter is None:
            counter = TokenCounter(key or None)
            self._counters[key] = counter
        return counter

    def count(self, model_name: str | None, text: str) -> int:
        return self.get(model_name).count(text)
