"""Token usage normalization and per-story accounting."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

from ..utils.file_io import read_json, write_json

__all__ = [
    "TokenUsage",
    "UsageTotals",
    "UsageTracker",
    "normalize_usage",
]

LOGGER = logging.getLogger(__name__)

_INPUT_KEYS: tuple[str, ...] = ("input_tokens", "prompt_tokens", "inputTokens", "promptTokens")
_OUTPUT_KEYS: tuple[str, ...] = ("output_tokens", "completion_tokens", "outputTokens", "completionTokens")


@dataclass(slots=True, frozen=True)
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def __add__(self, other: TokenUsage) -> TokenUsage:
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
        )


def _lookup(raw: Any, key: str) -> Any:
    if isinstance(raw, Mapping):
        return raw.get(key)
    return getattr(raw, key, None)


def _first_number(raw: Any, keys: tuple[str, ...]) -> int | None:
    for key in keys:
        value = _lookup(raw, key)
        if isinstance(value, bool):
            continue
        if isinstance(value, (int, float)):
            return int(value)
    return None


def normalize_usage(raw: Any) -> TokenUsage | None:
    """Coerce provider usage payloads into :class:`TokenUsage`.

    Accepts mappings or attribute objects using any of the common key
    spellings, optionally nested under ``usage``. Returns ``None`` when no
    input token count can be found, which is how providers that omit usage
    are represented.
    """
    if raw is None:
        return None
    nested = _lookup(raw, "usage")
    if nested is not None and nested is not raw:
        found = normalize_usage(nested)
        if found is not None:
            return found
    input_tokens = _first_number(raw, _INPUT_KEYS)
    if input_tokens is None:
        return None
    output_tokens = _first_number(raw, _OUTPUT_KEYS) or 0
    return TokenUsage(input_tokens=input_tokens, output_tokens=output_tokens)


@dataclass(slots=True)
class UsageTotals:
    """Running totals for one story (or globally)."""

    input_tokens: int = 0
    output_tokens: int = 0
    calls: int = 0
    by_source: dict[str, dict[str, int]] = field(default_factory=dict)
    by_model: dict[str, dict[str, int]] = field(default_factory=dict)

    def add(self, source: str, model_id: str, usage: TokenUsage) -> None:
        self.input_tokens += usage.input_tokens
        self.output_tokens += usage.output_tokens
        self.calls += 1
        for bucket, key in ((self.by_source, source), (self.by_model, model_id)):
            entry = bucket.setdefault(key, {"input_tokens": 0, "output_tokens": 0, "calls": 0})
            entry["input_tokens"] += usage.input_tokens
            entry["output_tokens"] += usage.output_tokens
            entry["calls"] += 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "calls": self.calls,
            "by_source": {key: dict(value) for key, value in self.by_source.items()},
            "by_model": {key: dict(value) for key, value in self.by_model.items()},
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any] | None) -> UsageTotals:
        if not isinstance(payload, Mapping):
            return cls()
        return cls(
            input_tokens=int(payload.get("input_tokens", 0) or 0),
            output_tokens=int(payload.get("output_tokens", 0) or 0),
            calls=int(payload.get("calls", 0) or 0),
            by_source={str(k): dict(v) for k, v in (payload.get("by_source") or {}).items()},
            by_model={str(k): dict(v) for k, v in (payload.get("by_model") or {}).items()},
        )


class UsageTracker:
    """Tracks token usage per story, per source (agent) and per model.

    Session totals live in memory; cumulative per-story totals are persisted
    to ``stories/<story_id>/token-usage.json`` under ``data_dir``.
    """

    def __init__(self, data_dir: Path | str | None = None) -> None:
        self._data_dir = Path(data_dir) if data_dir is not None else None
        self._lock = threading.Lock()
        self._session: dict[str, UsageTotals] = {}
        self._global = UsageTotals()

    def report_usage(
        self,
        story_id: str,
        source: str,
        usage: TokenUsage,
        model_id: str | None = None,
    ) -> bool:
        """Record one call's usage. Returns ``False`` when nothing was recorded."""
        if usage.input_tokens == 0 and usage.output_tokens == 0:
            return False
        model_key = model_id or "unknown"
        with self._lock:
            self._session.setdefault(story_id, UsageTotals()).add(source, model_key, usage)
            self._global.add(source, model_key, usage)
            self._persist(story_id, source, model_key, usage)
        LOGGER.debug(
            "Usage for %s/%s (%s): in=%d out=%d",
            story_id,
            source,
            model_key,
            usage.input_tokens,
            usage.output_tokens,
        )
        return True

    def session_usage(self, story_id: str) -> UsageTotals:
        with self._lock:
            return UsageTotals.from_dict(self._session.get(story_id, UsageTotals()).to_dict())

    def global_usage(self) -> UsageTotals:
        with self._lock:
            return UsageTotals.from_dict(self._global.to_dict())

    def project_usage(self, story_id: str) -> UsageTotals:
        """Cumulative totals across sessions, read from disk."""
        path = self._usage_path(story_id)
        if path is None:
            return self.session_usage(story_id)
        return UsageTotals.from_dict(read_json(path, default={}))

    def reset_session(self) -> None:
        with self._lock:
            self._session.clear()
            self._global = UsageTotals()

    def _usage_path(self, story_id: str) -> Path | None:
        if self._data_dir is None:
            return None
        return self._data_dir / "stories" / story_id / "token-usage.json"

    def _persist(self, story_id: str, source: str, model_id: str, usage: TokenUsage) -> None:
        path = self._usage_path(story_id)
        if path is None:
            return
        totals = UsageTotals.from_dict(read_json(path, default={}))
        totals.add(source, model_id, usage)
        try:
            write_json(path, totals.to_dict())
        except OSError as exc:
            LOGGER.warning("Failed to persist token usage for %s: %s", story_id, exc)
