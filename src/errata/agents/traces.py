"""Persisted per-root-call run records.

Records are kept newest-first in memory, capped per story, and mirrored to
``stories/<story_id>/agent-runs.json`` when a data directory is configured.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Mapping, Sequence

from ..storage.types import utcnow_iso
from ..utils.file_io import read_json, write_json
from .types import AgentRunStatus, AgentTraceEntry

__all__ = ["AgentRunRecord", "TraceStore", "MAX_RUNS_PER_STORY", "build_run_record"]

LOGGER = logging.getLogger(__name__)

MAX_RUNS_PER_STORY = 100
DEFAULT_LIST_LIMIT = 30


@dataclass(slots=True, frozen=True)
class AgentRunRecord:
    root_run_id: str
    run_id: str
    story_id: str
    agent_name: str
    status: AgentRunStatus
    started_at: str
    finished_at: str
    duration_ms: int
    trace: list[AgentTraceEntry] = field(default_factory=list)
    error: str | None = None
    input: Any = None
    output: Any = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "root_run_id": self.root_run_id,
            "run_id": self.run_id,
            "story_id": self.story_id,
            "agent_name": self.agent_name,
            "status": self.status,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "duration_ms": self.duration_ms,
            "trace": [entry.to_dict() for entry in self.trace],
        }
        if self.error is not None:
            payload["error"] = self.error
        if self.input is not None:
            payload["input"] = self.input
        if self.output is not None:
            payload["output"] = self.output
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> AgentRunRecord:
        return cls(
            root_run_id=str(payload["root_run_id"]),
            run_id=str(payload["run_id"]),
            story_id=str(payload["story_id"]),
            agent_name=str(payload["agent_name"]),
            status="error" if payload.get("status") == "error" else "success",
            started_at=str(payload["started_at"]),
            finished_at=str(payload["finished_at"]),
            duration_ms=int(payload.get("duration_ms", 0)),
            trace=[AgentTraceEntry.from_dict(item) for item in payload.get("trace") or ()],
            error=payload.get("error"),
            input=payload.get("input"),
            output=payload.get("output"),
        )


def _duration_ms(started_at: str, finished_at: str) -> int:
    try:
        delta = datetime.fromisoformat(finished_at) - datetime.fromisoformat(started_at)
    except ValueError:
        return 0
    return max(0, int(delta.total_seconds() * 1000))


def build_run_record(
    *,
    root_run_id: str,
    run_id: str,
    story_id: str,
    agent_name: str,
    status: AgentRunStatus,
    trace: Sequence[AgentTraceEntry],
    error: str | None = None,
    input: Any = None,
    output: Any = None,
) -> AgentRunRecord:
    """Sort ``trace`` by start time and derive the record's time span from it."""
    ordered = sorted(trace, key=lambda entry: entry.started_at)
    if ordered:
        started_at = ordered[0].started_at
        finished_at = max(entry.finished_at for entry in ordered)
    else:
        started_at = finished_at = utcnow_iso()
    return AgentRunRecord(
        root_run_id=root_run_id,
        run_id=run_id,
        story_id=story_id,
        agent_name=agent_name,
        status=status,
        started_at=started_at,
        finished_at=finished_at,
        duration_ms=_duration_ms(started_at, finished_at),
        trace=ordered,
        error=error,
        input=input,
        output=output,
    )


class TraceStore:
    def __init__(self, data_dir: Path | str | None = None, *, max_runs: int = MAX_RUNS_PER_STORY) -> None:
        self._data_dir = Path(data_dir) if data_dir is not None else None
        self._max_runs = max_runs
        self._lock = threading.Lock()
        self._runs: dict[str, list[AgentRunRecord]] = {}

    def _path(self, story_id: str) -> Path | None:
        if self._data_dir is None:
            return None
        return self._data_dir / "stories" / story_id / "agent-runs.json"

    def _load(self, story_id: str) -> list[AgentRunRecord]:
        cached = self._runs.get(story_id)
        if cached is not None:
            return cached
        records: list[AgentRunRecord] = []
        path = self._path(story_id)
        if path is not None:
            for item in read_json(path, default=[]) or []:
                try:
                    records.append(AgentRunRecord.from_dict(item))
                except (KeyError, TypeError, ValueError) as exc:
                    LOGGER.warning("Skipping unreadable run record for %s: %s", story_id, exc)
        self._runs[story_id] = records
        return records

    def _flush(self, story_id: str) -> None:
        path = self._path(story_id)
        if path is None:
            return
        try:
            write_json(path, [record.to_dict() for record in self._runs.get(story_id, [])])
        except OSError as exc:
            LOGGER.warning("Failed to persist agent runs for %s: %s", story_id, exc)

    def record_run(self, story_id: str, record: AgentRunRecord) -> None:
        with self._lock:
            records = [record, *self._load(story_id)][: self._max_runs]
            self._runs[story_id] = records
            self._flush(story_id)
        LOGGER.debug("Recorded %s run %s (%s)", record.agent_name, record.root_run_id, record.status)

    def list_runs(self, story_id: str, limit: int = DEFAULT_LIST_LIMIT) -> list[AgentRunRecord]:
        with self._lock:
            return list(self._load(story_id)[: max(0, limit)])

    def clear_runs(self, story_id: str | None = None) -> None:
        with self._lock:
            if story_id is not None:
                self._runs[story_id] = []
                self._flush(story_id)
                return
            self._runs.clear()
            if self._data_dir is not None:
                for path in self._data_dir.glob("stories/*/agent-runs.json"):
                    path.unlink(missing_ok=True)
