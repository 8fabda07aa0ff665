"""Agent definitions, invocation context, runtime state and trace records."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field, is_dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Literal, Mapping, Union

if TYPE_CHECKING:
    from .runner import AgentRunner

__all__ = [
    "AgentRunStatus",
    "AgentRunFn",
    "AgentDefinition",
    "AgentCallOptions",
    "AgentTraceEntry",
    "AgentRunResult",
    "AgentInvocationContext",
    "RuntimeState",
    "JsonSnapshot",
    "OpaqueSnapshot",
    "OutputSnapshot",
    "snapshot_value",
    "OPAQUE_MARKER",
]

AgentRunStatus = Literal["success", "error"]

# ``run(context, input)``; may return a value or an awaitable.
AgentRunFn = Callable[["AgentInvocationContext", Any], Union[Any, Awaitable[Any]]]

OPAQUE_MARKER = "$opaque"


# -----------------------------------------------------------------------------
# Definitions and options
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class AgentDefinition:
    """A named, schema-validated unit of work that other agents can call.

    Attributes:
        name: Process-unique, dot-namespaced name (``librarian.analyze``).
        description: Human-readable summary.
        input_schema: JSON Schema the input must satisfy.
        run: The agent body, ``run(context, input)``.
        output_schema: Optional JSON Schema for the returned value.
        allowed_calls: Callee whitelist; ``None`` means unrestricted.
    """

    name: str
    description: str
    input_schema: Mapping[str, Any]
    run: AgentRunFn
    output_schema: Mapping[str, Any] | None = None
    allowed_calls: tuple[str, ...] | None = None

    def may_call(self, callee: str) -> bool:
        return self.allowed_calls is None or callee in self.allowed_calls


@dataclass(slots=True, frozen=True)
class AgentCallOptions:
    max_depth: int = 3
    max_calls: int = 20
    timeout_ms: int = 300_000


# -----------------------------------------------------------------------------
# Output snapshots
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class JsonSnapshot:
    """A JSON-safe copy of an agent output."""

    value: Any

    def to_json(self) -> Any:
        return self.value


@dataclass(slots=True, frozen=True)
class OpaqueSnapshot:
    """Stands in for outputs with no JSON form (open streams, handles)."""

    type_name: str

    def to_json(self) -> dict[str, str]:
        return {OPAQUE_MARKER: self.type_name}


OutputSnapshot = Union[JsonSnapshot, OpaqueSnapshot]

_MISSING = object()


def _to_json(value: Any, active: frozenset[int] = frozenset()) -> Any:
    if value is None or isinstance(value, (str, bool, int)):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else _MISSING
    if id(value) in active:
        return _MISSING
    active = active | {id(value)}
    if isinstance(value, Mapping):
        result: dict[str, Any] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                return _MISSING
            converted = _to_json(item, active)
            if converted is _MISSING:
                return _MISSING
            result[key] = converted
        return result
    if isinstance(value, (list, tuple)):
        items = [_to_json(item, active) for item in value]
        return _MISSING if any(item is _MISSING for item in items) else items
    to_dict = getattr(value, "to_dict", None)
    if is_dataclass(value) and callable(to_dict):
        return _to_json(to_dict(), active)
    return _MISSING


def snapshot_value(value: Any) -> OutputSnapshot | None:
    """Classify ``value`` as JSON-capturable or opaque; ``None`` for no output."""
    if value is None:
        return None
    try:
        converted = _to_json(value)
    except (RecursionError, TypeError, ValueError):
        converted = _MISSING
    if converted is _MISSING:
        return OpaqueSnapshot(type(value).__name__)
    return JsonSnapshot(converted)


# -----------------------------------------------------------------------------
# Trace entries
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class AgentTraceEntry:
    run_id: str
    parent_run_id: str | None
    root_run_id: str
    agent_name: str
    started_at: str
    finished_at: str
    duration_ms: int
    status: AgentRunStatus
    output: OutputSnapshot | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "run_id": self.run_id,
            "parent_run_id": self.parent_run_id,
            "root_run_id": self.root_run_id,
            "agent_name": self.agent_name,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "duration_ms": self.duration_ms,
            "status": self.status,
        }
        if self.output is not None:
            payload["output"] = self.output.to_json()
        if self.error is not None:
            payload["error"] = self.error
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> AgentTraceEntry:
        output: OutputSnapshot | None = None
        if "output" in payload:
            raw = payload["output"]
            if isinstance(raw, Mapping) and set(raw) == {OPAQUE_MARKER}:
                output = OpaqueSnapshot(str(raw[OPAQUE_MARKER]))
            else:
                output = JsonSnapshot(raw)
        return cls(
            run_id=str(payload["run_id"]),
            parent_run_id=payload.get("parent_run_id"),
            root_run_id=str(payload["root_run_id"]),
            agent_name=str(payload["agent_name"]),
            started_at=str(payload["started_at"]),
            finished_at=str(payload["finished_at"]),
            duration_ms=int(payload.get("duration_ms", 0)),
            status="error" if payload.get("status") == "error" else "success",
            output=output,
            error=payload.get("error"),
        )


@dataclass(slots=True, frozen=True)
class AgentRunResult:
    run_id: str
    output: Any
    trace: list[AgentTraceEntry]


# -----------------------------------------------------------------------------
# Runtime
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class RuntimeState:
    """Mutable bookkeeping shared by every invocation under one root call."""

    root_run_id: str
    options: AgentCallOptions
    runner: AgentRunner
    trace: list[AgentTraceEntry] = field(default_factory=list)
    stack: list[str] = field(default_factory=list)
    call_count: int = 0


@dataclass(slots=True)
class AgentInvocationContext:
    """What an agent body sees while it runs."""

    run_id: str
    parent_run_id: str | None
    root_run_id: str
    depth: int
    data_dir: Path
    story_id: str
    logger: logging.Logger | logging.LoggerAdapter
    services: Any
    runtime: RuntimeState | None = None

    async def invoke_agent(self, name: str, input: Any) -> Any:
        """Call another agent one level deeper, sharing this root's limits."""
        if self.runtime is None:
            raise RuntimeError("Nested agent calls are not supported outside the agent runner")
        return await self.runtime.runner.invoke_nested(self, name, input)
