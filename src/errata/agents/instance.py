"""Run a streaming agent directly, outside the nested runner.

UI-facing streams (writer, chat) are started through an
:class:`AgentInstance`: it validates the input, marks the agent active, and
records a single-entry run record once the stream's completion settles.
Nested agent calls are not available on this path.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from typing import Any

from ..errors import AgentNotRegisteredError
from ..pipeline.events import AgentStreamCompletion, EventStreamResult
from ..storage.types import utcnow_iso
from .registry import AGENT_REGISTRY, AgentRegistry
from .runner import make_run_id
from .schemas import validate_payload
from .traces import build_run_record
from .types import AgentDefinition, AgentInvocationContext, AgentTraceEntry, JsonSnapshot, snapshot_value

__all__ = ["AgentInstance", "create_agent_instance"]

LOGGER = logging.getLogger(__name__)


class AgentInstance:
    """One direct execution of a streaming agent."""

    def __init__(self, services: Any, story_id: str, definition: AgentDefinition) -> None:
        self._services = services
        self._story_id = story_id
        self._definition = definition
        self._run_id = make_run_id("ai")
        self._settled = False
        self._activity_id: str | None = None
        self._started_at: str | None = None
        self._started: float | None = None
        self._input: Any = None

    @property
    def agent_name(self) -> str:
        return self._definition.name

    @property
    def run_id(self) -> str:
        return self._run_id

    @property
    def settled(self) -> bool:
        return self._settled

    async def execute(self, input: Any) -> EventStreamResult:
        """Start the agent and return its live stream.

        Raises:
            AgentValidationError: If ``input`` fails the agent's schema.
            TypeError: If the agent does not produce an event stream.
        """
        name = self._definition.name
        parsed = validate_payload(name, "input", self._definition.input_schema, input)
        snapshot = snapshot_value(parsed)
        self._input = snapshot.to_json() if snapshot is not None else None
        self._started_at = utcnow_iso()
        self._started = time.perf_counter()
        self._activity_id = self._services.active_agents.register(self._story_id, name)

        context = AgentInvocationContext(
            run_id=self._run_id,
            parent_run_id=None,
            root_run_id=self._run_id,
            depth=0,
            data_dir=self._services.data_dir,
            story_id=self._story_id,
            logger=logging.LoggerAdapter(
                logging.getLogger(f"errata.agents.{name}"),
                {"story_id": self._story_id, "run_id": self._run_id},
            ),
            services=self._services,
        )
        try:
            output = self._definition.run(context, parsed)
            if inspect.isawaitable(output):
                output = await output
            if not isinstance(output, EventStreamResult):
                raise TypeError(f"Agent {name} did not return an event stream")
        except Exception as exc:
            self.fail(exc)
            raise

        output.completion.add_done_callback(self._on_settled)
        return output

    def fail(self, error: BaseException | str) -> None:
        """Record an error for a run that never produced a stream. Idempotent."""
        self._finish("error", error=str(error) or type(error).__name__)

    def _on_settled(self, completion: asyncio.Future[AgentStreamCompletion]) -> None:
        if completion.cancelled():
            self._finish("error", error="Stream cancelled")
            return
        error = completion.exception()
        if error is not None:
            self._finish("error", error=str(error) or type(error).__name__)
        else:
            self._finish("success", output=completion.result().to_dict())

    def _finish(self, status: str, *, output: Any = None, error: str | None = None) -> None:
        if self._settled:
            return
        self._settled = True
        if self._activity_id is not None:
            self._services.active_agents.unregister(self._activity_id)

        finished_at = utcnow_iso()
        started_at = self._started_at or finished_at
        duration_ms = int((time.perf_counter() - self._started) * 1000) if self._started is not None else 0
        entry = AgentTraceEntry(
            run_id=self._run_id,
            parent_run_id=None,
            root_run_id=self._run_id,
            agent_name=self._definition.name,
            started_at=started_at,
            finished_at=finished_at,
            duration_ms=duration_ms,
            status=status,  # type: ignore[arg-type]
            output=JsonSnapshot(output) if output is not None else None,
            error=error,
        )
        record = build_run_record(
            root_run_id=self._run_id,
            run_id=self._run_id,
            story_id=self._story_id,
            agent_name=self._definition.name,
            status=status,  # type: ignore[arg-type]
            trace=[entry],
            error=error,
            input=self._input,
            output=output,
        )
        self._services.traces.record_run(self._story_id, record)
        if status == "error":
            LOGGER.warning("Agent %s (%s) failed: %s", self._definition.name, self._run_id, error)
        else:
            LOGGER.info("Agent %s (%s) completed", self._definition.name, self._run_id)


def create_agent_instance(
    services: Any,
    story_id: str,
    agent_name: str,
    *,
    registry: AgentRegistry | None = None,
) -> AgentInstance:
    """Look up ``agent_name`` and wrap it for direct streaming execution.

    Raises:
        AgentNotRegisteredError: If no such agent is registered.
    """
    if registry is None:
        from .bootstrap import ensure_core_agents_registered

        ensure_core_agents_registered()
        registry = AGENT_REGISTRY
    definition = registry.get(agent_name)
    if definition is None:
        raise AgentNotRegisteredError(agent_name)
    return AgentInstance(services, story_id, definition)
