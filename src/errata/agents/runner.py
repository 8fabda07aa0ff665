"""Agent runner: nested invocation under depth, call, cycle and time limits.

Every root call gets a fresh :class:`RuntimeState`. Nested calls made
through :meth:`AgentInvocationContext.invoke_agent` share it, so the limits
apply to the whole call tree. Each invocation that passes the gates adds
exactly one trace entry, and every root call is persisted as an
:class:`AgentRunRecord`, whether it succeeded or not.
"""

from __future__ import annotations

import asyncio
import functools
import inspect
import logging
import time
import uuid
from pathlib import Path
from typing import Any

from ..errors import (
    AgentCallLimitExceededError,
    AgentCycleError,
    AgentDepthExceededError,
    AgentNotRegisteredError,
    AgentPermissionError,
    AgentTimeoutError,
)
from ..storage.types import utcnow_iso
from ..utils.logging import bind_run
from .registry import AGENT_REGISTRY, AgentRegistry
from .schemas import validate_payload
from .traces import TraceStore, build_run_record
from .types import (
    AgentCallOptions,
    AgentInvocationContext,
    AgentRunResult,
    AgentTraceEntry,
    RuntimeState,
    snapshot_value,
)

__all__ = ["AgentRunner", "invoke_agent", "make_run_id"]

LOGGER = logging.getLogger(__name__)

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def _base36(value: int) -> str:
    digits = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36[remainder])
    return "".join(reversed(digits)) or "0"


def make_run_id(prefix: str = "ar") -> str:
    return f"{prefix}-{_base36(int(time.time() * 1000))}-{uuid.uuid4().hex[:6]}"


def _log_late_result(agent_name: str, run_id: str, task: asyncio.Future[Any]) -> None:
    if task.cancelled():
        LOGGER.info("Timed-out agent %s (%s) was cancelled", agent_name, run_id)
        return
    error = task.exception()
    if error is not None:
        LOGGER.warning("Timed-out agent %s (%s) later failed: %s", agent_name, run_id, error)
    else:
        LOGGER.info("Timed-out agent %s (%s) finished late; result discarded", agent_name, run_id)


class AgentRunner:
    """Executes registered agents against a story.

    Args:
        data_dir: Root of the data directory, passed through to agents.
        services: Service container handed to agents as ``context.services``.
        registry: Agent definitions; defaults to the process registry.
        traces: Where root run records go; ``None`` disables recording.
        defaults: Limits used when a call passes no options.
    """

    def __init__(
        self,
        *,
        data_dir: Path | str,
        services: Any = None,
        registry: AgentRegistry | None = None,
        traces: TraceStore | None = None,
        defaults: AgentCallOptions | None = None,
    ) -> None:
        self._data_dir = Path(data_dir)
        self._services = services
        self._registry = registry if registry is not None else AGENT_REGISTRY
        self._traces = traces
        self._defaults = defaults or AgentCallOptions()

    @property
    def registry(self) -> AgentRegistry:
        return self._registry

    async def invoke(
        self,
        story_id: str,
        agent_name: str,
        input: Any,
        options: AgentCallOptions | None = None,
    ) -> AgentRunResult:
        """Run ``agent_name`` as a root call and record the outcome."""
        runtime = RuntimeState(
            root_run_id=make_run_id(),
            options=options or self._defaults,
            runner=self,
        )
        try:
            run_id, output = await self._invoke(
                runtime,
                story_id,
                agent_name,
                input,
                parent_run_id=None,
                depth=0,
            )
        except Exception as exc:
            LOGGER.exception("Root agent run %s (%s) failed", agent_name, runtime.root_run_id)
            first = min(runtime.trace, key=lambda entry: entry.started_at, default=None)
            self._record(
                runtime,
                story_id,
                agent_name,
                run_id=first.run_id if first is not None else runtime.root_run_id,
                status="error",
                error=str(exc) or type(exc).__name__,
                input=input,
            )
            raise

        snapshot = snapshot_value(output)
        self._record(
            runtime,
            story_id,
            agent_name,
            run_id=run_id,
            status="success",
            input=input,
            output=snapshot.to_json() if snapshot is not None else None,
        )
        return AgentRunResult(run_id=run_id, output=output, trace=list(runtime.trace))

    async def invoke_nested(self, parent: AgentInvocationContext, agent_name: str, input: Any) -> Any:
        runtime = parent.runtime
        if runtime is None:
            raise RuntimeError("Nested agent calls need a runtime state")
        _, output = await self._invoke(
            runtime,
            parent.story_id,
            agent_name,
            input,
            parent_run_id=parent.run_id,
            depth=parent.depth + 1,
        )
        return output

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _check_gates(self, runtime: RuntimeState, agent_name: str, depth: int) -> None:
        options = runtime.options
        if runtime.call_count >= options.max_calls:
            raise AgentCallLimitExceededError(options.max_calls)
        if depth > options.max_depth:
            raise AgentDepthExceededError(options.max_depth)
        if agent_name in runtime.stack:
            raise AgentCycleError(runtime.stack, agent_name)
        if runtime.stack:
            caller = self._registry.get(runtime.stack[-1])
            if caller is not None and not caller.may_call(agent_name):
                raise AgentPermissionError(caller.name, agent_name)

    async def _invoke(
        self,
        runtime: RuntimeState,
        story_id: str,
        agent_name: str,
        input: Any,
        *,
        parent_run_id: str | None,
        depth: int,
    ) -> tuple[str, Any]:
        definition = self._registry.get(agent_name)
        if definition is None:
            raise AgentNotRegisteredError(agent_name)
        self._check_gates(runtime, agent_name, depth)

        runtime.stack.append(agent_name)
        runtime.call_count += 1
        run_id = make_run_id()
        started_at = utcnow_iso()
        started = time.perf_counter()
        logger = logging.LoggerAdapter(
            logging.getLogger(f"errata.agents.{agent_name}"),
            {"story_id": story_id, "run_id": run_id},
        )
        LOGGER.info(
            "Agent run started: %s (run=%s root=%s parent=%s depth=%d)",
            agent_name,
            run_id,
            runtime.root_run_id,
            parent_run_id,
            depth,
        )

        def entry(status: str, **extra: Any) -> AgentTraceEntry:
            return AgentTraceEntry(
                run_id=run_id,
                parent_run_id=parent_run_id,
                root_run_id=runtime.root_run_id,
                agent_name=agent_name,
                started_at=started_at,
                finished_at=utcnow_iso(),
                duration_ms=int((time.perf_counter() - started) * 1000),
                status=status,  # type: ignore[arg-type]
                **extra,
            )

        try:
            with bind_run(story_id, run_id):
                parsed = validate_payload(agent_name, "input", definition.input_schema, input)
                context = AgentInvocationContext(
                    run_id=run_id,
                    parent_run_id=parent_run_id,
                    root_run_id=runtime.root_run_id,
                    depth=depth,
                    data_dir=self._data_dir,
                    story_id=story_id,
                    logger=logger,
                    services=self._services,
                    runtime=runtime,
                )
                raw = await self._run_with_timeout(
                    definition.run(context, parsed), agent_name, run_id, runtime.options.timeout_ms
                )
                output = validate_payload(agent_name, "output", definition.output_schema, raw)
                snapshot = snapshot_value(output)
        except Exception as exc:
            message = str(exc) or type(exc).__name__
            runtime.trace.append(entry("error", error=message))
            LOGGER.error("Agent run failed: %s (run=%s): %s", agent_name, run_id, message)
            raise
        else:
            runtime.trace.append(entry("success", output=snapshot))
            LOGGER.info("Agent run completed: %s (run=%s)", agent_name, run_id)
            return run_id, output
        finally:
            runtime.stack.pop()

    @staticmethod
    async def _run_with_timeout(result: Any, agent_name: str, run_id: str, timeout_ms: int) -> Any:
        if not inspect.isawaitable(result):
            return result
        task = asyncio.ensure_future(result)
        if timeout_ms <= 0:
            return await task
        try:
            return await asyncio.wait_for(asyncio.shield(task), timeout_ms / 1000)
        except asyncio.TimeoutError:
            task.add_done_callback(functools.partial(_log_late_result, agent_name, run_id))
            raise AgentTimeoutError(agent_name, timeout_ms) from None

    def _record(
        self,
        runtime: RuntimeState,
        story_id: str,
        agent_name: str,
        *,
        run_id: str,
        status: str,
        error: str | None = None,
        input: Any = None,
        output: Any = None,
    ) -> None:
        if self._traces is None:
            return
        input_snapshot = snapshot_value(input)
        record = build_run_record(
            root_run_id=runtime.root_run_id,
            run_id=run_id,
            story_id=story_id,
            agent_name=agent_name,
            status=status,  # type: ignore[arg-type]
            trace=runtime.trace,
            error=error,
            input=input_snapshot.to_json() if input_snapshot is not None else None,
            output=output,
        )
        self._traces.record_run(story_id, record)


async def invoke_agent(
    services: Any,
    story_id: str,
    agent_name: str,
    input: Any,
    options: AgentCallOptions | None = None,
    *,
    registry: AgentRegistry | None = None,
) -> AgentRunResult:
    """Root entry point over a service container.

    Registers the built-in agents first when using the process registry.
    """
    if registry is None:
        from .bootstrap import ensure_core_agents_registered

        ensure_core_agents_registered()
    runner = AgentRunner(
        data_dir=services.data_dir,
        services=services,
        registry=registry,
        traces=services.traces,
        defaults=services.agent_defaults,
    )
    return await runner.invoke(story_id, agent_name, input, options)
