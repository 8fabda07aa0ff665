"""Tests for the agent registry and the nested-call runner."""

from __future__ import annotations

import asyncio
import re
from pathlib import Path
from typing import Any

import pytest

from errata.agents.registry import AgentRegistry
from errata.agents.runner import AgentRunner
from errata.agents.schemas import object_schema
from errata.agents.traces import TraceStore
from errata.agents.types import AgentCallOptions, AgentDefinition
from errata.errors import (
    AgentCallLimitExceededError,
    AgentCycleError,
    AgentDepthExceededError,
    AgentNotRegisteredError,
    AgentPermissionError,
    AgentTimeoutError,
    AgentValidationError,
    DuplicateAgentError,
)

STORY = "story-1"
RUN_ID = re.compile(r"^ar-[0-9a-z]+-[0-9a-f]{6}$")


def _agent(name: str, run: Any, **kwargs: Any) -> AgentDefinition:
    return AgentDefinition(
        name=name,
        description=f"{name} test agent",
        input_schema=kwargs.pop("input_schema", {"type": "object"}),
        run=run,
        **kwargs,
    )


def _calls(callee: str, payload: Any = None):
    async def run(ctx, _input):
        return await ctx.invoke_agent(callee, payload if payload is not None else {})

    return run


@pytest.fixture
def registry() -> AgentRegistry:
    return AgentRegistry()


@pytest.fixture
def traces(tmp_path: Path) -> TraceStore:
    return TraceStore(tmp_path)


@pytest.fixture
def runner(tmp_path: Path, registry: AgentRegistry, traces: TraceStore) -> AgentRunner:
    return AgentRunner(data_dir=tmp_path, registry=registry, traces=traces)


class TestAgentRegistry:
    """Registration and lookup."""

    def test_register_and_get(self, registry: AgentRegistry) -> None:
        definition = _agent("demo.echo", lambda ctx, value: value)
        registry.register(definition)

        assert registry.get("demo.echo") is definition
        assert "demo.echo" in registry
        assert registry.get("demo.missing") is None

    def test_duplicate_name_is_rejected(self, registry: AgentRegistry) -> None:
        registry.register(_agent("demo.echo", lambda ctx, value: value))

        with pytest.raises(DuplicateAgentError) as excinfo:
            registry.register(_agent("demo.echo", lambda ctx, value: None))

        assert excinfo.value.name == "demo.echo"

    def test_list_is_sorted_by_name(self, registry: AgentRegistry) -> None:
        for name in ("b.two", "a.one", "c.three"):
            registry.register(_agent(name, lambda ctx, value: None))

        assert [item.name for item in registry.list()] == ["a.one", "b.two", "c.three"]

    def test_unregister(self, registry: AgentRegistry) -> None:
        registry.register(_agent("demo.echo", lambda ctx, value: value))

        assert registry.unregister("demo.echo") is True
        assert registry.unregister("demo.echo") is False
        assert len(registry) == 0


class TestSuccessfulRuns:
    """Traces and records for runs that complete."""

    @pytest.mark.asyncio
    async def test_single_run_returns_output_and_trace(self, runner: AgentRunner, registry: AgentRegistry) -> None:
        registry.register(_agent("demo.echo", lambda ctx, value: {"echo": value["text"]}))

        result = await runner.invoke(STORY, "demo.echo", {"text": "hi"})

        assert result.output == {"echo": "hi"}
        assert RUN_ID.match(result.run_id)
        assert len(result.trace) == 1
        entry = result.trace[0]
        assert entry.status == "success"
        assert entry.run_id == result.run_id
        assert entry.parent_run_id is None
        assert entry.output is not None and entry.output.to_json() == {"echo": "hi"}

    @pytest.mark.asyncio
    async def test_nested_calls_link_parent_and_root(self, runner: AgentRunner, registry: AgentRegistry) -> None:
        registry.register(_agent("demo.outer", _calls("demo.inner", {"n": 1})))
        registry.register(_agent("demo.inner", lambda ctx, value: {"depth": ctx.depth, "n": value["n"]}))

        result = await runner.invoke(STORY, "demo.outer", {})

        assert result.output == {"depth": 1, "n": 1}
        by_name = {entry.agent_name: entry for entry in result.trace}
        outer, inner = by_name["demo.outer"], by_name["demo.inner"]
        assert inner.parent_run_id == outer.run_id
        assert outer.parent_run_id is None
        assert inner.root_run_id == outer.root_run_id
        assert outer.run_id == result.run_id

    @pytest.mark.asyncio
    async def test_root_run_record_is_persisted(
        self, tmp_path: Path, runner: AgentRunner, registry: AgentRegistry, traces: TraceStore
    ) -> None:
        registry.register(_agent("demo.echo", lambda ctx, value: "done"))

        result = await runner.invoke(STORY, "demo.echo", {"text": "hi"})

        records = traces.list_runs(STORY)
        assert len(records) == 1
        record = records[0]
        assert record.status == "success"
        assert record.run_id == result.run_id
        assert record.input == {"text": "hi"}
        assert record.output == "done"
        assert (tmp_path / "stories" / STORY / "agent-runs.json").exists()

        reloaded = TraceStore(tmp_path).list_runs(STORY)
        assert reloaded[0].root_run_id == record.root_run_id

    @pytest.mark.asyncio
    async def test_opaque_output_is_recorded_by_type_name(
        self, runner: AgentRunner, registry: AgentRegistry, traces: TraceStore
    ) -> None:
        class Handle:
            pass

        registry.register(_agent("demo.handle", lambda ctx, value: Handle()))

        result = await runner.invoke(STORY, "demo.handle", {})

        assert isinstance(result.output, Handle)
        assert result.trace[0].output.to_json() == {"$opaque": "Handle"}
        assert traces.list_runs(STORY)[0].output == {"$opaque": "Handle"}

    @pytest.mark.asyncio
    async def test_self_referencing_output_is_opaque(
        self, runner: AgentRunner, registry: AgentRegistry, traces: TraceStore
    ) -> None:
        def loop(ctx, value):
            out: dict[str, Any] = {"k": 1}
            out["self"] = out
            return out

        registry.register(_agent("demo.loop", loop))

        result = await runner.invoke(STORY, "demo.loop", {})

        assert result.output["self"] is result.output
        assert [entry.status for entry in result.trace] == ["success"]
        assert result.trace[0].output.to_json() == {"$opaque": "dict"}
        record = traces.list_runs(STORY)[0]
        assert record.status == "success"
        assert len(record.trace) == 1

    @pytest.mark.asyncio
    async def test_shared_but_acyclic_values_stay_json(self, runner: AgentRunner, registry: AgentRegistry) -> None:
        shared = {"name": "Mara"}
        registry.register(_agent("demo.shared", lambda ctx, value: {"a": shared, "b": [shared, shared]}))

        result = await runner.invoke(STORY, "demo.shared", {})

        assert result.trace[0].output.to_json() == {"a": shared, "b": [shared, shared]}

    @pytest.mark.asyncio
    async def test_sync_run_functions_are_supported(self, runner: AgentRunner, registry: AgentRegistry) -> None:
        registry.register(_agent("demo.sync", lambda ctx, value: 42))

        result = await runner.invoke(STORY, "demo.sync", {})

        assert result.output == 42


class TestLimits:
    """Depth, cycle, call-count and whitelist gates."""

    @pytest.mark.asyncio
    async def test_depth_limit_rejects_before_running(self, runner: AgentRunner, registry: AgentRegistry) -> None:
        ran: list[str] = []

        def deepest(ctx, value):
            ran.append("d")
            return "unreachable"

        registry.register(_agent("demo.a", _calls("demo.b")))
        registry.register(_agent("demo.b", _calls("demo.c")))
        registry.register(_agent("demo.c", _calls("demo.d")))
        registry.register(_agent("demo.d", deepest))

        with pytest.raises(AgentDepthExceededError) as excinfo:
            await runner.invoke(STORY, "demo.a", {}, AgentCallOptions(max_depth=2))

        assert excinfo.value.max_depth == 2
        assert ran == []

    @pytest.mark.asyncio
    async def test_cycle_error_reports_path(self, runner: AgentRunner, registry: AgentRegistry) -> None:
        registry.register(_agent("demo.a", _calls("demo.b")))
        registry.register(_agent("demo.b", _calls("demo.a")))

        with pytest.raises(AgentCycleError) as excinfo:
            await runner.invoke(STORY, "demo.a", {})

        assert excinfo.value.path == ("demo.a", "demo.b", "demo.a")
        assert "demo.a -> demo.b -> demo.a" in str(excinfo.value)

    @pytest.mark.asyncio
    async def test_call_limit_caught_by_caller(
        self, runner: AgentRunner, registry: AgentRegistry, traces: TraceStore
    ) -> None:
        async def guarded(ctx, _input):
            try:
                return await ctx.invoke_agent("demo.c", {})
            except AgentCallLimitExceededError:
                return "fallback"

        registry.register(_agent("demo.a", _calls("demo.b")))
        registry.register(_agent("demo.b", guarded))
        registry.register(_agent("demo.c", lambda ctx, value: "c"))

        result = await runner.invoke(STORY, "demo.a", {}, AgentCallOptions(max_calls=2))

        assert result.output == "fallback"
        assert [entry.status for entry in result.trace] == ["success", "success"]
        assert {entry.agent_name for entry in result.trace} == {"demo.a", "demo.b"}
        assert traces.list_runs(STORY)[0].status == "success"

    @pytest.mark.asyncio
    async def test_call_limit_uncaught_fails_root(
        self, runner: AgentRunner, registry: AgentRegistry, traces: TraceStore
    ) -> None:
        registry.register(_agent("demo.a", _calls("demo.b")))
        registry.register(_agent("demo.b", _calls("demo.c")))
        registry.register(_agent("demo.c", lambda ctx, value: "c"))

        with pytest.raises(AgentCallLimitExceededError) as excinfo:
            await runner.invoke(STORY, "demo.a", {}, AgentCallOptions(max_calls=2))

        assert excinfo.value.max_calls == 2
        record = traces.list_runs(STORY)[0]
        assert record.status == "error"
        assert "call limit" in (record.error or "")
        assert [entry.status for entry in record.trace] == ["error", "error"]
        assert [entry.agent_name for entry in record.trace] == ["demo.a", "demo.b"]

    @pytest.mark.asyncio
    async def test_whitelist_blocks_unlisted_callee(self, runner: AgentRunner, registry: AgentRegistry) -> None:
        registry.register(_agent("demo.a", _calls("demo.c"), allowed_calls=("demo.b",)))
        registry.register(_agent("demo.b", lambda ctx, value: "b"))
        registry.register(_agent("demo.c", lambda ctx, value: "c"))

        with pytest.raises(AgentPermissionError) as excinfo:
            await runner.invoke(STORY, "demo.a", {})

        assert (excinfo.value.caller, excinfo.value.callee) == ("demo.a", "demo.c")

    @pytest.mark.asyncio
    async def test_whitelist_allows_listed_callee(self, runner: AgentRunner, registry: AgentRegistry) -> None:
        registry.register(_agent("demo.a", _calls("demo.b"), allowed_calls=("demo.b",)))
        registry.register(_agent("demo.b", lambda ctx, value: "b"))

        result = await runner.invoke(STORY, "demo.a", {})

        assert result.output == "b"

    @pytest.mark.asyncio
    async def test_rejected_call_adds_no_trace_entry(self, runner: AgentRunner, registry: AgentRegistry) -> None:
        async def tries_self(ctx, _input):
            try:
                await ctx.invoke_agent("demo.a", {})
            except AgentCycleError:
                return "caught"
            return "unreachable"

        registry.register(_agent("demo.a", tries_self))

        result = await runner.invoke(STORY, "demo.a", {})

        assert result.output == "caught"
        assert len(result.trace) == 1


class TestFailures:
    """Validation, timeouts and unknown agents."""

    @pytest.mark.asyncio
    async def test_unknown_agent(self, runner: AgentRunner, traces: TraceStore) -> None:
        with pytest.raises(AgentNotRegisteredError) as excinfo:
            await runner.invoke(STORY, "demo.nope", {})

        assert excinfo.value.name == "demo.nope"
        record = traces.list_runs(STORY)[0]
        assert record.status == "error"
        assert record.trace == []

    @pytest.mark.asyncio
    async def test_invalid_input_never_runs(self, runner: AgentRunner, registry: AgentRegistry) -> None:
        ran: list[Any] = []
        registry.register(
            _agent(
                "demo.strict",
                lambda ctx, value: ran.append(value),
                input_schema=object_schema({"text": {"type": "string"}}, required=("text",)),
            )
        )

        with pytest.raises(AgentValidationError) as excinfo:
            await runner.invoke(STORY, "demo.strict", {"text": 5})

        assert excinfo.value.kind == "input"
        assert excinfo.value.path == ("text",)
        assert ran == []

    @pytest.mark.asyncio
    async def test_invalid_output_is_an_error(self, runner: AgentRunner, registry: AgentRegistry) -> None:
        registry.register(
            _agent(
                "demo.bad",
                lambda ctx, value: {"count": "three"},
                output_schema=object_schema({"count": {"type": "integer"}}),
            )
        )

        with pytest.raises(AgentValidationError) as excinfo:
            await runner.invoke(STORY, "demo.bad", {})

        assert excinfo.value.kind == "output"

    @pytest.mark.asyncio
    async def test_timeout(self, runner: AgentRunner, registry: AgentRegistry, traces: TraceStore) -> None:
        async def slow(ctx, _input):
            await asyncio.sleep(5)
            return "late"

        registry.register(_agent("demo.slow", slow))

        with pytest.raises(AgentTimeoutError) as excinfo:
            await runner.invoke(STORY, "demo.slow", {}, AgentCallOptions(timeout_ms=20))

        assert excinfo.value.timeout_ms == 20
        record = traces.list_runs(STORY)[0]
        assert record.status == "error"
        assert record.trace[0].status == "error"

    @pytest.mark.asyncio
    async def test_timeout_does_not_cancel_the_work(
        self, runner: AgentRunner, registry: AgentRegistry, caplog: pytest.LogCaptureFixture
    ) -> None:
        release = asyncio.Event()
        finished: list[str] = []

        async def slow(ctx, _input):
            await release.wait()
            finished.append("done")
            return "late"

        registry.register(_agent("demo.slow", slow))

        with pytest.raises(AgentTimeoutError):
            await runner.invoke(STORY, "demo.slow", {}, AgentCallOptions(timeout_ms=20))

        caplog.set_level("INFO", logger="errata.agents.runner")
        release.set()
        for _ in range(5):
            await asyncio.sleep(0)

        assert finished == ["done"]
        assert any("finished late" in message for message in caplog.messages)

    @pytest.mark.asyncio
    async def test_agent_exception_propagates_and_is_traced(
        self, runner: AgentRunner, registry: AgentRegistry, traces: TraceStore
    ) -> None:
        def boom(ctx, value):
            raise RuntimeError("kaboom")

        registry.register(_agent("demo.boom", boom))

        with pytest.raises(RuntimeError, match="kaboom"):
            await runner.invoke(STORY, "demo.boom", {})

        record = traces.list_runs(STORY)[0]
        assert record.error == "kaboom"
        assert record.trace[0].error == "kaboom"
