"""Agent stream events, NDJSON encoding and the event-stream result.

An :class:`EventStreamResult` drains an async event source in a background
task. Consumers read the buffered events once, through :meth:`events` or
:meth:`ndjson`, and await :attr:`completion` for the aggregated outcome.
The pump runs whether or not anyone reads, so the completion always settles.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Literal, Mapping

__all__ = [
    "AgentStreamCompletion",
    "AgentStreamEvent",
    "EventStreamResult",
    "StreamEventType",
    "ToolCallRecord",
]

LOGGER = logging.getLogger(__name__)

StreamEventType = Literal["text", "reasoning", "tool-call", "tool-result", "finish"]


@dataclass(slots=True, frozen=True)
class AgentStreamEvent:
    """One streamed item; which fields are set depends on ``type``."""

    type: StreamEventType
    text: str | None = None
    id: str | None = None
    tool_name: str | None = None
    args: Mapping[str, Any] | None = None
    result: Any = None
    finish_reason: str | None = None
    step_count: int | None = None

    @classmethod
    def text_delta(cls, text: str) -> AgentStreamEvent:
        return cls(type="text", text=text)

    @classmethod
    def reasoning_delta(cls, text: str) -> AgentStreamEvent:
        return cls(type="reasoning", text=text)

    @classmethod
    def tool_call(cls, call_id: str, tool_name: str, args: Mapping[str, Any]) -> AgentStreamEvent:
        return cls(type="tool-call", id=call_id, tool_name=tool_name, args=dict(args))

    @classmethod
    def tool_result(cls, call_id: str, tool_name: str, result: Any) -> AgentStreamEvent:
        return cls(type="tool-result", id=call_id, tool_name=tool_name, result=result)

    @classmethod
    def finish(cls, finish_reason: str, step_count: int) -> AgentStreamEvent:
        return cls(type="finish", finish_reason=finish_reason, step_count=step_count)

    def to_dict(self) -> dict[str, Any]:
        if self.type in ("text", "reasoning"):
            return {"type": self.type, "text": self.text or ""}
        if self.type == "tool-call":
            return {"type": self.type, "id": self.id, "toolName": self.tool_name, "args": dict(self.args or {})}
        if self.type == "tool-result":
            return {"type": self.type, "id": self.id, "toolName": self.tool_name, "result": self.result}
        return {"type": self.type, "finishReason": self.finish_reason, "stepCount": self.step_count}

    def to_ndjson(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, default=str) + "\n"


@dataclass(slots=True)
class ToolCallRecord:
    id: str
    tool_name: str
    args: Mapping[str, Any]
    result: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {"toolName": self.tool_name, "args": dict(self.args), "result": self.result}


@dataclass(slots=True, frozen=True)
class AgentStreamCompletion:
    """Aggregate of a finished stream."""

    text: str
    reasoning: str
    tool_calls: tuple[ToolCallRecord, ...] = ()
    step_count: int = 0
    finish_reason: str = "unknown"

    def to_dict(self) -> dict[str, Any]:
        return {
            "text": self.text,
            "reasoning": self.reasoning,
            "toolCalls": [call.to_dict() for call in self.tool_calls],
            "stepCount": self.step_count,
            "finishReason": self.finish_reason,
        }


@dataclass(slots=True)
class _Aggregate:
    text: list[str] = field(default_factory=list)
    reasoning: list[str] = field(default_factory=list)
    calls: dict[str, ToolCallRecord] = field(default_factory=dict)
    step_count: int = 0
    finish_reason: str = "unknown"

    def add(self, event: AgentStreamEvent) -> None:
        if event.type == "text":
            self.text.append(event.text or "")
        elif event.type == "reasoning":
            self.reasoning.append(event.text or "")
        elif event.type == "tool-call":
            key = event.id or f"call-{len(self.calls)}"
            self.calls[key] = ToolCallRecord(key, event.tool_name or "", dict(event.args or {}))
        elif event.type == "tool-result":
            record = self.calls.get(event.id or "")
            if record is not None:
                record.result = event.result
        elif event.type == "finish":
            self.step_count = event.step_count or 0
            self.finish_reason = event.finish_reason or "unknown"

    def build(self) -> AgentStreamCompletion:
        return AgentStreamCompletion(
            text="".join(self.text),
            reasoning="".join(self.reasoning),
            tool_calls=tuple(self.calls.values()),
            step_count=self.step_count,
            finish_reason=self.finish_reason,
        )


_END = object()


class EventStreamResult:
    """Buffered, single-consumer view of an agent's event stream."""

    def __init__(self, source: AsyncIterator[AgentStreamEvent]) -> None:
        loop = asyncio.get_running_loop()
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._completion: asyncio.Future[AgentStreamCompletion] = loop.create_future()
        self._consumed = False
        self._task = loop.create_task(self._pump(source))

    @property
    def completion(self) -> asyncio.Future[AgentStreamCompletion]:
        return self._completion

    @property
    def done(self) -> bool:
        return self._completion.done()

    async def _pump(self, source: AsyncIterator[AgentStreamEvent]) -> None:
        aggregate = _Aggregate()
        try:
            async for event in source:
                aggregate.add(event)
                self._queue.put_nowait(event)
        except asyncio.CancelledError:
            if not self._completion.done():
                self._completion.cancel()
            raise
        except Exception as exc:
            LOGGER.warning("Agent stream failed: %s", exc)
            if not self._completion.done():
                self._completion.set_exception(exc)
        else:
            if not self._completion.done():
                self._completion.set_result(aggregate.build())
        finally:
            self._queue.put_nowait(_END)

    async def events(self) -> AsyncIterator[AgentStreamEvent]:
        """Yield buffered events until the stream ends.

        A failed stream simply stops; the error surfaces on :attr:`completion`.
        """
        if self._consumed:
            raise RuntimeError("Event stream has already been consumed")
        self._consumed = True
        while True:
            item = await self._queue.get()
            if item is _END:
                return
            yield item

    async def ndjson(self) -> AsyncIterator[str]:
        async for event in self.events():
            yield event.to_ndjson()

    async def aclose(self) -> None:
        """Stop the underlying stream early."""
        if not self._task.done():
            self._task.cancel()
            await asyncio.wait([self._task])
        if not self._completion.done():
            self._completion.cancel()
            self._queue.put_nowait(_END)
