"""Tool-calling session: the model loop behind every streaming agent.

Each step streams one model response. Tool calls requested in that step are
executed in order, their results are appended to the conversation, and the
next step begins. The loop stops when a step requests no tools or when
``max_steps`` is reached, and then emits exactly one ``finish`` event.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Literal, Mapping, Sequence

from ..ai.providers import ModelClient
from ..ai.usage import TokenUsage, normalize_usage
from ..tools.types import Tool
from .events import AgentStreamEvent

__all__ = [
    "ParsedToolCall",
    "ToolCallingSession",
    "ToolChoice",
    "execute_tool_call",
    "format_tool_result_content",
    "map_finish_reason",
    "parse_tool_arguments",
]

LOGGER = logging.getLogger(__name__)

ToolChoice = Literal["auto", "none", "required"]

_FINISH_REASONS: Mapping[str, str] = {
    "stop": "stop",
    "length": "length",
    "tool_calls": "tool-calls",
    "function_call": "tool-calls",
    "content_filter": "content-filter",
}


def map_finish_reason(reason: str | None) -> str:
    """Translate an OpenAI finish reason into the event vocabulary."""
    if not reason:
        return "unknown"
    return _FINISH_REASONS.get(reason, reason.replace("_", "-"))


# -----------------------------------------------------------------------------
# Tool helpers
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ParsedToolCall:
    call_id: str
    name: str
    arguments: str
    index: int = 0


def parse_tool_arguments(arguments: str | None) -> dict[str, Any]:
    """Parse the JSON argument string of a tool call.

    Raises:
        ValueError: If the string is not a JSON object.
    """
    if not arguments or not arguments.strip():
        return {}
    try:
        parsed = json.loads(arguments)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid JSON in tool arguments: {exc}") from exc
    if not isinstance(parsed, dict):
        raise ValueError(f"Arguments must be a JSON object, got {type(parsed).__name__}")
    return parsed


def format_tool_result_content(result: Any) -> str:
    """Render a tool result as message content for the next model step."""
    if result is None:
        return "null"
    if isinstance(result, str):
        return result
    to_dict = getattr(result, "to_dict", None)
    if callable(to_dict):
        result = to_dict()
    try:
        return json.dumps(result, ensure_ascii=False)
    except (TypeError, ValueError):
        return str(result)


async def execute_tool_call(
    name: str,
    arguments: Mapping[str, Any],
    tools: Mapping[str, Tool],
) -> Any:
    """Run one tool; failures come back as ``{"error": message}``."""
    tool = tools.get(name)
    if tool is None:
        LOGGER.warning("Model requested unknown tool: %s", name)
        return {"error": f"Unknown tool: {name}"}
    started = time.perf_counter()
    try:
        result = await tool.execute(arguments)
    except Exception as exc:
        message = str(exc) or type(exc).__name__
        LOGGER.warning("Tool %s failed: %s", name, message)
        return {"error": message}
    LOGGER.debug("Tool %s finished in %.1fms", name, (time.perf_counter() - started) * 1000)
    return result


# -----------------------------------------------------------------------------
# Session
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class ToolCallingSession:
    """A bounded tool loop over one :class:`ModelClient`.

    Attributes:
        client: Streaming model client.
        model_id: Model name sent with every request.
        instructions: System prompt placed ahead of the conversation.
        tools: Tools the model may call, keyed by name.
        max_steps: Upper bound on model responses.
        tool_choice: ``auto``, ``none`` or ``required``.
        temperature: Sampling temperature, or ``None`` for the provider default.
        total_usage: Token usage summed over all steps, once streaming ends.
    """

    client: ModelClient
    model_id: str
    instructions: str
    tools: Mapping[str, Tool] = field(default_factory=dict)
    max_steps: int = 10
    tool_choice: ToolChoice = "auto"
    temperature: float | None = None
    total_usage: TokenUsage | None = field(default=None, init=False)
    step_count: int = field(default=0, init=False)

    def _tool_params(self) -> list[dict[str, Any]] | None:
        if self.tool_choice == "none" or not self.tools:
            return None
        return [tool.spec.to_openai_tool() for tool in self.tools.values()]

    def _add_usage(self, raw: Any) -> None:
        usage = normalize_usage(raw)
        if usage is None:
            return
        self.total_usage = usage if self.total_usage is None else self.total_usage + usage

    async def stream(self, messages: Sequence[Mapping[str, Any]]) -> AsyncIterator[AgentStreamEvent]:
        """Run the loop over ``messages`` and yield agent stream events."""
        conversation: list[dict[str, Any]] = []
        if self.instructions:
            conversation.append({"role": "system", "content": self.instructions})
        conversation.extend(dict(message) for message in messages)
        tool_params = self._tool_params()
        finish_reason = "unknown"

        while self.step_count < max(1, self.max_steps):
            self.step_count += 1
            LOGGER.debug("Model step %d/%d (%s)", self.step_count, self.max_steps, self.model_id)
            text_parts: list[str] = []
            calls: list[ParsedToolCall] = []
            step_reason: str | None = None

            async for event in self.client.stream_chat(
                conversation,
                model=self.model_id,
                tools=tool_params,
                tool_choice=self.tool_choice if tool_params else None,
                temperature=self.temperature,
            ):
                if event.type == "content.delta" and event.content:
                    text_parts.append(event.content)
                    yield AgentStreamEvent.text_delta(event.content)
                elif event.type == "reasoning.delta" and event.content:
                    yield AgentStreamEvent.reasoning_delta(event.content)
                elif event.type == "tool_calls.function.arguments.done":
                    index = event.tool_index if event.tool_index is not None else len(calls)
                    calls.append(
                        ParsedToolCall(
                            call_id=event.tool_call_id or f"call-{self.step_count}-{index}",
                            name=event.tool_name or "",
                            arguments=event.tool_arguments or "",
                            index=index,
                        )
                    )
                elif event.type == "finish":
                    step_reason = event.finish_reason
                elif event.type == "usage":
                    self._add_usage(event.usage)

            if not calls:
                finish_reason = map_finish_reason(step_reason or "stop")
                break

            finish_reason = "tool-calls"
            conversation.append(
                {
                    "role": "assistant",
                    "content": "".join(text_parts) or None,
                    "tool_calls": [
                        {
                            "id": call.call_id,
                            "type": "function",
                            "function": {"name": call.name, "arguments": call.arguments or "{}"},
                        }
                        for call in calls
                    ],
                }
            )
            for call in calls:
                try:
                    arguments = parse_tool_arguments(call.arguments)
                except ValueError as exc:
                    LOGGER.warning("Failed to parse arguments for tool %s: %s", call.name, exc)
                    yield AgentStreamEvent.tool_call(call.call_id, call.name, {})
                    result: Any = {"error": f"Invalid arguments: {exc}"}
                else:
                    yield AgentStreamEvent.tool_call(call.call_id, call.name, arguments)
                    result = await execute_tool_call(call.name, arguments, self.tools)
                yield AgentStreamEvent.tool_result(call.call_id, call.name, result)
                conversation.append(
                    {
                        "role": "tool",
                        "tool_call_id": call.call_id,
                        "content": format_tool_result_content(result),
                    }
                )

        LOGGER.debug("Session finished: reason=%s steps=%d", finish_reason, self.step_count)
        yield AgentStreamEvent.finish(finish_reason, self.step_count)
