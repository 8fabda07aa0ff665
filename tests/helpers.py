"""Shared test helpers and stub classes.

Reusable fakes for tests that drive the streaming pipeline. Import from here
instead of duplicating these classes in individual test files.
"""

from __future__ import annotations

import json
from typing import Any, AsyncIterator, Iterable, Mapping, Sequence

from errata.ai.client import AIStreamEvent


def text(content: str) -> AIStreamEvent:
    return AIStreamEvent(type="content.delta", content=content)


def reasoning(content: str) -> AIStreamEvent:
    return AIStreamEvent(type="reasoning.delta", content=content)


def tool_call(name: str, arguments: Mapping[str, Any] | str, call_id: str = "call-1", index: int = 0) -> AIStreamEvent:
    payload = arguments if isinstance(arguments, str) else json.dumps(arguments)
    return AIStreamEvent(
        type="tool_calls.function.arguments.done",
        tool_name=name,
        tool_index=index,
        tool_arguments=payload,
        tool_call_id=call_id,
    )


def finish(reason: str | None = "stop") -> AIStreamEvent:
    return AIStreamEvent(type="finish", finish_reason=reason)


def usage(prompt_tokens: int, completion_tokens: int) -> AIStreamEvent:
    return AIStreamEvent(
        type="usage",
        usage={"prompt_tokens": prompt_tokens, "completion_tokens": completion_tokens},
    )


class FakeModelClient:
    """Scripted stand-in for :class:`errata.ai.client.AIClient`.

    Each call to ``stream_chat`` replays the next queued script. When the
    queue is empty a plain ``"ok"`` reply is streamed.

    Example:
        client = FakeModelClient()
        client.queue([text("Hello"), finish("stop")])
    """

    def __init__(self, scripts: Iterable[Sequence[AIStreamEvent]] = ()) -> None:
        self.scripts: list[list[AIStreamEvent]] = [list(script) for script in scripts]
        self.calls: list[dict[str, Any]] = []

    def queue(self, *scripts: Sequence[AIStreamEvent]) -> None:
        self.scripts.extend(list(script) for script in scripts)

    async def stream_chat(
        self,
        messages: Sequence[Mapping[str, Any]],
        *,
        model: str | None = None,
        tools: Sequence[Mapping[str, Any]] | None = None,
        tool_choice: Any = None,
        temperature: float | None = None,
        max_completion_tokens: int | None = None,
        **kwargs: Any,
    ) -> AsyncIterator[AIStreamEvent]:
        self.calls.append(
            {
                "messages": [dict(message) for message in messages],
                "model": model,
                "tools": list(tools) if tools else None,
                "tool_choice": tool_choice,
                "temperature": temperature,
            }
        )
        script = self.scripts.pop(0) if self.scripts else [text("ok"), finish("stop")]
        for event in script:
            if isinstance(event, Exception):
                raise event
            yield event

    @property
    def last_messages(self) -> list[dict[str, Any]]:
        return self.calls[-1]["messages"]
