"""Async AI client wrapper built around OpenAI-compatible endpoints."""

from __future__ import annotations

import inspect
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Iterable, List, Mapping, MutableMapping, Sequence, cast

import httpx
from openai import AsyncOpenAI, APIConnectionError, APIError, APIStatusError, RateLimitError
from openai.lib.streaming.chat import ChatCompletionStreamEvent
from openai.types.chat import (
    ChatCompletionMessageParam,
    ChatCompletionToolChoiceOptionParam,
    ChatCompletionToolParam,
)
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

__all__ = ["AIClient", "AIStreamEvent", "ClientSettings"]

LOGGER = logging.getLogger(__name__)

# Extra delta fields used by OpenAI-compatible servers for chain-of-thought text.
_REASONING_FIELDS: tuple[str, ...] = ("reasoning_content", "reasoning")
_TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    APIError,
    APIStatusError,
    APIConnectionError,
    RateLimitError,
    httpx.TimeoutException,
)


@dataclass(slots=True)
class ClientSettings:
    """Subset of provider settings required to configure the AI client."""

    base_url: str
    api_key: str
    model: str
    request_timeout: float | None = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    default_headers: Mapping[str, str] | None = None
    include_usage: bool = True
    debug_logging: bool = False


@dataclass(slots=True)
class AIStreamEvent:
    """Normalized representation of streaming deltas.

    ``type`` is one of ``content.delta``, ``reasoning.delta``,
    ``tool_calls.function.arguments.done``, ``finish`` or ``usage``.
    """

    type: str
    content: str | None = None
    tool_name: str | None = None
    tool_index: int | None = None
    tool_arguments: str | None = None
    tool_call_id: str | None = None
    finish_reason: str | None = None
    usage: Mapping[str, Any] | None = None


class AIClient:
    """Async client providing streaming helpers with retry semantics."""

    def __init__(self, settings: ClientSettings, *, client: AsyncOpenAI | None = None) -> None:
        self._settings = settings
        self._client = client or self._build_client(settings)

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    async def stream_chat(
        self,
        messages: Iterable[Mapping[str, Any] | ChatCompletionMessageParam],
        *,
        model: str | None = None,
        tools: Iterable[ChatCompletionToolParam] | None = None,
        tool_choice: ChatCompletionToolChoiceOptionParam | None = None,
        temperature: float | None = None,
        max_completion_tokens: int | None = None,
        **extra_params: Any,
    ) -> AsyncIterator[AIStreamEvent]:
        """Stream chat completions for the provided messages."""

        payload = self._build_chat_payload(
            messages=self._coerce_messages(messages),
            model=model,
            tools=tools,
            tool_choice=tool_choice,
            temperature=temperature,
            max_completion_tokens=max_completion_tokens,
            extra_params=extra_params,
        )
        LOGGER.debug(
            "Starting streamed chat completion via %s with %s message(s)",
            payload["model"],
            len(payload["messages"]),
        )
        if self._settings.debug_logging:
            self._log_prompt_payload(payload)

        # A failure after the first yielded event is final.
        emitted = False

        def should_retry(exc: BaseException) -> bool:
            return not emitted and isinstance(exc, _TRANSIENT_ERRORS)

        async for attempt in self._retrying(should_retry):
            with attempt:
                tool_ids: dict[int, str] = {}
                async with self._client.chat.completions.stream(**payload) as stream:
                    async for event in stream:
                        for normalized in self._normalize_stream_event(event, tool_ids):
                            emitted = True
                            yield normalized
                break

    def _build_client(self, settings: ClientSettings) -> AsyncOpenAI:
        headers = dict(settings.default_headers) if settings.default_headers else None
        return AsyncOpenAI(
            api_key=settings.api_key or "unset",
            base_url=settings.base_url,
            timeout=settings.request_timeout,
            default_headers=headers,
        )

    def _retrying(self, predicate: Any) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(1, self._settings.max_retries)),
            wait=wait_exponential(
                multiplier=self._settings.retry_min_seconds,
                max=self._settings.retry_max_seconds,
            ),
            retry=retry_if_exception(predicate),
        )

    def _coerce_messages(
        self, messages: Iterable[Mapping[str, Any] | ChatCompletionMessageParam]
    ) -> List[ChatCompletionMessageParam]:
        normalized: List[ChatCompletionMessageParam] = []
        for message in messages:
            if isinstance(message, MutableMapping):
                normalized.append(cast(ChatCompletionMessageParam, dict(message)))
            else:
                try:
                    normalized.append(cast(ChatCompletionMessageParam, dict(message)))
                except TypeError as exc:
                    raise TypeError("Messages must be mapping-like objects") from exc
        if not normalized:
            raise ValueError("At least one message is required to start a chat")
        return normalized

    def _build_chat_payload(
        self,
        *,
        messages: Sequence[ChatCompletionMessageParam],
        model: str | None,
        tools: Iterable[ChatCompletionToolParam] | None,
        tool_choice: ChatCompletionToolChoiceOptionParam | None,
        temperature: float | None,
        max_completion_tokens: int | None,
        extra_params: Mapping[str, Any],
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": model or self._settings.model,
            "messages": list(messages),
        }
        tool_list = list(tools) if tools else []
        if tool_list:
            payload["tools"] = tool_list
            if tool_choice:
                payload["tool_choice"] = tool_choice
        if temperature is not None:
            payload["temperature"] = temperature
        if max_completion_tokens is not None:
            payload["max_completion_tokens"] = max_completion_tokens
        if self._settings.include_usage:
            payload["stream_options"] = {"include_usage": True}
        if extra_params:
            payload.update(extra_params)
        return payload

    def _normalize_stream_event(
        self,
        event: ChatCompletionStreamEvent[Any],
        tool_ids: dict[int, str],
    ) -> list[AIStreamEvent]:
        event_type = getattr(event, "type", None)
        if event_type is None:
            return []

        if event_type == "chunk":
            return self._normalize_chunk(getattr(event, "chunk", None), tool_ids)
        if event_type == "content.delta":
            delta_text = getattr(event, "delta", None)
            if delta_text:
                return [AIStreamEvent(type=event_type, content=str(delta_text))]
            return []
        if event_type == "tool_calls.function.arguments.done":
            index = getattr(event, "index", None)
            call_id = getattr(event, "id", None) or tool_ids.get(index if index is not None else -1)
            return [
                AIStreamEvent(
                    type=event_type,
                    tool_name=getattr(event, "name", None),
                    tool_index=index,
                    tool_arguments=getattr(event, "arguments", None),
                    tool_call_id=call_id,
                )
            ]
        return []

    def _normalize_chunk(self, chunk: Any, tool_ids: dict[int, str]) -> list[AIStreamEvent]:
        if chunk is None:
            return []
        events: list[AIStreamEvent] = []
        for choice in getattr(chunk, "choices", None) or ():
            delta = getattr(choice, "delta", None)
            if delta is not None:
                for tool_call in getattr(delta, "tool_calls", None) or ():
                    call_id = getattr(tool_call, "id", None)
                    index = getattr(tool_call, "index", None)
                    if call_id and index is not None:
                        tool_ids[index] = call_id
                reasoning = _extract_reasoning(delta)
                if reasoning:
                    events.append(AIStreamEvent(type="reasoning.delta", content=reasoning))
            finish_reason = getattr(choice, "finish_reason", None)
            if finish_reason:
                events.append(AIStreamEvent(type="finish", finish_reason=str(finish_reason)))
        usage = getattr(chunk, "usage", None)
        if usage is not None:
            events.append(
                AIStreamEvent(
                    type="usage",
                    usage={
                        "prompt_tokens": getattr(usage, "prompt_tokens", 0) or 0,
                        "completion_tokens": getattr(usage, "completion_tokens", 0) or 0,
                    },
                )
            )
        return events

    def _log_prompt_payload(self, payload: Mapping[str, Any]) -> None:
        try:
            serialized = json.dumps(payload, ensure_ascii=False, indent=2)
        except (TypeError, ValueError):
            LOGGER.debug("AI prompt payload (unserializable): %s", payload)
        else:
            LOGGER.debug("AI prompt payload:\n%s", serialized)

    async def aclose(self) -> None:
        """Close the underlying OpenAI client to release network resources."""

        close = getattr(self._client, "close", None)
        if close is None:
            return
        result = close()
        if inspect.isawaitable(result):
            await result


def _extract_reasoning(delta: Any) -> str | None:
    for field_name in _REASONING_FIELDS:
        value = getattr(delta, field_name, None)
        if value is None:
            extra = getattr(delta, "model_extra", None) or {}
            value = extra.get(field_name)
        if isinstance(value, str) and value:
            return value
    return None
