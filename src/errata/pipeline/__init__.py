"""Streaming pipeline: tool-calling session, events and the runner factory."""

from .events import AgentStreamCompletion, AgentStreamEvent, EventStreamResult, ToolCallRecord
from .session import ToolCallingSession, map_finish_reason
from .streaming import DEFAULT_INSTRUCTIONS, StreamingRunRequest, StreamingRunnerConfig, create_streaming_runner

__all__ = [
    "AgentStreamCompletion",
    "AgentStreamEvent",
    "DEFAULT_INSTRUCTIONS",
    "EventStreamResult",
    "StreamingRunRequest",
    "StreamingRunnerConfig",
    "ToolCallRecord",
    "ToolCallingSession",
    "create_streaming_runner",
    "map_finish_reason",
]
