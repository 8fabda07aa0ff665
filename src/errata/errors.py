"""Exception taxonomy for agent orchestration.

Every error carries the structured values it was built from so callers can
inspect the violated constraint without parsing the message. Messages are
human-readable and name the agent plus the limit or path involved.
"""

from __future__ import annotations

from typing import Sequence

__all__ = [
    "AgentError",
    "AgentConfigurationError",
    "AgentNotRegisteredError",
    "DuplicateAgentError",
    "BlockDefinitionNotFoundError",
    "ProviderNotConfiguredError",
    "AgentLimitError",
    "AgentCallLimitExceededError",
    "AgentDepthExceededError",
    "AgentCycleError",
    "AgentPermissionError",
    "AgentValidationError",
    "AgentTimeoutError",
    "StoryNotFoundError",
    "FragmentNotFoundError",
]


class AgentError(Exception):
    """Base class for every orchestration failure."""


# -----------------------------------------------------------------------------
# Configuration Errors
# -----------------------------------------------------------------------------


class AgentConfigurationError(AgentError):
    """Static wiring problem; never retried."""


class AgentNotRegisteredError(AgentConfigurationError):
    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Agent not registered: {name}")


class DuplicateAgentError(AgentConfigurationError):
    """Raised when two definitions claim the same agent name."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Agent '{name}' is already registered")


class BlockDefinitionNotFoundError(AgentConfigurationError):
    def __init__(self, agent_name: str) -> None:
        self.agent_name = agent_name
        super().__init__(f"No block definition for agent: {agent_name}")


class ProviderNotConfiguredError(AgentConfigurationError):
    def __init__(self, role: str | None = None) -> None:
        self.role = role
        super().__init__("No LLM provider configured. Add a provider in Settings > Providers.")


# -----------------------------------------------------------------------------
# Limit Errors
# -----------------------------------------------------------------------------


class AgentLimitError(AgentError):
    """A runtime bound (calls, depth, cycle, whitelist) was violated."""


class AgentCallLimitExceededError(AgentLimitError):
    def __init__(self, max_calls: int) -> None:
        self.max_calls = max_calls
        super().__init__(f"Agent call limit exceeded ({max_calls})")


class AgentDepthExceededError(AgentLimitError):
    def __init__(self, max_depth: int) -> None:
        self.max_depth = max_depth
        super().__init__(f"Agent call depth exceeded ({max_depth})")


class AgentCycleError(AgentLimitError):
    """Raised when an agent already on the stack is invoked again."""

    def __init__(self, stack: Sequence[str], name: str) -> None:
        self.path = (*stack, name)
        super().__init__(f"Agent cycle detected: {' -> '.join(self.path)}")


class AgentPermissionError(AgentLimitError):
    def __init__(self, caller: str, callee: str) -> None:
        self.caller = caller
        self.callee = callee
        super().__init__(f"Agent {caller} cannot call {callee}")


# -----------------------------------------------------------------------------
# Validation / Timeout
# -----------------------------------------------------------------------------


class AgentValidationError(AgentError):
    """Input or output did not satisfy the agent's schema."""

    def __init__(self, agent_name: str, kind: str, message: str, path: Sequence[str | int] = ()) -> None:
        self.agent_name = agent_name
        self.kind = kind
        self.path = tuple(path)
        self.detail = message
        location = "/".join(str(part) for part in self.path) or "<root>"
        super().__init__(f"Invalid {kind} for agent {agent_name} at {location}: {message}")


class AgentTimeoutError(AgentError):
    def __init__(self, agent_name: str, timeout_ms: int) -> None:
        self.agent_name = agent_name
        self.timeout_ms = timeout_ms
        super().__init__(f"Agent timed out: {agent_name} ({timeout_ms}ms)")


class StoryNotFoundError(LookupError):
    def __init__(self, story_id: str) -> None:
        self.story_id = story_id
        super().__init__(f"Story {story_id} not found")


class FragmentNotFoundError(LookupError):
    def __init__(self, fragment_id: str, kind: str = "Fragment") -> None:
        self.fragment_id = fragment_id
        super().__init__(f"{kind} {fragment_id} not found")
