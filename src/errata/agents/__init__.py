"""Agent registry, runner and traces.

The concrete agents live in :mod:`errata.agents.core` and are registered
lazily through :func:`errata.agents.bootstrap.ensure_core_agents_registered`.
"""

from .registry import AGENT_REGISTRY, AgentRegistry
from .types import AgentCallOptions, AgentDefinition, AgentInvocationContext, AgentRunResult, AgentTraceEntry

__all__ = [
    "AGENT_REGISTRY",
    "AgentCallOptions",
    "AgentDefinition",
    "AgentInvocationContext",
    "AgentRegistry",
    "AgentRunResult",
    "AgentTraceEntry",
]
