"""In-memory registry of agents that are currently streaming."""

from __future__ import annotations

import itertools
import logging
import threading
import time
from dataclasses import dataclass

from ..storage.types import utcnow_iso

__all__ = ["ActiveAgent", "ActiveAgentRegistry"]

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class ActiveAgent:
    id: str
    story_id: str
    agent_name: str
    started_at: str

    def to_dict(self) -> dict[str, str]:
        return {
            "id": self.id,
            "story_id": self.story_id,
            "agent_name": self.agent_name,
            "started_at": self.started_at,
        }


class ActiveAgentRegistry:
    """Tracks running agents so a UI can show what is in flight."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._active: dict[str, ActiveAgent] = {}
        self._counter = itertools.count(1)

    def register(self, story_id: str, agent_name: str) -> str:
        with self._lock:
            activity_id = f"aa-{int(time.time() * 1000):x}-{next(self._counter)}"
            self._active[activity_id] = ActiveAgent(activity_id, story_id, agent_name, utcnow_iso())
        LOGGER.debug("Agent active: %s (%s) for story %s", agent_name, activity_id, story_id)
        return activity_id

    def unregister(self, activity_id: str) -> bool:
        with self._lock:
            removed = self._active.pop(activity_id, None)
        if removed is not None:
            LOGGER.debug("Agent inactive: %s (%s)", removed.agent_name, activity_id)
        return removed is not None

    def list(self, story_id: str | None = None) -> list[ActiveAgent]:
        with self._lock:
            agents = list(self._active.values())
        if story_id is not None:
            agents = [agent for agent in agents if agent.story_id == story_id]
        return sorted(agents, key=lambda agent: agent.started_at)

    def __len__(self) -> int:
        return len(self._active)
