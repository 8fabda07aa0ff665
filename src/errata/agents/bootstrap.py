"""One-time registration of the built-in agents."""

from __future__ import annotations

import logging
import threading

__all__ = ["ensure_core_agents_registered"]

LOGGER = logging.getLogger(__name__)

_lock = threading.Lock()
_registered = False


def ensure_core_agents_registered() -> None:
    """Register every core agent, its blocks, role and instructions once."""
    global _registered
    if _registered:
        return
    with _lock:
        if _registered:
            return
        from .core import CORE_MODULES

        for module in CORE_MODULES:
            module.register()
        _registered = True
    LOGGER.info("Registered %d core agent module(s)", len(CORE_MODULES))
