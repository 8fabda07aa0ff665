"""Turn ordered context blocks into chat messages."""

from __future__ import annotations

from typing import Iterable, Sequence

from .types import ContextBlock, ContextMessage

__all__ = ["ROLE_RANK", "sort_blocks", "compile_blocks", "find_message"]

ROLE_RANK: dict[str, int] = {"system": 0, "user": 1}
SEPARATOR = "\n\n"


def sort_blocks(blocks: Iterable[ContextBlock]) -> list[ContextBlock]:
    """System blocks first, then by order; ties keep insertion order."""
    indexed = list(enumerate(blocks))
    indexed.sort(key=lambda item: (ROLE_RANK.get(item[1].role, len(ROLE_RANK)), item[1].order, item[0]))
    return [block for _, block in indexed]


def compile_blocks(blocks: Iterable[ContextBlock]) -> list[ContextMessage]:
    """Collapse blocks into at most one message per role."""
    messages: list[ContextMessage] = []
    parts: list[str] = []
    current_role: str | None = None
    for block in sort_blocks(blocks):
        if block.role != current_role and parts:
            messages.append(ContextMessage(role=current_role or "user", content=SEPARATOR.join(parts)))
            parts = []
        current_role = block.role
        parts.append(block.content)
    if parts:
        messages.append(ContextMessage(role=current_role or "user", content=SEPARATOR.join(parts)))
    return messages


def find_message(messages: Sequence[ContextMessage], role: str) -> ContextMessage | None:
    for message in messages:
        if message.role == role:
            return message
    return None
