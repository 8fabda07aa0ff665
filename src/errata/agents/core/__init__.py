"""Built-in agents. Each module exposes ``register()``."""

from . import chapters, character_chat, directions, generation, librarian

CORE_MODULES = (generation, librarian, character_chat, directions, chapters)

__all__ = ["CORE_MODULES"]
