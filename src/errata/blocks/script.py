"""Evaluation of user-authored script blocks.

A script is either a single Python expression or a statement body that
``return``s a value. Scripts see the block context plus fragment lookup
helpers and a small table of builtins. Imports, generators, names and
attributes starting with an underscore, frame and generator internals, and
string literals containing ``__`` are rejected before anything runs.
"""

from __future__ import annotations

import ast
import logging
from typing import Any, Callable, Mapping

from ..storage.stories import StoryStore
from ..storage.types import Fragment
from .types import AgentBlockContext

__all__ = [
    "SAFE_BUILTINS",
    "ScriptRejectedError",
    "create_script_helpers",
    "build_script_namespace",
    "evaluate_script",
]

LOGGER = logging.getLogger(__name__)

SAFE_BUILTINS: dict[str, Any] = {
    "abs": abs,
    "all": all,
    "any": any,
    "bool": bool,
    "dict": dict,
    "enumerate": enumerate,
    "filter": filter,
    "float": float,
    "int": int,
    "isinstance": isinstance,
    "len": len,
    "list": list,
    "map": map,
    "max": max,
    "min": min,
    "range": range,
    "reversed": reversed,
    "round": round,
    "set": set,
    "sorted": sorted,
    "str": str,
    "sum": sum,
    "tuple": tuple,
    "zip": zip,
}

_FORBIDDEN_NODES = (
    ast.Import,
    ast.ImportFrom,
    ast.Global,
    ast.Nonlocal,
    ast.AsyncFunctionDef,
    ast.Await,
    ast.Yield,
    ast.YieldFrom,
)
# Attributes that lead to frames, or to attribute lookups inside format strings.
_FORBIDDEN_ATTRIBUTES = frozenset(
    {
        "gi_frame",
        "gi_code",
        "gi_yieldfrom",
        "cr_frame",
        "cr_code",
        "cr_await",
        "cr_origin",
        "ag_frame",
        "ag_code",
        "ag_await",
        "f_back",
        "f_builtins",
        "f_code",
        "f_globals",
        "f_locals",
        "tb_frame",
        "tb_next",
        "format",
        "format_map",
    }
)
_ENTRY = "script_main"


class ScriptRejectedError(ValueError):
    """The script uses a construct outside the allowed surface."""


def create_script_helpers(store: StoryStore, story_id: str) -> dict[str, Callable[..., Any]]:
    """Read-only fragment lookups exposed to scripts."""

    def get_fragment(fragment_id: str) -> Fragment | None:
        return store.get_fragment(story_id, fragment_id)

    def get_fragments(fragment_type: str | None = None) -> list[Fragment]:
        return store.list_fragments(story_id, fragment_type)

    def get_fragments_by_tag(tag: str) -> list[Fragment]:
        return store.get_fragments_by_tag(story_id, tag)

    def get_fragment_by_tag(tag: str) -> Fragment | None:
        matches = store.get_fragments_by_tag(story_id, tag)
        return matches[0] if matches else None

    return {
        "get_fragment": get_fragment,
        "get_fragments": get_fragments,
        "get_fragments_by_tag": get_fragments_by_tag,
        "get_fragment_by_tag": get_fragment_by_tag,
    }


def build_script_namespace(
    ctx: AgentBlockContext,
    helpers: Mapping[str, Callable[..., Any]] | None = None,
) -> dict[str, Any]:
    namespace: dict[str, Any] = {
        "ctx": ctx,
        "story": ctx.story,
        "prose_fragments": list(ctx.prose_fragments),
        "sticky_guidelines": list(ctx.sticky_guidelines),
        "sticky_knowledge": list(ctx.sticky_knowledge),
        "sticky_characters": list(ctx.sticky_characters),
        "guideline_shortlist": list(ctx.guideline_shortlist),
        "knowledge_shortlist": list(ctx.knowledge_shortlist),
        "character_shortlist": list(ctx.character_shortlist),
    }
    if helpers:
        namespace.update(helpers)
    return namespace


def _check(tree: ast.AST) -> None:
    for node in ast.walk(tree):
        if isinstance(node, _FORBIDDEN_NODES):
            raise ScriptRejectedError(f"{type(node).__name__} is not allowed in scripts")
        if isinstance(node, ast.Name) and node.id.startswith("_"):
            raise ScriptRejectedError(f"Name {node.id!r} is not allowed")
        if isinstance(node, ast.Attribute) and (node.attr.startswith("_") or node.attr in _FORBIDDEN_ATTRIBUTES):
            raise ScriptRejectedError(f"Attribute {node.attr!r} is not allowed")
        if isinstance(node, (ast.FunctionDef, ast.ClassDef)) and node.name.startswith("_"):
            raise ScriptRejectedError(f"Name {node.name!r} is not allowed")
        if isinstance(node, ast.Constant) and isinstance(node.value, str) and "__" in node.value:
            raise ScriptRejectedError("Strings containing '__' are not allowed")


def evaluate_script(source: str, namespace: Mapping[str, Any]) -> Any:
    """Run ``source`` against ``namespace`` and return its value.

    Raises whatever the script raises; callers decide how to degrade.
    """
    env: dict[str, Any] = {"__builtins__": dict(SAFE_BUILTINS)}
    env.update(namespace)

    try:
        expression = ast.parse(source, mode="eval")
    except SyntaxError:
        expression = None
    if expression is not None:
        _check(expression)
        return eval(compile(expression, "<script>", "eval"), env)

    body = ast.parse(source, mode="exec")
    _check(body)
    wrapper = ast.parse(f"def {_ENTRY}():\n    pass\n", mode="exec")
    wrapper.body[0].body = body.body or [ast.Pass()]
    ast.fix_missing_locations(wrapper)
    exec(compile(wrapper, "<script>", "exec"), env)
    return env[_ENTRY]()
