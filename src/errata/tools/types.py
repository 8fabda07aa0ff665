"""Tool types shared by fragment tools, agents and the streaming pipeline.

A tool pairs a :class:`ToolSpec` (what the model sees) with a handler (what
runs when the model calls it). Tool sets are plain ``name -> Tool`` mappings
so agents can add, drop or filter entries with ordinary dict operations.
"""

from __future__ import annotations

import inspect
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Protocol, runtime_checkable

from jsonschema import Draft202012Validator
from jsonschema.exceptions import best_match

__all__ = [
    "ToolSpec",
    "ToolHandler",
    "Tool",
    "FunctionTool",
    "ToolArgumentError",
    "ToolSet",
    "EMPTY_PARAMETERS",
    "filter_tools",
]


EMPTY_PARAMETERS: Mapping[str, Any] = {"type": "object", "properties": {}, "additionalProperties": False}


class ToolArgumentError(ValueError):
    """Raised when a model-supplied argument payload fails its schema."""

    def __init__(self, tool_name: str, message: str) -> None:
        self.tool_name = tool_name
        super().__init__(f"Invalid arguments for {tool_name}: {message}")


# -----------------------------------------------------------------------------
# Tool Specification
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ToolSpec:
    """Model-facing description of a tool.

    Attributes:
        name: Unique identifier for the tool within a tool set.
        description: What the tool does, shown to the model.
        parameters: JSON Schema for the argument object.
        is_write: Whether the tool mutates story content.
    """

    name: str
    description: str
    parameters: Mapping[str, Any] = field(default_factory=lambda: dict(EMPTY_PARAMETERS))
    is_write: bool = False

    def to_openai_tool(self) -> dict[str, Any]:
        """Convert to the chat-completions ``tools`` entry format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": dict(self.parameters) if self.parameters else dict(EMPTY_PARAMETERS),
            },
        }


# Sync or async callable taking the validated argument mapping.
ToolHandler = Callable[[Mapping[str, Any]], Any]


@runtime_checkable
class Tool(Protocol):
    """Anything with a spec and an async ``execute``."""

    @property
    def name(self) -> str:
        ...

    @property
    def spec(self) -> ToolSpec:
        ...

    async def execute(self, arguments: Mapping[str, Any]) -> Any:
        ...


# -----------------------------------------------------------------------------
# Function Tool
# -----------------------------------------------------------------------------


@dataclass
class FunctionTool:
    """Tool wrapping a plain function, validating arguments first.

    Example:
        tool = FunctionTool(
            spec=ToolSpec(
                name="greet",
                description="Greet someone",
                parameters={"type": "object", "properties": {"name": {"type": "string"}}},
            ),
            handler=lambda args: f"Hello, {args.get('name', 'World')}!",
        )
    """

    spec: ToolSpec
    handler: ToolHandler
    _validator: Draft202012Validator = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._validator = Draft202012Validator(dict(self.spec.parameters or EMPTY_PARAMETERS))

    @property
    def name(self) -> str:
        return self.spec.name

    def validate(self, arguments: Mapping[str, Any]) -> None:
        error = best_match(self._validator.iter_errors(dict(arguments)))
        if error is None:
            return
        location = "/".join(str(part) for part in error.absolute_path)
        message = f"{location}: {error.message}" if location else error.message
        raise ToolArgumentError(self.spec.name, message)

    async def execute(self, arguments: Mapping[str, Any]) -> Any:
        self.validate(arguments)
        result = self.handler(arguments)
        if inspect.isawaitable(result):
            result = await result
        return result


ToolSet = dict[str, Tool]


def filter_tools(tools: Mapping[str, Tool], disabled: Any) -> ToolSet:
    """Return a copy of ``tools`` without the names listed in ``disabled``."""
    blocked = set(disabled or ())
    return {name: tool for name, tool in tools.items() if name not in blocked}
