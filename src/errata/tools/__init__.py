"""Agent tool types and the built-in fragment tools."""

from .fragment_tools import create_fragment_tools
from .types import EMPTY_PARAMETERS, FunctionTool, Tool, ToolArgumentError, ToolSet, ToolSpec, filter_tools

__all__ = [
    "EMPTY_PARAMETERS",
    "FunctionTool",
    "Tool",
    "ToolArgumentError",
    "ToolSet",
    "ToolSpec",
    "create_fragment_tools",
    "filter_tools",
]
