"""Tool system — base classes, function tools, registry, and output truncation."""

from agentrelay.tool.base import (
    BaseTool,
    FunctionTool,
    ToolError,
    ToolOk,
    ToolResult,
    function_tool,
)
from agentrelay.tool.registry import ToolRegistry
from agentrelay.tool.truncation import truncate_output

__all__ = [
    "BaseTool",
    "FunctionTool",
    "ToolError",
    "ToolOk",
    "ToolResult",
    "function_tool",
    "ToolRegistry",
    "truncate_output",
]
