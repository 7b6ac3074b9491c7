"""Tool registry — register, look up, and dispatch tools."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from typing import Any

from agentrelay.llm.message import ToolCall, ToolResultPart
from agentrelay.session.context import RunContext
from agentrelay.tool.base import BaseTool

logger = logging.getLogger(__name__)


class ToolRegistry:
    """Registry of available tools.

    Each agent gets a registry built from its bound tools; ``dispatch`` is
    the bridge between a model's tool call and the tool's execution.
    """

    def __init__(self, tools: Iterable[BaseTool] | None = None) -> None:
        self._tools: dict[str, BaseTool] = {}
        if tools:
            self.register_many(tools)

    def register(self, tool: BaseTool) -> None:
        """Register a tool instance."""
        if tool.name in self._tools:
            logger.warning("Tool %s already registered, overwriting", tool.name)
        self._tools[tool.name] = tool

    def register_many(self, tools: Iterable[BaseTool]) -> None:
        """Register multiple tools."""
        for tool in tools:
            self.register(tool)

    def get(self, name: str) -> BaseTool | None:
        """Get a tool by name."""
        return self._tools.get(name)

    def get_specs(self) -> list[dict[str, Any]]:
        """Get OpenAI tool specs for every registered tool."""
        return [t.to_openai_spec() for t in self._tools.values()]

    def names(self) -> list[str]:
        """Get all registered tool names."""
        return list(self._tools.keys())

    async def dispatch(
        self, tool_call: ToolCall, ctx: RunContext | None = None
    ) -> ToolResultPart:
        """Dispatch a tool call to the appropriate tool.

        Unknown tools and tool failures come back as error results so the
        model can see and correct them.
        """
        tool = self._tools.get(tool_call.name)
        if tool is None:
            logger.warning("Model called unknown tool %s", tool_call.name)
            payload = {
                "error": "unknown_tool",
                "tool": tool_call.name,
                "message": f"Unknown tool: {tool_call.name}",
                "available": self.names(),
            }
            return ToolResultPart(
                tool_call_id=tool_call.id,
                content=json.dumps(payload),
                is_error=True,
                tool_name=tool_call.name,
            )

        content, is_error = await tool(tool_call.arguments, ctx)
        return ToolResultPart(
            tool_call_id=tool_call.id,
            content=str(content),
            is_error=is_error,
            tool_name=tool_call.name,
        )

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: str) -> bool:
        return name in self._tools
