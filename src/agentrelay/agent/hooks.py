"""Lifecycle hooks.

Subclass and override what you need; every method is an async no-op.
``RunHooks`` watches a whole run, ``AgentHooks`` is attached to one agent
and fires only while that agent is active.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from agentrelay.agent.agent import Agent
    from agentrelay.llm.handoff import HandoffCall
    from agentrelay.llm.message import ToolCall, ToolResultPart
    from agentrelay.llm.model import ModelRequest, ModelResponse
    from agentrelay.session.context import RunContext


class RunHooks:
    async def on_run_start(self, ctx: RunContext, agent: Agent) -> None:
        pass

    async def on_turn_start(self, ctx: RunContext, agent: Agent, turn: int) -> None:
        pass

    async def on_turn_end(self, ctx: RunContext, agent: Agent, turn: int) -> None:
        pass

    async def on_before_handoff(
        self, ctx: RunContext, from_agent: Agent, call: HandoffCall
    ) -> None:
        """Runs before a handoff is applied. Raising aborts the handoff."""

    async def on_after_handoff(
        self, ctx: RunContext, from_agent: Agent, to_agent: Agent, call: HandoffCall
    ) -> None:
        pass

    async def on_run_end(self, ctx: RunContext, agent: Agent, output: Any) -> None:
        pass


class AgentHooks:
    async def on_agent_start(self, ctx: RunContext, agent: Agent) -> None:
        pass

    async def on_before_model_call(
        self, ctx: RunContext, agent: Agent, request: ModelRequest
    ) -> None:
        pass

    async def on_after_model_call(
        self, ctx: RunContext, agent: Agent, response: ModelResponse
    ) -> None:
        pass

    async def on_before_tool_call(
        self, ctx: RunContext, agent: Agent, call: ToolCall
    ) -> None:
        pass

    async def on_after_tool_call(
        self, ctx: RunContext, agent: Agent, call: ToolCall, result: ToolResultPart
    ) -> None:
        pass

    async def on_before_handoff(
        self, ctx: RunContext, agent: Agent, call: HandoffCall
    ) -> None:
        pass

    async def on_after_handoff(
        self, ctx: RunContext, agent: Agent, to_agent: Agent, call: HandoffCall
    ) -> None:
        pass

    async def on_agent_end(self, ctx: RunContext, agent: Agent, output: Any) -> None:
        pass
