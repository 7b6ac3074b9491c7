"""Agent registry — name-keyed lookup of the agents a run may reach."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping

from agentrelay.agent.agent import Agent, discover_agents
from agentrelay.llm.handoff import HANDOFF_PREFIX, handoff_tool_name
from agentrelay.tool.base import BaseTool

logger = logging.getLogger(__name__)


class AgentRegistry:
    """Registry of available agents.

    Agents refer to their handoff targets by name; the registry is where
    those names are resolved, so agents can be defined in any order and
    may reference each other cyclically.
    """

    def __init__(self, agents: Iterable[Agent] | None = None) -> None:
        self._agents: dict[str, Agent] = {}
        for agent in agents or ():
            self.register(agent)

    def register(self, agent: Agent) -> None:
        """Register an agent, replacing any agent with the same name."""
        existing = self._agents.get(agent.name)
        if existing is not None and existing is not agent:
            logger.warning("Agent %s already registered, overwriting", agent.name)
        self._agents[agent.name] = agent

    def get(self, name: str) -> Agent | None:
        """Get an agent by exact name."""
        return self._agents.get(name)

    def resolve(self, name: str) -> Agent | None:
        """Get an agent by name, or by the slug used in its handoff tool name."""
        agent = self._agents.get(name)
        if agent is not None:
            return agent
        wanted = handoff_tool_name(name)
        for candidate in self._agents.values():
            if handoff_tool_name(candidate.name) == wanted:
                return candidate
        if name.startswith(HANDOFF_PREFIX):
            return self.resolve(name[len(HANDOFF_PREFIX) :])
        return None

    def overlay(self, *agents: Agent) -> AgentRegistry:
        """A copy of this registry with ``agents`` placed over same-named entries.

        The original registry is left untouched.
        """
        layered = AgentRegistry()
        layered._agents = {**self._agents, **{a.name: a for a in agents}}
        return layered

    def names(self) -> list[str]:
        """Get all registered agent names."""
        return list(self._agents.keys())

    def discover(
        self, search_dirs: list[str], tools: Mapping[str, BaseTool] | None = None
    ) -> None:
        """Discover and register agents from markdown files."""
        for agent in discover_agents(search_dirs, tools=tools):
            self.register(agent)
            logger.info("Discovered agent: %s", agent.name)

    def delegators(self) -> list[Agent]:
        return [a for a in self._agents.values() if a.delegator]

    def executors(self) -> list[Agent]:
        return [a for a in self._agents.values() if a.executor]

    def __contains__(self, name: str) -> bool:
        return name in self._agents

    def __len__(self) -> int:
        return len(self._agents)
