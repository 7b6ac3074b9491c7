"""Agent definitions — built in code or loaded from YAML frontmatter in markdown files."""

from __future__ import annotations

import dataclasses
import logging
import os
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import yaml
from pydantic import BaseModel

from agentrelay.errors import ConfigurationError
from agentrelay.llm.model import Model, ModelSettings
from agentrelay.tool.base import BaseTool
from agentrelay.tool.registry import ToolRegistry

if TYPE_CHECKING:
    from agentrelay.agent.guardrail import InputGuardrail, OutputGuardrail
    from agentrelay.agent.hooks import AgentHooks

logger = logging.getLogger(__name__)

DELEGATOR_GUIDANCE = (
    "You can delegate tasks to specialized agents and receive results back "
    "when they complete. When delegating a task, give:\n"
    "- a task_id for tracking (one is assigned if you omit it)\n"
    "- clear success criteria for the task\n\n"
    "When a result comes back, match its task_id with the task you delegated "
    "and continue your workflow."
)

EXECUTOR_GUIDANCE = (
    "You are working on a task delegated by another agent. When the task is "
    "done, call return_to_delegator with your result in `input` and the "
    "task_id you were given. Set is_task_complete to false to send an interim "
    "report instead."
)


@dataclass
class AgentConfig:
    """Configuration for an agent, typically from YAML frontmatter."""

    name: str
    description: str = ""
    tools: list[str] = field(default_factory=list)
    handoffs: list[str] = field(default_factory=list)
    model: str | None = None  # Override model for this agent
    temperature: float | None = None
    max_tokens: int | None = None
    delegator: bool = False
    executor: bool = False


@dataclass(frozen=True)
class Agent:
    """An immutable agent descriptor.

    ``handoffs`` names the agents this one may delegate to; names are
    resolved against the run's AgentRegistry when the run needs them.

    Agents may also be defined as markdown files with YAML frontmatter:

        ---
        name: researcher
        description: Finds and summarizes sources
        tools: [search, fetch]
        handoffs: [writer]
        executor: true
        ---

        You are the research specialist...
    """

    name: str
    instructions: str = ""
    description: str = ""
    model: str | Model | None = None
    model_settings: ModelSettings | None = None
    tools: tuple[BaseTool, ...] = ()
    handoffs: tuple[str, ...] = ()
    output_type: type[BaseModel] | None = None
    hooks: AgentHooks | None = None
    input_guardrails: tuple[InputGuardrail, ...] = ()
    output_guardrails: tuple[OutputGuardrail, ...] = ()
    delegator: bool = False
    executor: bool = False

    def __post_init__(self) -> None:
        if not self.name or not self.name.strip():
            raise ConfigurationError("agent name must not be empty")
        # Accept lists from callers; store tuples
        for attr in ("tools", "handoffs", "input_guardrails", "output_guardrails"):
            object.__setattr__(self, attr, tuple(getattr(self, attr)))

    def clone(self, **changes: Any) -> Agent:
        """Copy of this agent with ``changes`` applied."""
        return dataclasses.replace(self, **changes)

    def system_prompt(self) -> str:
        """Instructions plus role guidance for delegators and executors."""
        sections = [self.instructions.strip()] if self.instructions.strip() else []
        if self.delegator:
            sections.append(DELEGATOR_GUIDANCE)
        if self.executor:
            sections.append(EXECUTOR_GUIDANCE)
        return "\n\n".join(sections)

    def tool_registry(self) -> ToolRegistry:
        return ToolRegistry(self.tools)

    def output_schema(self) -> dict[str, Any] | None:
        if self.output_type is None:
            return None
        return self.output_type.model_json_schema()

    @classmethod
    def from_config(
        cls,
        config: AgentConfig,
        instructions: str = "",
        tools: Mapping[str, BaseTool] | None = None,
    ) -> Agent:
        """Build an agent from an AgentConfig, binding tools by name."""
        bound: list[BaseTool] = []
        available = tools or {}
        for tool_name in config.tools:
            tool = available.get(tool_name)
            if tool is None:
                logger.warning("Agent %s: tool %s not available", config.name, tool_name)
                continue
            bound.append(tool)

        settings = None
        if config.temperature is not None or config.max_tokens is not None:
            settings = ModelSettings(
                temperature=config.temperature, max_tokens=config.max_tokens
            )

        return cls(
            name=config.name,
            instructions=instructions,
            description=config.description,
            model=config.model,
            model_settings=settings,
            tools=tuple(bound),
            handoffs=tuple(config.handoffs),
            delegator=config.delegator,
            executor=config.executor,
        )

    @classmethod
    def from_markdown(
        cls, path: str, tools: Mapping[str, BaseTool] | None = None
    ) -> Agent:
        """Load an agent definition from a markdown file with YAML frontmatter."""
        with open(path, "r", encoding="utf-8") as f:
            content = f.read()

        config_dict, prompt = _parse_frontmatter(content)
        if "name" not in config_dict:
            raise ConfigurationError(f"{path}: frontmatter has no 'name'")
        config = AgentConfig(**config_dict)
        return cls.from_config(config, instructions=prompt.strip(), tools=tools)

    @classmethod
    def from_dict(
        cls,
        data: dict[str, Any],
        instructions: str = "",
        tools: Mapping[str, BaseTool] | None = None,
    ) -> Agent:
        """Create an agent from a dictionary config."""
        return cls.from_config(AgentConfig(**data), instructions=instructions, tools=tools)


def _parse_frontmatter(content: str) -> tuple[dict[str, Any], str]:
    """Parse YAML frontmatter from markdown content.

    Returns (config_dict, body_text).
    """
    pattern = re.compile(r"^---\s*\n(.*?)\n---\s*\n(.*)", re.DOTALL)
    match = pattern.match(content)

    if not match:
        return {}, content

    frontmatter = match.group(1)
    body = match.group(2)

    try:
        config = yaml.safe_load(frontmatter) or {}
    except yaml.YAMLError as e:
        logger.warning("Invalid agent frontmatter: %s", e)
        config = {}

    if not isinstance(config, dict):
        config = {}
    return config, body


def discover_agents(
    search_dirs: list[str], tools: Mapping[str, BaseTool] | None = None
) -> list[Agent]:
    """Discover agent definitions from markdown files in directories.

    Searches for *.md files with YAML frontmatter containing a 'name' field.
    """
    agents = []
    for dir_path in search_dirs:
        if not os.path.isdir(dir_path):
            continue
        for fname in sorted(os.listdir(dir_path)):
            if not fname.endswith(".md"):
                continue
            full_path = os.path.join(dir_path, fname)
            try:
                agents.append(Agent.from_markdown(full_path, tools=tools))
            except (OSError, TypeError, ConfigurationError) as e:
                logger.warning("Skipping agent file %s: %s", full_path, e)
    return agents
