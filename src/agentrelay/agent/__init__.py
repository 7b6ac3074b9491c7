"""Agent system — definitions, registry, handoffs, and the runner."""

from agentrelay.agent.agent import Agent, AgentConfig, discover_agents
from agentrelay.agent.guardrail import (
    GuardrailResult,
    InputGuardrail,
    OutputGuardrail,
    input_guardrail,
    output_guardrail,
)
from agentrelay.agent.handoff import HandoffOutcome, HandoffResolver
from agentrelay.agent.hooks import AgentHooks, RunHooks
from agentrelay.agent.registry import AgentRegistry
from agentrelay.agent.result import PendingDelegation, RunOutcome, RunResult
from agentrelay.agent.runner import RunConfig, Runner, RunOptions, RunStream
from agentrelay.agent.state import (
    Frame,
    HandoffStack,
    RunState,
    TaskRecord,
    TaskStatus,
    generate_task_id,
)

__all__ = [
    "Agent",
    "AgentConfig",
    "discover_agents",
    "GuardrailResult",
    "InputGuardrail",
    "OutputGuardrail",
    "input_guardrail",
    "output_guardrail",
    "HandoffOutcome",
    "HandoffResolver",
    "AgentHooks",
    "RunHooks",
    "AgentRegistry",
    "PendingDelegation",
    "RunOutcome",
    "RunResult",
    "RunConfig",
    "Runner",
    "RunOptions",
    "RunStream",
    "Frame",
    "HandoffStack",
    "RunState",
    "TaskRecord",
    "TaskStatus",
    "generate_task_id",
]
