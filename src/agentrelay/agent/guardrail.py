"""Input and output guardrails."""

from __future__ import annotations

import inspect
from collections.abc import Awaitable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Union

if TYPE_CHECKING:
    from agentrelay.agent.agent import Agent
    from agentrelay.session.context import RunContext


@dataclass
class GuardrailResult:
    tripwire_triggered: bool = False
    info: Any = None


GuardrailFunction = Callable[
    ["RunContext", "Agent", Any],
    Union[GuardrailResult, Awaitable[GuardrailResult]],
]


@dataclass
class Guardrail:
    """A check over a run's input or an agent's final output.

    The function receives ``(ctx, agent, value)`` and may be sync or async.
    """

    function: GuardrailFunction
    name: str = ""

    def __post_init__(self) -> None:
        if not self.name:
            self.name = getattr(self.function, "__name__", "guardrail")

    async def run(self, ctx: RunContext, agent: Agent, value: Any) -> GuardrailResult:
        result = self.function(ctx, agent, value)
        if inspect.isawaitable(result):
            result = await result
        return result


class InputGuardrail(Guardrail):
    """Checks the run input before the first model call."""


class OutputGuardrail(Guardrail):
    """Checks the final output before the run completes."""


def input_guardrail(func: GuardrailFunction) -> InputGuardrail:
    return InputGuardrail(function=func)


def output_guardrail(func: GuardrailFunction) -> OutputGuardrail:
    return OutputGuardrail(function=func)
