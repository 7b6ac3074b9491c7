"""Run results."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, TypeVar

from pydantic import BaseModel

from agentrelay.agent.state import RunState, TaskRecord
from agentrelay.llm.message import Message, TokenUsage
from agentrelay.llm.model import ModelResponse

M = TypeVar("M", bound=BaseModel)


class RunOutcome(enum.Enum):
    """Why did the run end?"""

    COMPLETED = "completed"  # An agent produced a content-only answer
    MAX_TURNS = "max_turns"  # Hit the turn budget


@dataclass
class PendingDelegation:
    """A delegation still open when the run ended."""

    delegator: str
    executor: str
    task_id: str


@dataclass
class RunResult:
    input: str | list[Message]
    final_output: Any = None
    last_agent: str = ""
    outcome: RunOutcome = RunOutcome.COMPLETED
    turns: int = 0
    items: list[Message] = field(default_factory=list)
    raw_responses: list[ModelResponse] = field(default_factory=list)
    usage: TokenUsage = field(default_factory=TokenUsage)
    pending: list[PendingDelegation] = field(default_factory=list)
    tasks: dict[str, TaskRecord] = field(default_factory=dict)
    run_id: str = ""

    @property
    def completed(self) -> bool:
        return self.outcome is RunOutcome.COMPLETED

    def final_output_as(self, model: type[M]) -> M:
        """Final output coerced to ``model``."""
        if isinstance(self.final_output, model):
            return self.final_output
        if isinstance(self.final_output, str):
            return model.model_validate_json(self.final_output)
        return model.model_validate(self.final_output)

    def to_input_list(self) -> list[Message]:
        """Input plus generated items, minus markers; feed to a follow-up run."""
        prior = [Message.user(self.input)] if isinstance(self.input, str) else list(self.input)
        return prior + [m for m in self.items if not m.is_marker]

    @classmethod
    def from_state(
        cls,
        state: RunState,
        input: str | list[Message],
        outcome: RunOutcome,
        run_id: str = "",
    ) -> RunResult:
        return cls(
            input=input,
            final_output=state.final_output,
            last_agent=state.agent.name,
            outcome=outcome,
            turns=state.turn,
            items=list(state.transcript),
            raw_responses=list(state.raw_responses),
            usage=state.usage,
            pending=[
                PendingDelegation(
                    delegator=f.agent.name, executor=f.executor, task_id=f.task_id
                )
                for f in state.stack.frames
            ],
            tasks=dict(state.tasks),
            run_id=run_id,
        )
