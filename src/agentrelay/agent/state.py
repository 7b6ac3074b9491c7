"""Run state — the delegation stack, task records, and per-run bookkeeping."""

from __future__ import annotations

import enum
import time
import uuid
from dataclasses import dataclass, field

from agentrelay.agent.agent import Agent
from agentrelay.context import Conversation
from agentrelay.errors import HandoffProtocolError
from agentrelay.llm.message import Message, TokenUsage
from agentrelay.llm.model import ModelResponse


def generate_task_id() -> str:
    return f"task-{uuid.uuid4().hex[:12]}"


class TaskStatus(enum.Enum):
    PENDING = "pending"
    INTERIM = "interim"  # executor reported back with is_task_complete=false
    COMPLETE = "complete"


@dataclass
class TaskInteraction:
    role: str
    content: str
    timestamp: float = field(default_factory=time.time)


@dataclass
class TaskRecord:
    """What the run knows about one delegated task."""

    task_id: str
    parent_agent: str
    child_agent: str
    description: str = ""
    status: TaskStatus = TaskStatus.PENDING
    result: str | None = None
    created_at: float = field(default_factory=time.time)
    completed_at: float | None = None
    history: list[TaskInteraction] = field(default_factory=list)

    def record(self, role: str, content: str) -> None:
        self.history.append(TaskInteraction(role=role, content=content))

    def finish(self, result: str, complete: bool) -> None:
        self.result = result
        self.status = TaskStatus.COMPLETE if complete else TaskStatus.INTERIM
        if complete:
            self.completed_at = time.time()


@dataclass
class Frame:
    """An unresolved delegation: who to resume, and where."""

    agent: Agent  # the delegator
    task_id: str
    call_id: str  # id of the delegator's handoff call, answered on return
    conversation: Conversation  # the delegator's thread
    executor: str = ""


class HandoffStack:
    """LIFO of unresolved delegations."""

    def __init__(self) -> None:
        self._frames: list[Frame] = []

    def push(self, frame: Frame) -> None:
        self._frames.append(frame)

    def peek(self) -> Frame | None:
        return self._frames[-1] if self._frames else None

    @property
    def frames(self) -> tuple[Frame, ...]:
        return tuple(self._frames)

    def task_ids(self) -> list[str]:
        return [f.task_id for f in self._frames]

    def pop_for_return(
        self, task_id: str | None = None, agent: str | None = None
    ) -> Frame:
        """Remove and return the frame a return should resume.

        With ``agent``, the most recent frame delegated by that agent is
        chosen (the one for ``task_id`` when given). Otherwise ``task_id``
        selects the frame, and with neither the top frame is used.

        Raises:
            HandoffProtocolError: no frame satisfies the request.
        """
        if not self._frames:
            raise HandoffProtocolError("return with no pending delegation")

        index: int | None = None
        if agent:
            candidates = [
                i for i in reversed(range(len(self._frames)))
                if self._frames[i].agent.name == agent
            ]
            if not candidates:
                raise HandoffProtocolError(
                    f"return_to_agent {agent!r} has no pending delegation"
                )
            index = candidates[0]
            if task_id:
                matching = [i for i in candidates if self._frames[i].task_id == task_id]
                if not matching:
                    raise HandoffProtocolError(
                        f"return_to_agent {agent!r} did not delegate task {task_id!r}; "
                        f"its pending tasks: {[self._frames[i].task_id for i in candidates]}"
                    )
                index = matching[0]
        elif task_id:
            for i in reversed(range(len(self._frames))):
                if self._frames[i].task_id == task_id:
                    index = i
                    break
            if index is None:
                raise HandoffProtocolError(
                    f"return for unknown task {task_id!r}; pending: {self.task_ids()}"
                )
        else:
            index = len(self._frames) - 1

        return self._frames.pop(index)

    def __len__(self) -> int:
        return len(self._frames)

    def __bool__(self) -> bool:
        return bool(self._frames)


@dataclass
class RunState:
    """Mutable state of one run. Owned by a single runner task."""

    agent: Agent
    thread: Conversation
    turn: int = 0
    transcript: list[Message] = field(default_factory=list)
    stack: HandoffStack = field(default_factory=HandoffStack)
    tasks: dict[str, TaskRecord] = field(default_factory=dict)
    # (executor name, task id) -> executor thread, kept for re-delegation
    task_threads: dict[tuple[str, str], Conversation] = field(default_factory=dict)
    raw_responses: list[ModelResponse] = field(default_factory=list)
    usage: TokenUsage = field(default_factory=TokenUsage)
    consecutive_tool_turns: int = 0
    final_output: object = None

    @classmethod
    def start(cls, agent: Agent, input: list[Message]) -> RunState:
        return cls(agent=agent, thread=Conversation(messages=list(input)))

    def current_task_id(self) -> str | None:
        """Task the active agent is working on, if it was delegated one."""
        for frame in reversed(self.stack.frames):
            if frame.executor == self.agent.name:
                return frame.task_id
        return None

    def append(self, message: Message) -> None:
        """Add to the active thread and the run transcript."""
        self.thread.append(message)
        self.transcript.append(message)

    def record_response(self, response: ModelResponse) -> None:
        self.raw_responses.append(response)
        self.usage.add(response.usage)
