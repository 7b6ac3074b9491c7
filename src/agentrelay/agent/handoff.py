"""Handoff resolution — delegation pushes a frame, return pops one."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass

from agentrelay.agent.agent import Agent
from agentrelay.agent.registry import AgentRegistry
from agentrelay.agent.state import Frame, RunState, TaskRecord, TaskStatus, generate_task_id
from agentrelay.context import Conversation
from agentrelay.errors import HandoffProtocolError
from agentrelay.llm.handoff import (
    RETURN_TOOL_NAME,
    HandoffCall,
    HandoffKind,
    HandoffSpec,
    handoff_tool_name,
)
from agentrelay.llm.message import Message

logger = logging.getLogger(__name__)


@dataclass
class HandoffOutcome:
    kind: HandoffKind
    from_agent: Agent
    to_agent: Agent
    task_id: str
    marker: Message


def task_message(task_id: str, delegator: str, input: str) -> Message:
    """Opening user message of an executor's thread."""
    return Message.user(f"[task_id: {task_id}] [delegated by: {delegator}]\n\n{input}")


class HandoffResolver:
    """Applies handoff calls to a RunState.

    Only handoffs the active agent lists in ``Agent.handoffs`` are allowed,
    and only targets present in the registry are advertised.
    """

    def __init__(self, registry: AgentRegistry) -> None:
        self.registry = registry

    def specs_for(self, agent: Agent, state: RunState) -> list[HandoffSpec]:
        """Handoff tools to advertise for ``agent`` this turn."""
        specs: list[HandoffSpec] = []
        for name in agent.handoffs:
            target = self.registry.resolve(name)
            if target is None:
                logger.warning(
                    "Agent %s lists handoff to unknown agent %s; not advertised",
                    agent.name,
                    name,
                )
                continue
            specs.append(HandoffSpec.delegate(target.name, target.description))
        if state.stack:
            specs.append(HandoffSpec.return_to_delegator())
        return specs

    def apply(self, call: HandoffCall, state: RunState) -> HandoffOutcome:
        if call.kind is HandoffKind.RETURN:
            return self.return_to_delegator(call, state)
        return self.delegate(call, state)

    def resolve_target(self, call: HandoffCall, state: RunState) -> Agent:
        """The agent a delegation would switch to, validated against the caller."""
        delegator = state.agent
        target = self.registry.resolve(call.target)
        if target is None:
            raise HandoffProtocolError(f"handoff to unknown agent {call.target!r}")
        allowed = {handoff_tool_name(n) for n in delegator.handoffs}
        if handoff_tool_name(target.name) not in allowed:
            raise HandoffProtocolError(
                f"agent {delegator.name!r} may not hand off to {target.name!r}"
            )
        return target

    def delegate(self, call: HandoffCall, state: RunState) -> HandoffOutcome:
        delegator = state.agent
        target = self.resolve_target(call, state)
        task_id = call.task_id or generate_task_id()

        state.stack.push(
            Frame(
                agent=delegator,
                task_id=task_id,
                call_id=call.call_id,
                conversation=state.thread,
                executor=target.name,
            )
        )

        record = state.tasks.get(task_id)
        if record is None:
            record = TaskRecord(
                task_id=task_id,
                parent_agent=delegator.name,
                child_agent=target.name,
                description=call.input,
            )
            state.tasks[task_id] = record
        else:
            record.status = TaskStatus.PENDING
            record.child_agent = target.name
        record.record(delegator.name, call.input)

        thread = state.task_threads.get((target.name, task_id))
        if thread is None:
            thread = Conversation()
            state.task_threads[(target.name, task_id)] = thread
        thread.append(task_message(task_id, delegator.name, call.input))

        state.agent = target
        state.thread = thread
        state.consecutive_tool_turns = 0

        logger.info(
            "Delegation %s -> %s (task %s, depth %d)",
            delegator.name,
            target.name,
            task_id,
            len(state.stack),
        )
        marker = Message.handoff_marker(
            kind=HandoffKind.DELEGATE.value,
            from_agent=delegator.name,
            to_agent=target.name,
            task_id=task_id,
            input=call.input,
        )
        return HandoffOutcome(HandoffKind.DELEGATE, delegator, target, task_id, marker)

    def return_to_delegator(self, call: HandoffCall, state: RunState) -> HandoffOutcome:
        executor = state.agent
        return_to = call.return_to_agent
        if return_to:
            agent = self.registry.resolve(return_to)
            if agent is None:
                raise HandoffProtocolError(
                    f"return_to_agent {return_to!r} is not a known agent"
                )
            return_to = agent.name
        frame = state.stack.pop_for_return(task_id=call.task_id, agent=return_to)

        if frame.executor and frame.executor != executor.name:
            logger.debug(
                "Task %s was delegated to %s but returned by %s",
                frame.task_id,
                frame.executor,
                executor.name,
            )

        # Close out the executor's own return call; keep its thread for reuse
        state.thread.append(
            Message.tool_result_message(
                call.call_id,
                f"Result delivered to {frame.agent.name}.",
                tool_name=RETURN_TOOL_NAME,
            )
        )
        state.task_threads[(executor.name, frame.task_id)] = state.thread

        payload = {
            "task_id": frame.task_id,
            "from_agent": executor.name,
            "result": call.input,
            "is_task_complete": call.is_task_complete,
        }
        frame.conversation.append(
            Message.tool_result_message(
                frame.call_id,
                json.dumps(payload, ensure_ascii=False),
                tool_name=handoff_tool_name(executor.name),
            )
        )

        record = state.tasks.get(frame.task_id)
        if record is not None:
            record.record(executor.name, call.input)
            record.finish(call.input, call.is_task_complete)

        state.agent = frame.agent
        state.thread = frame.conversation
        state.consecutive_tool_turns = 0

        logger.info(
            "Return %s -> %s (task %s, complete=%s, depth %d)",
            executor.name,
            frame.agent.name,
            frame.task_id,
            call.is_task_complete,
            len(state.stack),
        )
        marker = Message.handoff_marker(
            kind=HandoffKind.RETURN.value,
            from_agent=executor.name,
            to_agent=frame.agent.name,
            task_id=frame.task_id,
            input=call.input,
            is_task_complete=call.is_task_complete,
        )
        return HandoffOutcome(
            HandoffKind.RETURN, executor, frame.agent, frame.task_id, marker
        )
