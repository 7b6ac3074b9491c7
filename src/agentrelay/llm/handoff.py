"""Handoff wire convention.

Every reachable agent is advertised to the model as a function tool named
``handoff_to_<agent>``; the path back to a delegator is the
``return_to_delegator`` tool. Requests carry ``HandoffSpec`` objects so that
recognizing a handoff in a response is an exact lookup against what was
advertised. Matching on the ``handoff_to_`` prefix alone is kept as a
fallback for transcripts produced without specs.
"""

from __future__ import annotations

import enum
import logging
import re
from collections.abc import Collection
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from agentrelay.errors import ToolArgumentError
from agentrelay.llm.message import RAW_ARGUMENTS_KEY, ToolCall

logger = logging.getLogger(__name__)

HANDOFF_PREFIX = "handoff_to_"
RETURN_TOOL_NAME = "return_to_delegator"


class HandoffKind(enum.Enum):
    DELEGATE = "delegate"
    RETURN = "return"


class HandoffParams(BaseModel):
    """Arguments accepted by every handoff and return tool."""

    input: str = Field(description="The task, question or result to hand over.")
    task_id: str | None = Field(
        default=None,
        description="Identifier of the task. Reuse it to continue an earlier task.",
    )
    return_to_agent: str | None = Field(
        default=None,
        description="Agent that should receive the result when this task ends.",
    )
    is_task_complete: bool = Field(
        default=True,
        description="False when this is an interim report and more work remains.",
    )


def handoff_tool_name(agent_name: str) -> str:
    """Tool name advertising a handoff to ``agent_name``."""
    slug = re.sub(r"[^a-z0-9_-]+", "_", agent_name.strip().lower()).strip("_")
    return f"{HANDOFF_PREFIX}{slug}"


@dataclass(frozen=True)
class HandoffSpec:
    """A handoff advertised to the model in a request."""

    tool_name: str
    target: str
    kind: HandoffKind = HandoffKind.DELEGATE
    description: str = ""

    @classmethod
    def delegate(cls, agent_name: str, description: str = "") -> HandoffSpec:
        text = f"Hand the conversation over to the {agent_name} agent."
        if description:
            text = f"{text} {description}"
        return cls(
            tool_name=handoff_tool_name(agent_name),
            target=agent_name,
            kind=HandoffKind.DELEGATE,
            description=text,
        )

    @classmethod
    def return_to_delegator(cls) -> HandoffSpec:
        return cls(
            tool_name=RETURN_TOOL_NAME,
            target="",
            kind=HandoffKind.RETURN,
            description=(
                "Return your result to the agent that delegated the current task. "
                "Put the result in `input` and pass the task_id you were given."
            ),
        )

    def to_openai_spec(self) -> dict[str, Any]:
        """Convert to OpenAI function tool specification."""
        schema = HandoffParams.model_json_schema()
        schema.pop("title", None)
        schema.pop("$defs", None)
        return {
            "type": "function",
            "function": {
                "name": self.tool_name,
                "description": self.description,
                "parameters": schema,
            },
        }


@dataclass
class HandoffCall:
    """A handoff requested by the model."""

    target: str
    input: str
    kind: HandoffKind = HandoffKind.DELEGATE
    call_id: str = ""
    task_id: str | None = None
    return_to_agent: str | None = None
    is_task_complete: bool = True
    parameters: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_tool_call(
        cls, tool_call: ToolCall, target: str, kind: HandoffKind
    ) -> HandoffCall:
        """Decode a handoff from the pseudo tool call that carried it."""
        if RAW_ARGUMENTS_KEY in tool_call.arguments and len(tool_call.arguments) == 1:
            raise ToolArgumentError(
                f"{tool_call.name}: arguments are not a JSON object: "
                f"{tool_call.raw_arguments[:200]!r}"
            )
        try:
            params = HandoffParams.model_validate(tool_call.arguments)
        except ValidationError as e:
            raise ToolArgumentError(f"{tool_call.name}: invalid handoff arguments: {e}") from e

        return cls(
            target=target,
            input=params.input,
            kind=kind,
            call_id=tool_call.id,
            task_id=params.task_id or None,
            return_to_agent=params.return_to_agent or None,
            is_task_complete=params.is_task_complete,
            parameters=dict(tool_call.arguments),
        )


def match_handoff(
    tool_call: ToolCall,
    specs: list[HandoffSpec],
    legacy_prefix: bool = True,
    tool_names: Collection[str] = (),
) -> tuple[str, HandoffKind] | None:
    """Return ``(target, kind)`` if ``tool_call`` is a handoff, else None.

    Advertised handoff specs win, then the agent's own ``tool_names``; the
    name prefix is only consulted for names neither of them claims.
    """
    for spec in specs:
        if spec.tool_name == tool_call.name:
            return spec.target, spec.kind

    if not legacy_prefix or tool_call.name in tool_names:
        return None
    if tool_call.name == RETURN_TOOL_NAME:
        return "", HandoffKind.RETURN
    if tool_call.name.startswith(HANDOFF_PREFIX) and len(tool_call.name) > len(
        HANDOFF_PREFIX
    ):
        logger.debug("Matched unadvertised handoff by prefix: %s", tool_call.name)
        return tool_call.name[len(HANDOFF_PREFIX) :], HandoffKind.DELEGATE
    return None


def split_handoffs(
    tool_calls: list[ToolCall],
    specs: list[HandoffSpec],
    legacy_prefix: bool = True,
    tool_names: Collection[str] = (),
) -> tuple[list[ToolCall], list[HandoffCall]]:
    """Separate ordinary tool calls from handoff calls, preserving order."""
    ordinary: list[ToolCall] = []
    handoffs: list[HandoffCall] = []
    for tc in tool_calls:
        matched = match_handoff(tc, specs, legacy_prefix, tool_names)
        if matched is None:
            ordinary.append(tc)
            continue
        target, kind = matched
        handoffs.append(HandoffCall.from_tool_call(tc, target, kind))
    return ordinary, handoffs
