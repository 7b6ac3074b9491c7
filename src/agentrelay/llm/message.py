"""Message types for the LLM abstraction."""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Literal

from pydantic import JsonValue, TypeAdapter, ValidationError

logger = logging.getLogger(__name__)

RAW_ARGUMENTS_KEY = "raw_arguments"

_ARGUMENTS_ADAPTER: TypeAdapter[dict[str, JsonValue]] = TypeAdapter(
    dict[str, JsonValue]
)


@dataclass
class TextPart:
    """A text content part."""

    type: Literal["text"] = "text"
    text: str = ""


@dataclass
class ToolCallPart:
    """A tool call content part."""

    type: Literal["tool_call"] = "tool_call"
    id: str = ""
    name: str = ""
    arguments: str = ""  # JSON string


@dataclass
class ToolResultPart:
    """A tool result content part."""

    type: Literal["tool_result"] = "tool_result"
    tool_call_id: str = ""
    content: str = ""
    is_error: bool = False
    tool_name: str = ""


@dataclass
class HandoffPart:
    """Transcript marker recording a delegation or a return.

    Markers are kept in the run transcript for callers and observers; they
    are never replayed to a model.
    """

    type: Literal["handoff"] = "handoff"
    kind: str = "delegate"  # "delegate" | "return"
    from_agent: str = ""
    to_agent: str = ""
    task_id: str = ""
    input: str = ""
    is_task_complete: bool = True


ContentPart = TextPart | ToolCallPart | ToolResultPart | HandoffPart


@dataclass
class ToolCall:
    """A complete tool call extracted from a model response.

    ``arguments`` is always a mapping. When the model produced text that is
    not a JSON object, the text is kept under ``raw_arguments``.
    """

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    raw_arguments: str = ""

    @classmethod
    def from_json(cls, id: str, name: str, arguments: str) -> ToolCall:
        return cls(
            id=id or new_call_id(),
            name=name,
            arguments=parse_tool_arguments(arguments, name),
            raw_arguments=arguments,
        )

    def to_part(self) -> ToolCallPart:
        arguments = self.raw_arguments or json.dumps(self.arguments)
        return ToolCallPart(id=self.id, name=self.name, arguments=arguments)


@dataclass
class TokenUsage:
    """Token usage stats from an LLM call."""

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0

    def add(self, other: TokenUsage) -> None:
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens
        self.total_tokens += other.total_tokens


def new_call_id() -> str:
    """Id for a tool call the provider did not label."""
    return f"call_{uuid.uuid4().hex[:24]}"


def parse_tool_arguments(text: str, tool_name: str = "") -> dict[str, Any]:
    """Decode tool-call arguments into a JSON-value mapping.

    Empty input means no arguments. Anything that is not a JSON object is
    preserved verbatim as ``{"raw_arguments": text}``.
    """
    if not text or not text.strip():
        return {}
    try:
        return _ARGUMENTS_ADAPTER.validate_json(text)
    except ValidationError:
        logger.warning(
            "Failed to parse tool call arguments for %s: %s",
            tool_name or "<unnamed>",
            text[:200],
        )
        return {RAW_ARGUMENTS_KEY: text}


@dataclass
class Message:
    """A conversation message with typed content parts."""

    role: Literal["system", "user", "assistant", "tool"]
    parts: list[ContentPart] = field(default_factory=list)
    name: str | None = None  # author agent for assistant messages

    @property
    def text(self) -> str:
        """Get concatenated text content."""
        return "".join(p.text for p in self.parts if isinstance(p, TextPart))

    @property
    def tool_calls(self) -> list[ToolCall]:
        """Get all tool calls in this message."""
        return [
            ToolCall.from_json(p.id, p.name, p.arguments)
            for p in self.parts
            if isinstance(p, ToolCallPart)
        ]

    @property
    def tool_result(self) -> ToolResultPart | None:
        for p in self.parts:
            if isinstance(p, ToolResultPart):
                return p
        return None

    @property
    def handoff(self) -> HandoffPart | None:
        for p in self.parts:
            if isinstance(p, HandoffPart):
                return p
        return None

    @property
    def is_marker(self) -> bool:
        """True for transcript-only handoff markers."""
        return self.handoff is not None

    # --- Convenience constructors ---

    @classmethod
    def system(cls, text: str) -> Message:
        return cls(role="system", parts=[TextPart(text=text)])

    @classmethod
    def user(cls, text: str) -> Message:
        return cls(role="user", parts=[TextPart(text=text)])

    @classmethod
    def assistant(
        cls,
        text: str = "",
        tool_calls: list[ToolCallPart] | None = None,
        name: str | None = None,
    ) -> Message:
        parts: list[ContentPart] = []
        if text:
            parts.append(TextPart(text=text))
        if tool_calls:
            parts.extend(tool_calls)
        return cls(role="assistant", parts=parts, name=name)

    @classmethod
    def tool_result_message(
        cls,
        tool_call_id: str,
        content: str,
        is_error: bool = False,
        tool_name: str = "",
    ) -> Message:
        return cls(
            role="tool",
            parts=[
                ToolResultPart(
                    tool_call_id=tool_call_id,
                    content=content,
                    is_error=is_error,
                    tool_name=tool_name,
                )
            ],
        )

    @classmethod
    def handoff_marker(
        cls,
        kind: str,
        from_agent: str,
        to_agent: str,
        task_id: str,
        input: str,
        is_task_complete: bool = True,
    ) -> Message:
        return cls(
            role="system",
            parts=[
                HandoffPart(
                    kind=kind,
                    from_agent=from_agent,
                    to_agent=to_agent,
                    task_id=task_id,
                    input=input,
                    is_task_complete=is_task_complete,
                )
            ],
        )

    def to_openai_dict(self) -> dict[str, Any]:
        """Convert to OpenAI API format."""
        if self.role == "tool":
            part = self.tool_result
            if part is not None:
                return {
                    "role": "tool",
                    "tool_call_id": part.tool_call_id,
                    "content": part.content,
                }
            return {"role": "tool", "content": ""}

        if self.role == "assistant":
            result: dict[str, Any] = {"role": "assistant"}
            text_parts = [p for p in self.parts if isinstance(p, TextPart)]
            tc_parts = [p for p in self.parts if isinstance(p, ToolCallPart)]

            if text_parts:
                result["content"] = "".join(p.text for p in text_parts)
            else:
                result["content"] = None

            if tc_parts:
                result["tool_calls"] = [
                    {
                        "id": p.id,
                        "type": "function",
                        "function": {"name": p.name, "arguments": p.arguments},
                    }
                    for p in tc_parts
                ]

            return result

        # system or user
        return {"role": self.role, "content": self.text}
