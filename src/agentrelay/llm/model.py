"""Model capability — request/response types and the protocols providers implement."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from dataclasses import dataclass, field, fields, replace
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from agentrelay.llm.handoff import HandoffCall, HandoffSpec, split_handoffs
from agentrelay.llm.message import Message, TokenUsage, ToolCall

if TYPE_CHECKING:
    from agentrelay.llm.retry import RateLimitedRetrier
    from agentrelay.llm.streaming import StreamEvent

# Type alias for tool specs in OpenAI format
ToolSpec = dict[str, Any]


@dataclass
class ModelSettings:
    """Sampling and tool-use settings. ``None`` means provider default."""

    temperature: float | None = None
    top_p: float | None = None
    frequency_penalty: float | None = None
    presence_penalty: float | None = None
    tool_choice: str | None = None
    parallel_tool_calls: bool | None = None
    max_tokens: int | None = None

    def resolve(self, override: ModelSettings | None) -> ModelSettings:
        """Overlay the non-None fields of ``override`` on these settings."""
        if override is None:
            return replace(self)
        changes = {
            f.name: getattr(override, f.name)
            for f in fields(override)
            if getattr(override, f.name) is not None
        }
        return replace(self, **changes)

    def to_kwargs(self) -> dict[str, Any]:
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if getattr(self, f.name) is not None
        }


@dataclass
class ModelRequest:
    """Everything a model needs for one turn."""

    system_instructions: str
    input: list[Message] = field(default_factory=list)
    tools: list[ToolSpec] = field(default_factory=list)
    handoffs: list[HandoffSpec] = field(default_factory=list)
    output_schema: dict[str, Any] | None = None
    settings: ModelSettings = field(default_factory=ModelSettings)
    legacy_handoff_prefix: bool = True

    def to_openai_messages(self) -> list[dict[str, Any]]:
        messages: list[dict[str, Any]] = []
        if self.system_instructions:
            messages.append({"role": "system", "content": self.system_instructions})
        messages.extend(m.to_openai_dict() for m in self.input if not m.is_marker)
        return messages

    def tool_names(self) -> set[str]:
        """Names of the ordinary tools, excluding handoff tools."""
        return {t["function"]["name"] for t in self.tools}

    def tool_specs(self) -> list[ToolSpec]:
        """Ordinary tool specs followed by the advertised handoff tools."""
        return [*self.tools, *(h.to_openai_spec() for h in self.handoffs)]

    def estimate_tokens(self) -> int:
        """Rough token estimate; ~4 characters per token."""
        total_chars = len(json.dumps(self.to_openai_messages(), ensure_ascii=False))
        if self.tools or self.handoffs:
            total_chars += len(json.dumps(self.tool_specs(), ensure_ascii=False))
        return total_chars // 4


@dataclass
class ModelResponse:
    """A model's answer for one turn, with handoffs already separated out.

    ``calls`` keeps every tool call in the order the model produced them;
    ``tool_calls`` and ``handoff_calls`` partition it.
    """

    content: str = ""
    calls: list[ToolCall] = field(default_factory=list)
    tool_calls: list[ToolCall] = field(default_factory=list)
    handoff_calls: list[HandoffCall] = field(default_factory=list)
    usage: TokenUsage = field(default_factory=TokenUsage)
    finish_reason: str | None = None

    @property
    def handoff_call(self) -> HandoffCall | None:
        return self.handoff_calls[0] if self.handoff_calls else None

    @property
    def is_final(self) -> bool:
        """Content-only: no tool calls and no handoff."""
        return not self.calls

    def to_message(self, agent_name: str | None = None) -> Message:
        return Message.assistant(
            text=self.content,
            tool_calls=[tc.to_part() for tc in self.calls],
            name=agent_name,
        )


def build_response(
    request: ModelRequest,
    content: str,
    calls: list[ToolCall],
    usage: TokenUsage | None = None,
    finish_reason: str | None = None,
) -> ModelResponse:
    """Assemble a ModelResponse; shared by the streaming and blocking paths."""
    tool_calls, handoff_calls = split_handoffs(
        calls, request.handoffs, request.legacy_handoff_prefix, request.tool_names()
    )
    return ModelResponse(
        content=content,
        calls=list(calls),
        tool_calls=tool_calls,
        handoff_calls=handoff_calls,
        usage=usage or TokenUsage(),
        finish_reason=finish_reason,
    )


@runtime_checkable
class Model(Protocol):
    """A chat model able to answer a ModelRequest."""

    async def get_response(self, request: ModelRequest) -> ModelResponse:
        """Return the complete response for one turn."""
        ...

    def stream_response(self, request: ModelRequest) -> AsyncIterator[StreamEvent]:
        """Yield stream events, ending with DONE (or ERROR)."""
        ...


@runtime_checkable
class ModelProvider(Protocol):
    """Resolves model names. Calls through one provider share its retrier."""

    @property
    def retrier(self) -> RateLimitedRetrier: ...

    def get_model(self, name: str | None) -> Model: ...
