"""Scripted model doubles shared by the runner tests.

A ``ScriptedModel`` answers each request with the next item of its script.
An item is either a ``Reply`` or an exception to raise for that attempt.
Streaming replays the same reply as OpenAI-shaped delta chunks, so both
paths can be driven by one script.
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

from agentrelay.llm.message import Message, TokenUsage, ToolCall
from agentrelay.llm.model import Model, ModelRequest, ModelResponse, build_response
from agentrelay.llm.retry import RateLimitedRetrier, RateLimiter, RetryPolicy
from agentrelay.llm.streaming import StreamEvent, StreamEventType, StreamReconciler
from agentrelay.session.wire import EventType, RunEvent


@dataclass
class Reply:
    content: str = ""
    calls: list[ToolCall] = field(default_factory=list)
    usage: TokenUsage = field(
        default_factory=lambda: TokenUsage(input_tokens=10, output_tokens=5, total_tokens=15)
    )

    @property
    def finish_reason(self) -> str:
        return "tool_calls" if self.calls else "stop"


def text(content: str) -> Reply:
    return Reply(content=content)


def call(name: str, id: str, **arguments: Any) -> ToolCall:
    return ToolCall(
        id=id, name=name, arguments=arguments, raw_arguments=json.dumps(arguments)
    )


def calls(*tool_calls: ToolCall, content: str = "") -> Reply:
    return Reply(content=content, calls=list(tool_calls))


def reply_chunks(reply: Reply) -> list[dict[str, Any]]:
    """Split a reply into delta chunks, fragmenting content and arguments."""
    chunks: list[dict[str, Any]] = []
    if reply.content:
        mid = len(reply.content) // 2 or 1
        for piece in (reply.content[:mid], reply.content[mid:]):
            if piece:
                chunks.append({"finish_reason": None, "delta": {"content": piece}})

    for idx, tc in enumerate(reply.calls):
        raw = tc.raw_arguments
        mid = len(raw) // 2
        chunks.append(
            {
                "finish_reason": None,
                "delta": {
                    "tool_calls": [
                        {
                            "index": idx,
                            "id": tc.id,
                            "function": {"name": tc.name, "arguments": raw[:mid]},
                        }
                    ]
                },
            }
        )
        chunks.append(
            {
                "finish_reason": None,
                "delta": {
                    "tool_calls": [{"index": idx, "function": {"arguments": raw[mid:]}}]
                },
            }
        )

    chunks.append(
        {
            "finish_reason": reply.finish_reason,
            "delta": {},
            "usage": {
                "prompt_tokens": reply.usage.input_tokens,
                "completion_tokens": reply.usage.output_tokens,
                "total_tokens": reply.usage.total_tokens,
            },
        }
    )
    return chunks


async def aiter_list(items: list[Any]) -> AsyncIterator[Any]:
    for item in items:
        yield item


class ScriptedModel:
    """A Model that plays back a fixed script, recording every request."""

    def __init__(self, script: list[Reply | BaseException]) -> None:
        self.script = list(script)
        self.requests: list[ModelRequest] = []

    def _next(self, request: ModelRequest) -> Reply:
        self.requests.append(request)
        if not self.script:
            raise AssertionError("model called more times than scripted")
        item = self.script.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item

    async def get_response(self, request: ModelRequest) -> ModelResponse:
        reply = self._next(request)
        return build_response(
            request,
            content=reply.content,
            calls=list(reply.calls),
            usage=TokenUsage(
                reply.usage.input_tokens, reply.usage.output_tokens, reply.usage.total_tokens
            ),
            finish_reason=reply.finish_reason,
        )

    async def stream_response(self, request: ModelRequest) -> AsyncIterator[StreamEvent]:
        try:
            reply = self._next(request)
        except Exception as e:
            yield StreamEvent(type=StreamEventType.ERROR, error=e)
            return
        reconciler = StreamReconciler(request)
        async for event in reconciler.reconcile(aiter_list(reply_chunks(reply))):
            yield event

    @property
    def call_count(self) -> int:
        return len(self.requests)


class ScriptedProvider:
    """A ModelProvider resolving names to scripted models."""

    def __init__(
        self,
        models: dict[str, Model],
        default: str | None = None,
        retrier: RateLimitedRetrier | None = None,
    ) -> None:
        self.models = models
        self.default = default
        self._retrier = retrier or fast_retrier()
        self.lookups: list[str | None] = []

    @property
    def retrier(self) -> RateLimitedRetrier:
        return self._retrier

    def get_model(self, name: str | None) -> Model:
        self.lookups.append(name)
        return self.models[name or self.default or ""]


class RecordingObserver:
    def __init__(self) -> None:
        self.events: list[RunEvent] = []

    def send(self, event: RunEvent) -> None:
        self.events.append(event)

    def of_type(self, type: EventType) -> list[RunEvent]:
        return [e for e in self.events if e.type is type]

    def types(self) -> list[EventType]:
        return [e.type for e in self.events]


def fast_retrier(max_retries: int = 3) -> RateLimitedRetrier:
    """A retrier with millisecond backoff and a generous window."""
    return RateLimitedRetrier(
        limiter=RateLimiter(rpm=10_000, tpm=10_000_000),
        policy=RetryPolicy(max_retries=max_retries, base_delay=0.001, max_delay=0.01),
    )


def assert_results_follow_calls(messages: list[Message]) -> None:
    """Every tool result answers a tool call made earlier in the same thread."""
    seen: set[str] = set()
    for m in messages:
        if m.role == "assistant":
            seen.update(tc.id for tc in m.tool_calls)
        elif m.role == "tool":
            result = m.tool_result
            assert result is not None
            assert result.tool_call_id in seen, (
                f"tool result {result.tool_call_id} has no preceding call"
            )
