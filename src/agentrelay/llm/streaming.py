"""Streaming primitives — chunk reconciliation and the ordered event channel."""

from __future__ import annotations

import asyncio
import enum
import json
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

from agentrelay.errors import ProtocolError
from agentrelay.llm.handoff import HandoffCall
from agentrelay.llm.message import TokenUsage, ToolCall
from agentrelay.llm.model import ModelRequest, ModelResponse, build_response

logger = logging.getLogger(__name__)


class StreamEventType(enum.Enum):
    CONTENT = "content"
    TOOL_CALL = "tool_call"
    HANDOFF = "handoff"
    DONE = "done"
    ERROR = "error"
    # Run-level events added by the runner on top of model streams
    TOOL_RESULT = "tool_result"
    AGENT_UPDATED = "agent_updated"


@dataclass
class StreamEvent:
    """One event on a model or run stream."""

    type: StreamEventType
    content: str = ""
    tool_call: ToolCall | None = None
    handoff: HandoffCall | None = None
    response: ModelResponse | None = None
    error: BaseException | None = None
    agent: str = ""
    data: dict[str, Any] = field(default_factory=dict)


@dataclass
class _ToolCallBuffer:
    id: str = ""
    name: str = ""
    arguments: str = ""
    complete: bool = False


class StreamReconciler:
    """Folds normalized chunk dicts into the response a blocking call returns.

    Chunks use the OpenAI delta shape produced by ``_chunk_to_dict``::

        {"finish_reason": ..., "delta": {"content": ..., "tool_calls": [...]},
         "usage": {...}}

    Tool-call fragments are keyed by index. A call's name arrives once;
    a different name for the same index is a protocol error. Argument
    fragments are concatenated until the text parses as JSON.
    """

    def __init__(self, request: ModelRequest) -> None:
        self.request = request
        self._text: list[str] = []
        self._buffers: dict[int, _ToolCallBuffer] = {}
        self._usage = TokenUsage()
        self._finish_reason: str | None = None

    def feed(self, chunk: dict[str, Any]) -> list[StreamEvent]:
        """Absorb one chunk, returning content events in arrival order."""
        events: list[StreamEvent] = []

        fr = chunk.get("finish_reason")
        if fr:
            self._finish_reason = fr

        delta = chunk.get("delta") or {}

        content = delta.get("content")
        if content:
            self._text.append(content)
            events.append(StreamEvent(type=StreamEventType.CONTENT, content=content))

        for tc_delta in delta.get("tool_calls") or []:
            self._feed_tool_call(tc_delta)

        u = chunk.get("usage")
        if u:
            self._usage = TokenUsage(
                input_tokens=u.get("prompt_tokens", 0),
                output_tokens=u.get("completion_tokens", 0),
                total_tokens=u.get("total_tokens", 0),
            )

        return events

    def _feed_tool_call(self, tc_delta: dict[str, Any]) -> None:
        idx = tc_delta.get("index") or 0
        buf = self._buffers.setdefault(idx, _ToolCallBuffer())

        if tc_delta.get("id"):
            buf.id = tc_delta["id"]

        func = tc_delta.get("function") or {}
        name = func.get("name")
        if name:
            if buf.name and buf.name != name:
                raise ProtocolError(
                    f"tool call {idx} renamed mid-stream: {buf.name!r} -> {name!r}"
                )
            buf.name = name

        fragment = func.get("arguments")
        if fragment:
            if buf.complete:
                logger.warning(
                    "Tool call %s received arguments after a complete JSON value",
                    buf.name or idx,
                )
            buf.arguments += fragment
            buf.complete = _is_json(buf.arguments)

    def finish(self) -> list[StreamEvent]:
        """Finalize tool calls and emit TOOL_CALL / HANDOFF events then DONE."""
        calls: list[ToolCall] = []
        for idx in sorted(self._buffers):
            buf = self._buffers[idx]
            if not buf.name:
                raise ProtocolError(f"tool call {idx} ended without a name")
            calls.append(ToolCall.from_json(buf.id, buf.name, buf.arguments))

        response = build_response(
            self.request,
            content="".join(self._text),
            calls=calls,
            usage=self._usage,
            finish_reason=self._finish_reason,
        )

        events = [
            StreamEvent(type=StreamEventType.TOOL_CALL, tool_call=tc)
            for tc in response.tool_calls
        ]
        events.extend(
            StreamEvent(type=StreamEventType.HANDOFF, handoff=h)
            for h in response.handoff_calls
        )
        events.append(StreamEvent(type=StreamEventType.DONE, response=response))
        return events

    async def reconcile(
        self, chunks: AsyncIterator[dict[str, Any]]
    ) -> AsyncIterator[StreamEvent]:
        """Consume ``chunks`` and yield events; any failure ends with ERROR."""
        try:
            async for chunk in chunks:
                for event in self.feed(chunk):
                    yield event
            events = self.finish()
        except Exception as e:
            logger.warning("Stream failed: %s", e)
            yield StreamEvent(type=StreamEventType.ERROR, error=e)
            return

        for event in events:
            yield event


def _is_json(text: str) -> bool:
    try:
        json.loads(text)
    except ValueError:
        return False
    return True


class EventChannel:
    """Single-producer, ordered, closable event channel.

    The producer calls ``send`` then ``close`` exactly once; consumers
    iterate with ``async for`` until the channel closes.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[StreamEvent | None] = asyncio.Queue()
        self._closed: bool = False

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, event: StreamEvent) -> None:
        if self._closed:
            raise RuntimeError("send on closed event channel")
        self._queue.put_nowait(event)

    def close(self) -> None:
        """Close the channel. Later calls are no-ops."""
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(None)

    async def __aiter__(self) -> AsyncIterator[StreamEvent]:
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event
