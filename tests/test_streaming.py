"""Tests for agentrelay.llm.streaming (StreamReconciler, EventChannel)."""

from __future__ import annotations

import asyncio
import json

import pytest
from scripted import aiter_list, call, calls, reply_chunks

from agentrelay.errors import ProtocolError
from agentrelay.llm.handoff import HandoffKind, HandoffSpec
from agentrelay.llm.message import TokenUsage
from agentrelay.llm.model import ModelRequest, build_response
from agentrelay.llm.streaming import (
    EventChannel,
    StreamEvent,
    StreamEventType,
    StreamReconciler,
)


def _request(*handoffs: HandoffSpec) -> ModelRequest:
    return ModelRequest(system_instructions="", handoffs=list(handoffs))


def _tool_chunk(index: int, id: str = "", name: str = "", arguments: str = "") -> dict:
    function: dict = {}
    if name:
        function["name"] = name
    if arguments:
        function["arguments"] = arguments
    delta: dict = {"index": index, "function": function}
    if id:
        delta["id"] = id
    return {"finish_reason": None, "delta": {"tool_calls": [delta]}}


# ---------------------------------------------------------------------------
# StreamReconciler — content and tool-call assembly
# ---------------------------------------------------------------------------


class TestReconcilerContent:
    def test_content_events_in_arrival_order(self) -> None:
        r = StreamReconciler(_request())
        events = r.feed({"delta": {"content": "Hel"}})
        events += r.feed({"delta": {"content": "lo"}})
        assert [e.content for e in events] == ["Hel", "lo"]
        assert all(e.type is StreamEventType.CONTENT for e in events)

    def test_empty_delta_yields_nothing(self) -> None:
        r = StreamReconciler(_request())
        assert r.feed({"delta": {}}) == []
        assert r.feed({}) == []

    def test_finish_builds_response(self) -> None:
        r = StreamReconciler(_request())
        r.feed({"delta": {"content": "Hi"}})
        r.feed(
            {
                "finish_reason": "stop",
                "delta": {},
                "usage": {"prompt_tokens": 3, "completion_tokens": 1, "total_tokens": 4},
            }
        )
        events = r.finish()
        assert len(events) == 1
        done = events[0]
        assert done.type is StreamEventType.DONE
        assert done.response is not None
        assert done.response.content == "Hi"
        assert done.response.finish_reason == "stop"
        assert done.response.usage == TokenUsage(3, 1, 4)
        assert done.response.is_final


class TestReconcilerToolCalls:
    def test_fragmented_arguments_are_joined(self) -> None:
        r = StreamReconciler(_request())
        r.feed(_tool_chunk(0, id="c1", name="add", arguments='{"a": '))
        r.feed(_tool_chunk(0, arguments="5, "))
        r.feed(_tool_chunk(0, arguments='"b": 3}'))
        events = r.finish()

        assert [e.type for e in events] == [StreamEventType.TOOL_CALL, StreamEventType.DONE]
        tc = events[0].tool_call
        assert tc is not None
        assert tc.id == "c1"
        assert tc.name == "add"
        assert tc.arguments == {"a": 5, "b": 3}

    def test_interleaved_calls_keyed_by_index(self) -> None:
        r = StreamReconciler(_request())
        r.feed(_tool_chunk(0, id="c1", name="first", arguments='{"x"'))
        r.feed(_tool_chunk(1, id="c2", name="second", arguments='{"y": 2}'))
        r.feed(_tool_chunk(0, arguments=": 1}"))
        events = r.finish()

        response = events[-1].response
        assert response is not None
        assert [(tc.id, tc.arguments) for tc in response.calls] == [
            ("c1", {"x": 1}),
            ("c2", {"y": 2}),
        ]

    def test_renamed_call_is_protocol_error(self) -> None:
        r = StreamReconciler(_request())
        r.feed(_tool_chunk(0, id="c1", name="add"))
        with pytest.raises(ProtocolError, match="renamed"):
            r.feed(_tool_chunk(0, name="subtract"))

    def test_repeated_same_name_is_fine(self) -> None:
        r = StreamReconciler(_request())
        r.feed(_tool_chunk(0, id="c1", name="add", arguments="{}"))
        r.feed(_tool_chunk(0, name="add"))
        assert r.finish()[0].tool_call is not None

    def test_nameless_call_is_protocol_error(self) -> None:
        r = StreamReconciler(_request())
        r.feed(_tool_chunk(0, id="c1", arguments="{}"))
        with pytest.raises(ProtocolError, match="without a name"):
            r.finish()

    def test_non_json_arguments_kept_raw(self) -> None:
        r = StreamReconciler(_request())
        r.feed(_tool_chunk(0, id="c1", name="shell", arguments="ls -la"))
        tc = r.finish()[0].tool_call
        assert tc is not None
        assert tc.arguments == {"raw_arguments": "ls -la"}

    def test_missing_id_is_generated(self) -> None:
        r = StreamReconciler(_request())
        r.feed(_tool_chunk(0, name="noop", arguments="{}"))
        tc = r.finish()[0].tool_call
        assert tc is not None
        assert tc.id.startswith("call_")

    def test_handoff_separated_from_tools(self) -> None:
        r = StreamReconciler(_request(HandoffSpec.delegate("research")))
        r.feed(_tool_chunk(0, id="c1", name="add", arguments='{"a": 1, "b": 2}'))
        r.feed(
            _tool_chunk(
                1, id="h1", name="handoff_to_research", arguments='{"input": "look"}'
            )
        )
        events = r.finish()

        assert [e.type for e in events] == [
            StreamEventType.TOOL_CALL,
            StreamEventType.HANDOFF,
            StreamEventType.DONE,
        ]
        handoff = events[1].handoff
        assert handoff is not None
        assert handoff.target == "research"
        assert handoff.kind is HandoffKind.DELEGATE
        assert handoff.input == "look"
        assert handoff.call_id == "h1"


# ---------------------------------------------------------------------------
# StreamReconciler — reconcile() and equivalence with the blocking path
# ---------------------------------------------------------------------------


class TestReconcile:
    async def test_matches_blocking_response(self) -> None:
        reply = calls(
            call("add", "c1", a=5, b=3),
            call("handoff_to_research", "h1", input="check", task_id="t1"),
            content="Working on it",
        )
        request = _request(HandoffSpec.delegate("research"))

        events = [
            e async for e in StreamReconciler(request).reconcile(aiter_list(reply_chunks(reply)))
        ]
        streamed = events[-1].response
        blocking = build_response(
            request, reply.content, reply.calls, reply.usage, reply.finish_reason
        )
        assert streamed == blocking

        content = "".join(e.content for e in events if e.type is StreamEventType.CONTENT)
        assert content == "Working on it"

    async def test_failure_becomes_error_event(self) -> None:
        chunks = [
            _tool_chunk(0, id="c1", name="add"),
            _tool_chunk(0, name="other"),
        ]
        events = [e async for e in StreamReconciler(_request()).reconcile(aiter_list(chunks))]

        assert len(events) == 1
        assert events[0].type is StreamEventType.ERROR
        assert isinstance(events[0].error, ProtocolError)

    async def test_source_exception_becomes_error_event(self) -> None:
        async def broken():  # type: ignore[no-untyped-def]
            yield {"delta": {"content": "partial"}}
            raise ConnectionError("reset by peer")

        events = [e async for e in StreamReconciler(_request()).reconcile(broken())]
        assert [e.type for e in events] == [StreamEventType.CONTENT, StreamEventType.ERROR]
        assert isinstance(events[-1].error, ConnectionError)

    async def test_handoff_arguments_survive_fragmentation(self) -> None:
        args = json.dumps({"input": "a fairly long instruction", "task_id": "t9"})
        chunks = [_tool_chunk(0, id="h1", name="handoff_to_research")]
        chunks += [_tool_chunk(0, arguments=args[i : i + 3]) for i in range(0, len(args), 3)]
        request = _request(HandoffSpec.delegate("research"))

        events = [e async for e in StreamReconciler(request).reconcile(aiter_list(chunks))]
        handoff = next(e.handoff for e in events if e.type is StreamEventType.HANDOFF)
        assert handoff is not None
        assert handoff.task_id == "t9"
        assert handoff.input == "a fairly long instruction"


# ---------------------------------------------------------------------------
# EventChannel
# ---------------------------------------------------------------------------


class TestEventChannel:
    async def test_delivers_in_order_until_close(self) -> None:
        channel = EventChannel()
        for i in range(3):
            channel.send(StreamEvent(type=StreamEventType.CONTENT, content=str(i)))
        channel.close()

        received = [e.content async for e in channel]
        assert received == ["0", "1", "2"]

    async def test_consumer_waits_for_producer(self) -> None:
        channel = EventChannel()

        async def produce() -> None:
            await asyncio.sleep(0.01)
            channel.send(StreamEvent(type=StreamEventType.CONTENT, content="late"))
            channel.close()

        producer = asyncio.create_task(produce())
        received = [e.content async for e in channel]
        await producer
        assert received == ["late"]

    def test_send_after_close_raises(self) -> None:
        channel = EventChannel()
        channel.close()
        with pytest.raises(RuntimeError):
            channel.send(StreamEvent(type=StreamEventType.DONE))

    async def test_close_is_idempotent(self) -> None:
        channel = EventChannel()
        channel.close()
        channel.close()
        assert channel.closed
        assert [e async for e in channel] == []
