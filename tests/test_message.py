"""Tests for agentrelay.llm.message."""

from __future__ import annotations

import json

from agentrelay.llm.message import (
    HandoffPart,
    Message,
    TextPart,
    TokenUsage,
    ToolCall,
    ToolCallPart,
    ToolResultPart,
    parse_tool_arguments,
)


# ---------------------------------------------------------------------------
# Part dataclasses
# ---------------------------------------------------------------------------


class TestParts:
    def test_text_defaults(self) -> None:
        p = TextPart()
        assert p.type == "text"
        assert p.text == ""

    def test_tool_call_defaults(self) -> None:
        p = ToolCallPart()
        assert p.type == "tool_call"
        assert p.arguments == ""

    def test_tool_result_defaults(self) -> None:
        p = ToolResultPart()
        assert p.type == "tool_result"
        assert p.is_error is False
        assert p.tool_name == ""

    def test_handoff_defaults(self) -> None:
        p = HandoffPart()
        assert p.type == "handoff"
        assert p.kind == "delegate"
        assert p.is_task_complete is True


# ---------------------------------------------------------------------------
# parse_tool_arguments / ToolCall
# ---------------------------------------------------------------------------


class TestParseToolArguments:
    def test_object(self) -> None:
        assert parse_tool_arguments('{"a": 1, "b": [true, null]}') == {
            "a": 1,
            "b": [True, None],
        }

    def test_empty_means_no_arguments(self) -> None:
        assert parse_tool_arguments("") == {}
        assert parse_tool_arguments("   ") == {}

    def test_invalid_json_kept_raw(self) -> None:
        assert parse_tool_arguments("not json", "shell") == {"raw_arguments": "not json"}

    def test_non_object_kept_raw(self) -> None:
        assert parse_tool_arguments("[1, 2]") == {"raw_arguments": "[1, 2]"}
        assert parse_tool_arguments('"text"') == {"raw_arguments": '"text"'}


class TestToolCall:
    def test_from_json(self) -> None:
        tc = ToolCall.from_json("tc1", "shell", '{"cmd": "ls"}')
        assert tc.id == "tc1"
        assert tc.arguments == {"cmd": "ls"}
        assert tc.raw_arguments == '{"cmd": "ls"}'

    def test_from_json_generates_id(self) -> None:
        a = ToolCall.from_json("", "noop", "{}")
        b = ToolCall.from_json("", "noop", "{}")
        assert a.id.startswith("call_")
        assert a.id != b.id

    def test_to_part_preserves_raw_text(self) -> None:
        tc = ToolCall.from_json("tc1", "shell", '{"cmd":  "ls"}')
        assert tc.to_part().arguments == '{"cmd":  "ls"}'

    def test_to_part_serializes_when_built_in_code(self) -> None:
        tc = ToolCall(id="tc1", name="add", arguments={"a": 1})
        part = tc.to_part()
        assert part == ToolCallPart(id="tc1", name="add", arguments='{"a": 1}')


class TestTokenUsage:
    def test_add(self) -> None:
        u = TokenUsage(1, 2, 3)
        u.add(TokenUsage(10, 20, 30))
        assert u == TokenUsage(11, 22, 33)


# ---------------------------------------------------------------------------
# Message constructors and properties
# ---------------------------------------------------------------------------


class TestMessage:
    def test_assistant_empty(self) -> None:
        m = Message.assistant()
        assert m.role == "assistant"
        assert m.parts == []

    def test_assistant_name(self) -> None:
        m = Message.assistant("hi", name="triage")
        assert m.name == "triage"

    def test_text_skips_non_text_parts(self) -> None:
        m = Message(
            role="assistant",
            parts=[
                TextPart(text="a"),
                ToolCallPart(id="tc1", name="x", arguments="{}"),
                TextPart(text="b"),
            ],
        )
        assert m.text == "ab"

    def test_tool_calls(self) -> None:
        m = Message.assistant(
            tool_calls=[
                ToolCallPart(id="tc1", name="shell", arguments='{"command": "ls"}'),
                ToolCallPart(id="tc2", name="read", arguments="oops"),
            ]
        )
        calls = m.tool_calls
        assert [c.name for c in calls] == ["shell", "read"]
        assert calls[0].arguments == {"command": "ls"}
        assert calls[1].arguments == {"raw_arguments": "oops"}

    def test_tool_result_message(self) -> None:
        m = Message.tool_result_message("tc1", "boom", is_error=True, tool_name="shell")
        assert m.role == "tool"
        part = m.tool_result
        assert part is not None
        assert (part.tool_call_id, part.content, part.is_error, part.tool_name) == (
            "tc1",
            "boom",
            True,
            "shell",
        )

    def test_handoff_marker(self) -> None:
        m = Message.handoff_marker(
            kind="return",
            from_agent="research",
            to_agent="triage",
            task_id="t1",
            input="done",
            is_task_complete=False,
        )
        assert m.is_marker
        assert m.handoff is not None
        assert m.handoff.kind == "return"
        assert m.handoff.is_task_complete is False
        assert not Message.user("hi").is_marker


# ---------------------------------------------------------------------------
# Message — to_openai_dict
# ---------------------------------------------------------------------------


class TestMessageToOpenAI:
    def test_user(self) -> None:
        assert Message.user("hello").to_openai_dict() == {"role": "user", "content": "hello"}

    def test_system(self) -> None:
        d = Message.system("prompt").to_openai_dict()
        assert d == {"role": "system", "content": "prompt"}

    def test_assistant_with_tool_calls(self) -> None:
        tc = ToolCallPart(id="tc1", name="shell", arguments='{"cmd": "ls"}')
        d = Message.assistant(text="calling", tool_calls=[tc]).to_openai_dict()
        assert d["content"] == "calling"
        assert d["tool_calls"] == [
            {
                "id": "tc1",
                "type": "function",
                "function": {"name": "shell", "arguments": '{"cmd": "ls"}'},
            }
        ]

    def test_assistant_no_text_with_tool_calls(self) -> None:
        tc = ToolCallPart(id="tc1", name="think", arguments="{}")
        d = Message.assistant(tool_calls=[tc]).to_openai_dict()
        assert d["content"] is None

    def test_tool_result(self) -> None:
        d = Message.tool_result_message("tc1", json.dumps({"ok": 1})).to_openai_dict()
        assert d == {"role": "tool", "tool_call_id": "tc1", "content": '{"ok": 1}'}
