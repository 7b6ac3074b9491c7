"""Tests for agentrelay.tool (BaseTool, FunctionTool, ToolRegistry, truncation)."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from pydantic import BaseModel

from agentrelay.errors import RunCancelledError
from agentrelay.llm.message import ToolCall
from agentrelay.session.context import RunContext
from agentrelay.tool.base import (
    BaseTool,
    FunctionTool,
    ToolError,
    ToolOk,
    ToolResult,
    function_tool,
)
from agentrelay.tool.registry import ToolRegistry
from agentrelay.tool.truncation import MAX_LINES, TruncationPolicy, truncate_output


class EchoParams(BaseModel):
    text: str
    times: int = 1


class EchoTool(BaseTool[EchoParams]):
    name = "echo"
    description = "Repeat text"
    param_model = EchoParams

    async def execute(self, params: EchoParams, ctx: RunContext) -> ToolResult:
        if params.times < 1:
            return ToolError(output="times must be positive")
        return ToolOk(output=params.text * params.times)


# ---------------------------------------------------------------------------
# BaseTool
# ---------------------------------------------------------------------------


class TestBaseTool:
    async def test_execute(self) -> None:
        content, is_error = await EchoTool()({"text": "ab", "times": 2})
        assert content == "abab"
        assert is_error is False

    async def test_tool_error_result(self) -> None:
        content, is_error = await EchoTool()({"text": "ab", "times": 0})
        assert is_error is True
        assert "positive" in content

    async def test_invalid_parameters(self) -> None:
        content, is_error = await EchoTool()({"times": 2})
        assert is_error is True
        assert content.startswith("Invalid parameters")

    def test_openai_spec(self) -> None:
        spec = EchoTool().to_openai_spec()
        assert spec["type"] == "function"
        assert spec["function"]["name"] == "echo"
        params = spec["function"]["parameters"]
        assert "title" not in params
        assert set(params["properties"]) == {"text", "times"}
        assert params["required"] == ["text"]


# ---------------------------------------------------------------------------
# FunctionTool
# ---------------------------------------------------------------------------


@function_tool
def multiply(x: int, y: int = 2) -> int:
    """Multiply two numbers."""
    return x * y


@function_tool(name="lookup_user", description="Find a user by id.")
async def find_user(user_id: str, ctx: RunContext) -> dict:
    return {"id": user_id, "run": ctx.run_id}


class TestFunctionTool:
    def test_schema_from_signature(self) -> None:
        spec = multiply.to_openai_spec()
        assert spec["function"]["name"] == "multiply"
        assert spec["function"]["description"] == "Multiply two numbers."
        params = spec["function"]["parameters"]
        assert params["properties"]["x"]["type"] == "integer"
        assert params["required"] == ["x"]

    def test_context_param_hidden_from_schema(self) -> None:
        spec = find_user.to_openai_spec()
        assert spec["function"]["name"] == "lookup_user"
        assert spec["function"]["description"] == "Find a user by id."
        assert set(spec["function"]["parameters"]["properties"]) == {"user_id"}

    async def test_sync_function(self) -> None:
        content, is_error = await multiply({"x": 4})
        assert (content, is_error) == ("8", False)

    async def test_async_function_gets_context(self) -> None:
        ctx = RunContext(run_id="run-abc")
        content, is_error = await find_user({"user_id": "u1"}, ctx)
        assert not is_error
        assert json.loads(content) == {"id": "u1", "run": "run-abc"}

    async def test_validation_coerces_and_rejects(self) -> None:
        content, _ = await multiply({"x": "3", "y": "3"})
        assert content == "9"
        content, is_error = await multiply({"x": "three"})
        assert is_error
        assert "Invalid parameters" in content

    async def test_return_values_stringified(self) -> None:
        @function_tool
        def nothing() -> None:
            return None

        @function_tool
        def model_result() -> EchoParams:
            return EchoParams(text="hi")

        assert await nothing({}) == ("", False)
        content, _ = await model_result({})
        assert json.loads(content) == {"text": "hi", "times": 1}

    async def test_function_may_return_tool_result(self) -> None:
        @function_tool
        def refuse() -> ToolResult:
            return ToolError(output="not allowed")

        assert await refuse({}) == ("not allowed", True)

    async def test_exception_becomes_error(self) -> None:
        @function_tool
        def broken() -> str:
            raise KeyError("missing")

        content, is_error = await broken({})
        assert is_error
        assert content.startswith("Error executing broken")

    async def test_cancellation_propagates(self) -> None:
        @function_tool
        async def stop() -> str:
            raise RunCancelledError("stop")

        with pytest.raises(RunCancelledError):
            await stop({})

    def test_repr(self) -> None:
        assert repr(multiply) == "FunctionTool(name='multiply')"
        assert isinstance(multiply, FunctionTool)


# ---------------------------------------------------------------------------
# ToolRegistry
# ---------------------------------------------------------------------------


class TestToolRegistry:
    def test_register_and_get(self) -> None:
        reg = ToolRegistry([EchoTool(), multiply])
        assert reg.names() == ["echo", "multiply"]
        assert "echo" in reg
        assert len(reg) == 2
        assert reg.get("missing") is None

    def test_specs_in_registration_order(self) -> None:
        specs = ToolRegistry([EchoTool(), multiply]).get_specs()
        assert [s["function"]["name"] for s in specs] == ["echo", "multiply"]
        assert all(s["type"] == "function" for s in specs)

    async def test_dispatch(self) -> None:
        reg = ToolRegistry([multiply])
        result = await reg.dispatch(ToolCall(id="c1", name="multiply", arguments={"x": 5}))
        assert result.tool_call_id == "c1"
        assert result.tool_name == "multiply"
        assert result.content == "10"
        assert not result.is_error

    async def test_dispatch_unknown_tool(self) -> None:
        reg = ToolRegistry([multiply])
        result = await reg.dispatch(ToolCall(id="c9", name="teleport"))
        assert result.is_error
        assert result.tool_call_id == "c9"
        assert json.loads(result.content) == {
            "error": "unknown_tool",
            "tool": "teleport",
            "message": "Unknown tool: teleport",
            "available": ["multiply"],
        }

    async def test_dispatch_raw_arguments(self) -> None:
        reg = ToolRegistry([multiply])
        call = ToolCall.from_json("c1", "multiply", "x=5")
        result = await reg.dispatch(call)
        assert result.is_error
        assert "Invalid parameters" in result.content


# ---------------------------------------------------------------------------
# truncate_output
# ---------------------------------------------------------------------------


class TestTruncateOutput:
    def test_empty_string(self) -> None:
        assert truncate_output("") == ""

    def test_within_limits(self) -> None:
        text = "hello\nworld\n"
        assert truncate_output(text) == text

    def test_exact_line_limit(self) -> None:
        text = "\n".join(f"line {i}" for i in range(MAX_LINES))
        assert truncate_output(text) == text

    def test_keeps_tail(self) -> None:
        policy = TruncationPolicy(max_lines=3, spill_dir=None)
        result = truncate_output("a\nb\nc\nd\ne", policy)
        notice, *kept = result.split("\n")
        assert kept == ["c", "d", "e"]
        assert "dropped 2 lines" in notice
        assert "saved" not in result

    def test_byte_limit(self) -> None:
        policy = TruncationPolicy(max_bytes=100, spill_dir=None)
        result = truncate_output("x" * 1000, policy)
        notice, kept = result.split("\n", 1)
        assert kept == "x" * 100
        assert "truncated" in notice

    def test_multibyte_cut_is_safe(self) -> None:
        policy = TruncationPolicy(max_bytes=10, spill_dir=None)
        result = truncate_output("é" * 50, policy)
        kept = result.split("\n", 1)[1]
        assert set(kept) == {"é"}
        assert len(kept.encode("utf-8")) <= 10

    def test_spills_full_output(self, tmp_path: Path) -> None:
        policy = TruncationPolicy(max_lines=2, spill_dir=str(tmp_path))
        text = "\n".join(str(i) for i in range(10))
        result = truncate_output(text, policy)

        saved = [line for line in result.split("\n") if line.startswith("[Full output saved to: ")]
        assert len(saved) == 1
        path = Path(saved[0].removeprefix("[Full output saved to: ").rstrip("]"))
        assert path.parent == tmp_path
        assert path.read_text(encoding="utf-8") == text

    def test_spill_failure_still_truncates(self, tmp_path: Path) -> None:
        blocker = tmp_path / "file"
        blocker.write_text("not a directory")
        policy = TruncationPolicy(max_lines=1, spill_dir=str(blocker / "sub"))
        result = truncate_output("a\nb", policy)
        assert result.endswith("\nb")
        assert "saved" not in result
