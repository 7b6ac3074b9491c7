"""Base tool classes with Pydantic parameter validation."""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import (
    Any,
    Callable,
    ClassVar,
    Generic,
    TypeVar,
    get_type_hints,
    overload,
)

from pydantic import BaseModel, create_model

from agentrelay.errors import RunCancelledError
from agentrelay.session.context import RunContext
from agentrelay.tool.truncation import truncate_output

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)


@dataclass
class ToolResult:
    """Base result from a tool execution."""

    output: str = ""
    is_error: bool = False


@dataclass
class ToolOk(ToolResult):
    """Successful tool result."""

    is_error: bool = False


@dataclass
class ToolError(ToolResult):
    """Failed tool result."""

    is_error: bool = True


class BaseTool(ABC, Generic[T]):
    """Base class for all tools.

    Tools are pure functions: structured input -> structured output.
    Each tool declares its parameters as a Pydantic model (the type parameter T).

    Usage:
        class AddParams(BaseModel):
            a: int
            b: int

        class AddTool(BaseTool[AddParams]):
            name = "add"
            description = "Add two integers"
            param_model = AddParams

            async def execute(self, params: AddParams, ctx: RunContext) -> ToolResult:
                return ToolOk(output=str(params.a + params.b))
    """

    name: ClassVar[str]
    description: ClassVar[str]
    param_model: ClassVar[type[BaseModel]]

    async def __call__(
        self, arguments: dict[str, Any], ctx: RunContext | None = None
    ) -> tuple[str, bool]:
        """Validate arguments, execute, truncate output.

        Failures are reported in the result; only cancellation propagates.

        Returns:
            (content, is_error) tuple suitable for tool result messages.
        """
        try:
            params = self.param_model.model_validate(arguments)
        except Exception as e:
            return f"Invalid parameters: {e}", True

        try:
            result = await self.execute(params, ctx or RunContext())  # type: ignore[arg-type]
        except RunCancelledError:
            raise
        except Exception as e:
            logger.error("Tool %s execution error: %s", self.name, e, exc_info=True)
            return f"Error executing {self.name}: {e}", True

        # Truncate output
        output = truncate_output(result.output)
        return output, result.is_error

    @abstractmethod
    async def execute(self, params: T, ctx: RunContext) -> ToolResult:
        """Execute the tool with validated parameters."""
        ...

    def to_openai_spec(self) -> dict[str, Any]:
        """Convert to OpenAI function tool specification."""
        schema = self.param_model.model_json_schema()
        # Strip the title that Pydantic adds; LLMs don't need it
        schema.pop("title", None)

        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": schema,
            },
        }


# ---------------------------------------------------------------------------
# Function tools
# ---------------------------------------------------------------------------


class FunctionTool(BaseTool[BaseModel]):
    """A tool backed by a plain Python function.

    The parameter model is derived from the function signature. A parameter
    annotated as ``RunContext`` receives the run context instead of a model
    argument. Synchronous functions run in a worker thread.
    """

    def __init__(
        self,
        func: Callable[..., Any],
        name: str | None = None,
        description: str | None = None,
    ) -> None:
        self.func = func
        self.name = name or func.__name__  # type: ignore[misc]
        self.description = description or inspect.getdoc(func) or ""  # type: ignore[misc]
        self.param_model, self._context_param = _model_from_signature(  # type: ignore[misc]
            func, self.name
        )

    async def execute(self, params: BaseModel, ctx: RunContext) -> ToolResult:
        kwargs = {k: getattr(params, k) for k in type(params).model_fields}
        if self._context_param:
            kwargs[self._context_param] = ctx

        if inspect.iscoroutinefunction(self.func):
            value = await self.func(**kwargs)
        else:
            value = await asyncio.to_thread(self.func, **kwargs)

        if isinstance(value, ToolResult):
            return value
        return ToolOk(output=_stringify(value))

    def __repr__(self) -> str:
        return f"FunctionTool(name={self.name!r})"


def _model_from_signature(
    func: Callable[..., Any], tool_name: str
) -> tuple[type[BaseModel], str | None]:
    hints = get_type_hints(func)
    fields: dict[str, Any] = {}
    context_param: str | None = None

    for pname, param in inspect.signature(func).parameters.items():
        if param.kind in (param.VAR_POSITIONAL, param.VAR_KEYWORD):
            continue
        annotation = hints.get(pname, Any)
        if annotation is RunContext:
            context_param = pname
            continue
        default = ... if param.default is param.empty else param.default
        fields[pname] = (annotation, default)

    model_name = "".join(part.title() for part in tool_name.split("_")) + "Params"
    return create_model(model_name, **fields), context_param


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, BaseModel):
        return value.model_dump_json()
    return json.dumps(value, ensure_ascii=False, default=str)


@overload
def function_tool(func: Callable[..., Any]) -> FunctionTool: ...


@overload
def function_tool(
    *, name: str | None = None, description: str | None = None
) -> Callable[[Callable[..., Any]], FunctionTool]: ...


def function_tool(
    func: Callable[..., Any] | None = None,
    *,
    name: str | None = None,
    description: str | None = None,
) -> FunctionTool | Callable[[Callable[..., Any]], FunctionTool]:
    """Turn a function into a tool: ``@function_tool`` or ``@function_tool(name=...)``."""
    if func is not None:
        return FunctionTool(func, name=name, description=description)

    def decorator(f: Callable[..., Any]) -> FunctionTool:
        return FunctionTool(f, name=name, description=description)

    return decorator
