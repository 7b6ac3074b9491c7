"""LLM provider — unified via litellm.

litellm handles all provider-specific details (Anthropic native SDK,
OpenAI, Gemini, etc.) and normalizes streaming to OpenAI-format chunks.
We convert those to our internal chunk dict format for StreamReconciler.

Normalized chunk format:
    {
        "id": str,
        "object": str,
        "finish_reason": str | None,
        "delta": {
            "role": str | None,
            "content": str | None,
            "tool_calls": [...] | None,   # OpenAI-style tool call deltas
        },
        "usage": {
            "prompt_tokens": int,
            "completion_tokens": int,
            "total_tokens": int,
        } | None,
    }
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from agentrelay.errors import ConfigurationError
from agentrelay.llm.message import TokenUsage, ToolCall
from agentrelay.llm.model import (
    Model,
    ModelRequest,
    ModelResponse,
    ModelSettings,
    build_response,
)
from agentrelay.llm.retry import RateLimitedRetrier, RateLimiter, RetryPolicy
from agentrelay.llm.streaming import StreamEvent, StreamReconciler

if TYPE_CHECKING:
    from litellm import ModelResponseStream

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# litellm model
# ---------------------------------------------------------------------------


@dataclass
class LiteLLMModel:
    """A model reached through litellm.

    litellm handles provider detection from the model string prefix
    (e.g. "anthropic/claude-...", "gemini/gemini-...", "openai/gpt-...")
    and reads API keys from environment variables automatically.
    """

    name: str
    settings: ModelSettings = field(default_factory=ModelSettings)

    def _kwargs(self, request: ModelRequest, stream: bool) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": self.name,
            "messages": request.to_openai_messages(),
        }
        tools = request.tool_specs()
        if tools:
            kwargs["tools"] = tools

        settings = self.settings.resolve(request.settings)
        if not tools:
            # tool_choice/parallel_tool_calls without tools is rejected upstream
            settings.tool_choice = None
            settings.parallel_tool_calls = None
        kwargs.update(settings.to_kwargs())

        if request.output_schema is not None and not tools:
            kwargs["response_format"] = {
                "type": "json_schema",
                "json_schema": {"name": "final_output", "schema": request.output_schema},
            }

        if stream:
            kwargs["stream"] = True
            kwargs["stream_options"] = {"include_usage": True}
        return kwargs

    async def get_response(self, request: ModelRequest) -> ModelResponse:
        """Blocking completion through litellm."""
        import litellm

        completion = await litellm.acompletion(**self._kwargs(request, stream=False))
        return _completion_to_response(completion, request)

    async def stream_response(self, request: ModelRequest) -> AsyncIterator[StreamEvent]:
        """Streamed completion, reconciled into stream events."""
        reconciler = StreamReconciler(request)
        async for event in reconciler.reconcile(self._stream_chunks(request)):
            yield event

    async def _stream_chunks(self, request: ModelRequest) -> AsyncIterator[dict[str, Any]]:
        import litellm

        response = await litellm.acompletion(**self._kwargs(request, stream=True))
        async for chunk in response:  # type: ignore[union-attr]
            yield _chunk_to_dict(chunk)


def _completion_to_response(completion: Any, request: ModelRequest) -> ModelResponse:
    choice = completion.choices[0]
    message = choice.message

    calls = [
        ToolCall.from_json(
            tc.id or "",
            tc.function.name or "",
            tc.function.arguments or "",
        )
        for tc in (getattr(message, "tool_calls", None) or [])
    ]

    usage = getattr(completion, "usage", None)
    token_usage = TokenUsage()
    if usage:
        token_usage = TokenUsage(
            input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
            output_tokens=getattr(usage, "completion_tokens", 0) or 0,
            total_tokens=getattr(usage, "total_tokens", 0) or 0,
        )

    return build_response(
        request,
        content=message.content or "",
        calls=calls,
        usage=token_usage,
        finish_reason=choice.finish_reason,
    )


def _chunk_to_dict(chunk: ModelResponseStream) -> dict[str, Any]:
    """Convert a litellm ModelResponseStream chunk to our normalized dict.

    litellm chunks have the same shape as OpenAI ChatCompletionChunk objects:
      chunk.id, chunk.object, chunk.choices[0].delta.{content, role, tool_calls},
      chunk.choices[0].finish_reason, chunk.usage
    """
    result: dict[str, Any] = {
        "id": getattr(chunk, "id", ""),
        "object": getattr(chunk, "object", "chat.completion.chunk"),
    }

    choices = getattr(chunk, "choices", None)
    if choices:
        choice = choices[0]
        delta = choice.delta
        result["finish_reason"] = choice.finish_reason
        result["delta"] = {}

        if delta.content is not None:
            result["delta"]["content"] = delta.content

        if delta.role is not None:
            result["delta"]["role"] = delta.role

        if delta.tool_calls:
            result["delta"]["tool_calls"] = []
            for tc in delta.tool_calls:
                tc_dict: dict[str, Any] = {
                    "index": tc.index,
                    "id": tc.id,
                    "type": tc.type,
                    "function": {
                        "name": tc.function.name
                        if tc.function and tc.function.name
                        else None,
                        "arguments": tc.function.arguments if tc.function else None,
                    }
                    if tc.function
                    else None,
                }
                result["delta"]["tool_calls"].append(tc_dict)
    else:
        result["finish_reason"] = None
        result["delta"] = {}

    usage = getattr(chunk, "usage", None)
    if usage:
        result["usage"] = {
            "prompt_tokens": getattr(usage, "prompt_tokens", 0) or 0,
            "completion_tokens": getattr(usage, "completion_tokens", 0) or 0,
            "total_tokens": getattr(usage, "total_tokens", 0) or 0,
        }

    return result


# ---------------------------------------------------------------------------
# Provider
# ---------------------------------------------------------------------------


class LiteLLMProvider:
    """Resolves model names to LiteLLMModel instances.

    All models handed out by one provider share its RateLimitedRetrier, so
    concurrent runs through the same provider draw on one budget.
    """

    def __init__(
        self,
        default_model: str | None = None,
        settings: ModelSettings | None = None,
        retrier: RateLimitedRetrier | None = None,
    ) -> None:
        self.default_model = default_model
        self.settings = settings or ModelSettings()
        self._retrier = retrier or RateLimitedRetrier()
        self._models: dict[str, LiteLLMModel] = {}

    @property
    def retrier(self) -> RateLimitedRetrier:
        return self._retrier

    def get_model(self, name: str | None) -> Model:
        name = name or self.default_model
        if not name:
            raise ConfigurationError("no model name given and no default model set")
        model = self._models.get(name)
        if model is None:
            model = LiteLLMModel(name=name, settings=self.settings)
            self._models[name] = model
        return model


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def create_provider(
    model: str | None = None,
    temperature: float | None = None,
    max_tokens: int | None = None,
    rpm: int = 200,
    tpm: int = 150_000,
    max_retries: int = 5,
    base_delay: float = 1.0,
) -> LiteLLMProvider:
    """Create a LiteLLM provider.

    Args:
        model: Default model name with provider prefix (e.g. "openai/gpt-4o",
               "anthropic/claude-sonnet-4-5-20250929"). litellm detects the
               provider from the prefix and reads API keys from env vars.
        temperature: Sampling temperature.
        max_tokens: Max output tokens.
        rpm: Requests admitted per rolling minute.
        tpm: Estimated tokens admitted per rolling minute.
        max_retries: Retries for transient failures (rate limits, 5xx).
        base_delay: First backoff delay in seconds.

    Returns:
        A LiteLLMProvider instance.
    """
    retrier = RateLimitedRetrier(
        limiter=RateLimiter(rpm=rpm, tpm=tpm),
        policy=RetryPolicy(max_retries=max_retries, base_delay=base_delay),
    )
    return LiteLLMProvider(
        default_model=model,
        settings=ModelSettings(temperature=temperature, max_tokens=max_tokens),
        retrier=retrier,
    )
