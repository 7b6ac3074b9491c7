"""LLM abstraction layer — messages, handoff convention, retry, litellm provider."""

from agentrelay.llm.handoff import (
    HANDOFF_PREFIX,
    RETURN_TOOL_NAME,
    HandoffCall,
    HandoffKind,
    HandoffSpec,
    handoff_tool_name,
)
from agentrelay.llm.message import (
    ContentPart,
    HandoffPart,
    Message,
    TextPart,
    TokenUsage,
    ToolCall,
    ToolCallPart,
    ToolResultPart,
)
from agentrelay.llm.model import (
    Model,
    ModelProvider,
    ModelRequest,
    ModelResponse,
    ModelSettings,
)
from agentrelay.llm.provider import LiteLLMModel, LiteLLMProvider, create_provider
from agentrelay.llm.retry import RateLimitedRetrier, RateLimiter, RetryPolicy
from agentrelay.llm.streaming import (
    EventChannel,
    StreamEvent,
    StreamEventType,
    StreamReconciler,
)

__all__ = [
    "HANDOFF_PREFIX",
    "RETURN_TOOL_NAME",
    "HandoffCall",
    "HandoffKind",
    "HandoffSpec",
    "handoff_tool_name",
    "ContentPart",
    "HandoffPart",
    "Message",
    "TextPart",
    "TokenUsage",
    "ToolCall",
    "ToolCallPart",
    "ToolResultPart",
    "Model",
    "ModelProvider",
    "ModelRequest",
    "ModelResponse",
    "ModelSettings",
    "LiteLLMModel",
    "LiteLLMProvider",
    "create_provider",
    "RateLimitedRetrier",
    "RateLimiter",
    "RetryPolicy",
    "EventChannel",
    "StreamEvent",
    "StreamEventType",
    "StreamReconciler",
]
