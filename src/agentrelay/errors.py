"""Exception hierarchy for agentrelay.

Four categories matter to callers:

* provider failures (``ProviderError``), some of which are retryable;
* protocol violations (``ProtocolError``), which never are;
* cancellation (``RunCancelledError``);
* everything a caller configured wrongly (``ConfigurationError``).

Tool failures are never raised: they travel back to the model as data.
Running out of turns is not an error either; see ``RunOutcome.MAX_TURNS``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from agentrelay.agent.result import RunResult


class AgentRelayError(Exception):
    """Base class for all agentrelay errors.

    ``result`` holds the partial ``RunResult`` when the error escaped a run.
    """

    retryable: bool = False

    def __init__(self, message: str = "", *, result: RunResult | None = None) -> None:
        super().__init__(message)
        self.result = result


class ConfigurationError(AgentRelayError):
    """The run cannot start: missing provider, unknown model, bad agent."""


# ---------------------------------------------------------------------------
# Provider failures
# ---------------------------------------------------------------------------


class ProviderError(AgentRelayError):
    """The model provider failed."""


class TransientProviderError(ProviderError):
    """A provider failure worth retrying (rate limit, 5xx, dropped connection)."""

    retryable = True

    def __init__(
        self,
        message: str = "",
        *,
        status_code: int | None = None,
        result: RunResult | None = None,
    ) -> None:
        super().__init__(message, result=result)
        self.status_code = status_code


class RetryExhaustedError(ProviderError):
    """Transient failures persisted past the retry budget."""

    retryable = True

    def __init__(
        self,
        message: str = "",
        *,
        attempts: int = 0,
        last_error: BaseException | None = None,
        result: RunResult | None = None,
    ) -> None:
        super().__init__(message, result=result)
        self.attempts = attempts
        self.last_error = last_error


# ---------------------------------------------------------------------------
# Protocol violations
# ---------------------------------------------------------------------------


class ProtocolError(AgentRelayError):
    """The model (or a stream) broke the conversation protocol."""


class HandoffProtocolError(ProtocolError):
    """A handoff could not be applied to the current delegation stack."""


class ToolArgumentError(ProtocolError):
    """Arguments of a control call (handoff or return) could not be decoded."""


class OutputValidationError(ProtocolError):
    """Final output did not match the agent's declared output type."""

    def __init__(
        self,
        message: str = "",
        *,
        output: str = "",
        result: RunResult | None = None,
    ) -> None:
        super().__init__(message, result=result)
        self.output = output


# ---------------------------------------------------------------------------
# Run control
# ---------------------------------------------------------------------------


class RunCancelledError(AgentRelayError):
    """The run's cancellation token fired."""


class GuardrailTripped(AgentRelayError):
    """An input or output guardrail rejected the run."""

    def __init__(
        self,
        guardrail: str,
        info: Any = None,
        *,
        stage: str = "input",
        result: RunResult | None = None,
    ) -> None:
        super().__init__(f"{stage} guardrail {guardrail!r} tripped", result=result)
        self.guardrail = guardrail
        self.info = info
        self.stage = stage


class WorkflowValidationError(AgentRelayError):
    """A pre-handoff validation rule with ERROR severity failed."""

    def __init__(
        self, rule: str, message: str, *, result: RunResult | None = None
    ) -> None:
        super().__init__(f"{rule}: {message}", result=result)
        self.rule = rule
