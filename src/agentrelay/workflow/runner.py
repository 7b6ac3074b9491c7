"""Workflow runner — checkpoints, pre-handoff validation, retry and recovery around a Runner."""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable
from dataclasses import dataclass, field, replace
from typing import Any, Callable

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from agentrelay.agent.agent import Agent
from agentrelay.agent.hooks import RunHooks
from agentrelay.agent.result import RunResult
from agentrelay.agent.runner import Runner, RunOptions
from agentrelay.errors import WorkflowValidationError
from agentrelay.llm.handoff import HandoffCall
from agentrelay.session.context import CancellationToken, RunContext
from agentrelay.workflow.state import (
    Severity,
    StateStore,
    ValidationRule,
    WorkflowState,
    now,
)

logger = logging.getLogger(__name__)


@dataclass
class RetryConfig:
    """Whole-run retries; only errors marked ``retryable`` qualify."""

    max_retries: int = 0
    retry_delay: float = 1.0
    backoff_factor: float = 2.0
    max_delay: float = 60.0
    on_retry: Callable[[int, BaseException], None] | None = None


@dataclass
class StateManagementConfig:
    store: StateStore | None = None
    workflow_id: str = "default"
    persist_state: bool = True
    restore_on_failure: bool = False  # resume from the latest checkpoint


@dataclass
class ValidationConfig:
    pre_handoff: list[ValidationRule] = field(default_factory=list)


RecoveryFunc = Callable[[WorkflowState, BaseException], "Awaitable[None] | None"]


@dataclass
class RecoveryConfig:
    on_failure: RecoveryFunc | None = None


@dataclass
class WorkflowConfig:
    retry: RetryConfig = field(default_factory=RetryConfig)
    state: StateManagementConfig = field(default_factory=StateManagementConfig)
    validation: ValidationConfig = field(default_factory=ValidationConfig)
    recovery: RecoveryConfig = field(default_factory=RecoveryConfig)


class WorkflowHooks(RunHooks):
    """Run hooks that validate and checkpoint phase transitions.

    Delegates every callback to the caller's own hooks as well.
    """

    def __init__(
        self,
        state: WorkflowState,
        checkpoint: Callable[[], Awaitable[Any]],
        rules: list[ValidationRule],
        inner: RunHooks | None = None,
    ) -> None:
        self.state = state
        self._checkpoint = checkpoint
        self._rules = rules
        self._inner = inner or RunHooks()

    async def on_run_start(self, ctx: RunContext, agent: Agent) -> None:
        self.state.transition(agent.name)
        await self._inner.on_run_start(ctx, agent)

    async def on_turn_start(self, ctx: RunContext, agent: Agent, turn: int) -> None:
        await self._inner.on_turn_start(ctx, agent, turn)

    async def on_turn_end(self, ctx: RunContext, agent: Agent, turn: int) -> None:
        await self._inner.on_turn_end(ctx, agent, turn)

    async def on_before_handoff(
        self, ctx: RunContext, from_agent: Agent, call: HandoffCall
    ) -> None:
        for rule in self._rules:
            if rule.validate(self.state, from_agent, call):
                continue
            if rule.severity is Severity.ERROR:
                raise WorkflowValidationError(rule.name, rule.error_message)
            logger.warning("Validation rule %s: %s", rule.name, rule.error_message)
        await self._inner.on_before_handoff(ctx, from_agent, call)

    async def on_after_handoff(
        self, ctx: RunContext, from_agent: Agent, to_agent: Agent, call: HandoffCall
    ) -> None:
        self.state.transition(to_agent.name)
        await self._checkpoint()
        await self._inner.on_after_handoff(ctx, from_agent, to_agent, call)

    async def on_run_end(self, ctx: RunContext, agent: Agent, output: Any) -> None:
        await self._inner.on_run_end(ctx, agent, output)


class WorkflowRunner:
    """Runs agents as a checkpointed workflow on top of a Runner."""

    def __init__(self, runner: Runner, config: WorkflowConfig | None = None) -> None:
        self.runner = runner
        self.config = config or WorkflowConfig()
        self.state: WorkflowState | None = None

    async def checkpoint(self) -> str | None:
        """Save the current state if a store is configured."""
        sm = self.config.state
        if self.state is None or sm.store is None or not sm.persist_state:
            return None
        self.state.last_checkpoint = now()
        cid = await sm.store.save(sm.workflow_id, self.state)
        logger.debug("Checkpoint %s at phase %s", cid, self.state.current_phase)
        return cid

    async def _initial_state(self) -> WorkflowState:
        sm = self.config.state
        if sm.restore_on_failure and sm.store is not None:
            restored = await sm.store.load(sm.workflow_id)
            if restored is not None:
                logger.info(
                    "Resuming workflow %s at phase %s",
                    sm.workflow_id,
                    restored.current_phase,
                )
                return restored
        return WorkflowState(workflow_id=sm.workflow_id)

    async def run(self, agent: Agent, options: RunOptions) -> RunResult:
        """Run ``agent`` with validation, checkpointing, retry and recovery.

        Raises:
            WorkflowValidationError: an ERROR-severity rule rejected a handoff.
            AgentRelayError: the run failed after any configured retries.
        """
        self.state = await self._initial_state()
        state = self.state
        hooks = WorkflowHooks(
            state,
            checkpoint=self.checkpoint,
            rules=self.config.validation.pre_handoff,
            inner=options.hooks,
        )
        run_options = replace(options, hooks=hooks)
        token = options.config.token or CancellationToken()

        try:
            result = await self._run_with_retry(agent, run_options, token)
        except Exception as e:
            state.metadata["last_error"] = str(e)
            await self.checkpoint()
            await self._recover(state, e)
            raise

        state.artifacts["final_output"] = _jsonable(result.final_output)
        state.metadata["outcome"] = result.outcome.value
        state.metadata["turns"] = result.turns
        await self.checkpoint()
        return result

    async def _run_with_retry(
        self, agent: Agent, options: RunOptions, token: CancellationToken
    ) -> RunResult:
        retry = self.config.retry
        log_retry = before_sleep_log(logger, logging.WARNING)

        def _before_sleep(retry_state: RetryCallState) -> None:
            log_retry(retry_state)
            error = retry_state.outcome.exception() if retry_state.outcome else None
            if retry.on_retry is not None and error is not None:
                retry.on_retry(retry_state.attempt_number, error)

        retrying = AsyncRetrying(
            retry=retry_if_exception(lambda e: getattr(e, "retryable", False)),
            stop=stop_after_attempt(retry.max_retries + 1),
            wait=wait_exponential(
                multiplier=retry.retry_delay,
                exp_base=retry.backoff_factor,
                max=retry.max_delay,
            ),
            sleep=token.sleep,
            before_sleep=_before_sleep,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await self.runner.run(agent, options)
        raise AssertionError("unreachable")

    async def _recover(self, state: WorkflowState, error: BaseException) -> None:
        handler = self.config.recovery.on_failure
        if handler is None:
            return
        outcome = handler(state, error)
        if inspect.isawaitable(outcome):
            await outcome


def _jsonable(value: Any) -> Any:
    if hasattr(value, "model_dump"):
        return value.model_dump(mode="json")
    return value
