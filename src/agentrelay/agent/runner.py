"""The turn loop — drives agents until one of them produces a final answer."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field, replace
from typing import Any, Callable

from pydantic import ValidationError

from agentrelay.agent.agent import Agent
from agentrelay.agent.guardrail import InputGuardrail, OutputGuardrail
from agentrelay.agent.handoff import HandoffResolver
from agentrelay.agent.hooks import AgentHooks, RunHooks
from agentrelay.agent.registry import AgentRegistry
from agentrelay.agent.result import RunOutcome, RunResult
from agentrelay.agent.state import RunState
from agentrelay.errors import (
    AgentRelayError,
    ConfigurationError,
    GuardrailTripped,
    OutputValidationError,
    ProviderError,
    RunCancelledError,
)
from agentrelay.llm.handoff import HandoffCall, HandoffKind
from agentrelay.llm.message import Message, ToolCall, ToolResultPart
from agentrelay.llm.model import Model, ModelProvider, ModelRequest, ModelResponse, ModelSettings
from agentrelay.llm.retry import RateLimitedRetrier
from agentrelay.llm.streaming import EventChannel, StreamEvent, StreamEventType
from agentrelay.session.context import CancellationToken, RunContext, new_run_id
from agentrelay.session.wire import EventType, NullObserver, Observer

logger = logging.getLogger(__name__)

DEFAULT_MAX_TURNS = 10
DEFAULT_TOOL_NUDGE_AFTER = 3

TOOL_NUDGE_PROMPT = (
    "Now that you have the information from the tool(s), "
    "please provide a complete response to my original question."
)

_NO_HOOKS = AgentHooks()


@dataclass
class RunConfig:
    """Run-wide settings that are not part of any agent."""

    model: str | Model | None = None  # overrides every agent's model
    model_provider: ModelProvider | None = None
    model_settings: ModelSettings | None = None
    observer: Observer | None = None
    tracing_disabled: bool = False
    token: CancellationToken | None = None
    input_guardrails: list[InputGuardrail] = field(default_factory=list)
    output_guardrails: list[OutputGuardrail] = field(default_factory=list)
    legacy_handoff_prefix: bool = True
    tool_nudge_after: int | None = DEFAULT_TOOL_NUDGE_AFTER


@dataclass
class RunOptions:
    input: str | list[Message]
    max_turns: int = DEFAULT_MAX_TURNS
    context: Any = None
    hooks: RunHooks | None = None
    config: RunConfig = field(default_factory=RunConfig)


class RunStream:
    """A run in progress, consumed as a stream of events.

    Model output arrives as CONTENT / TOOL_CALL / HANDOFF events; the
    runner adds TOOL_RESULT and AGENT_UPDATED. The stream ends with a DONE
    event carrying the final output, or an ERROR event.
    """

    def __init__(self, channel: EventChannel, task: asyncio.Task[RunResult]) -> None:
        self._channel = channel
        self._task = task

    async def stream_events(self) -> AsyncIterator[StreamEvent]:
        async for event in self._channel:
            yield event
        # Surface the run's exception (if any) to the consumer
        await self._task

    async def get_result(self) -> RunResult:
        return await self._task

    @property
    def is_complete(self) -> bool:
        return self._task.done()

    def cancel(self) -> None:
        self._task.cancel()


class Runner:
    """Executes runs.

    A runner holds what runs share: the agent registry used to resolve
    handoff targets, the default model provider, and the retrier that
    rate-limits calls to it.
    """

    def __init__(
        self,
        registry: AgentRegistry | None = None,
        provider: ModelProvider | None = None,
        retrier: RateLimitedRetrier | None = None,
    ) -> None:
        self.registry = registry or AgentRegistry()
        self.provider = provider
        self._retrier = retrier
        self._fallback_retrier: RateLimitedRetrier | None = None

    async def run(self, agent: Agent, options: RunOptions) -> RunResult:
        """Run ``agent`` to completion (or until the turn budget runs out)."""
        return await self._execute(agent, options, channel=None)

    def run_streamed(self, agent: Agent, options: RunOptions) -> RunStream:
        """Start a run in a background task and stream its events.

        Must be called from a running event loop.
        """
        channel = EventChannel()
        task = asyncio.get_running_loop().create_task(
            self._stream_run(agent, options, channel)
        )
        return RunStream(channel, task)

    async def _stream_run(
        self, agent: Agent, options: RunOptions, channel: EventChannel
    ) -> RunResult:
        try:
            result = await self._execute(agent, options, channel)
        except Exception as e:
            channel.send(StreamEvent(type=StreamEventType.ERROR, error=e))
            raise
        finally:
            if not channel.closed:
                # DONE or ERROR is sent before this point unless cancelled
                channel.close()
        return result

    # ------------------------------------------------------------------
    # The loop
    # ------------------------------------------------------------------

    async def _execute(
        self, starting_agent: Agent, options: RunOptions, channel: EventChannel | None
    ) -> RunResult:
        config = options.config
        hooks = options.hooks or RunHooks()
        observer: Observer = (
            NullObserver()
            if config.tracing_disabled or config.observer is None
            else config.observer
        )
        run_id = new_run_id()
        ctx = RunContext(
            run_id=run_id,
            token=config.token or CancellationToken(),
            observer=observer,
            context=options.context,
            agent=starting_agent.name,
        )

        if options.max_turns < 1:
            raise ConfigurationError("max_turns must be at least 1")
        resolver = HandoffResolver(self.registry.overlay(starting_agent))
        retrier = self._retrier_for(config)

        state = RunState.start(starting_agent, _input_messages(options.input))

        def partial(outcome: RunOutcome = RunOutcome.COMPLETED) -> RunResult:
            return RunResult.from_state(state, options.input, outcome, run_id=run_id)

        logger.info("Run %s: starting with agent %s", run_id, starting_agent.name)
        ctx.emit(EventType.RUN_START, input=_preview(options.input))

        try:
            await self._check_input(ctx, starting_agent, options.input, config)
            await hooks.on_run_start(ctx, starting_agent)
            await _agent_hooks(starting_agent).on_agent_start(ctx, starting_agent)
            ctx.emit(EventType.AGENT_START)

            outcome = RunOutcome.MAX_TURNS
            while state.turn < options.max_turns:
                ctx.token.raise_if_cancelled()
                state.turn += 1
                agent = state.agent
                ctx.agent, ctx.turn, ctx.task_id = agent.name, state.turn, state.current_task_id()
                logger.info("Agent %s: turn %d/%d", agent.name, state.turn, options.max_turns)
                ctx.emit(EventType.TURN_BEGIN)
                await hooks.on_turn_start(ctx, agent, state.turn)

                request = self._build_request(agent, state, resolver, config)
                response = await self._call_model(agent, request, ctx, config, retrier, channel)
                state.record_response(response)
                state.append(response.to_message(agent.name))

                if response.is_final:
                    state.final_output = await self._finalize(agent, response.content, ctx, config)
                    await hooks.on_turn_end(ctx, agent, state.turn)
                    outcome = RunOutcome.COMPLETED
                    break

                for call in response.tool_calls:
                    await self._run_tool(agent, call, state, ctx, channel)

                if response.handoff_calls:
                    await self._handoff(response.handoff_calls, state, resolver, ctx, hooks, channel)
                else:
                    state.consecutive_tool_turns += 1

                await hooks.on_turn_end(ctx, agent, state.turn)
            else:
                logger.warning("Run %s hit max turns (%d)", run_id, options.max_turns)
        except RunCancelledError as e:
            logger.info("Run %s cancelled: %s", run_id, e)
            ctx.emit(EventType.ERROR, error=str(e), cancelled=True)
            e.result = e.result or partial()
            raise
        except AgentRelayError as e:
            logger.error("Run %s failed: %s", run_id, e)
            ctx.emit(EventType.ERROR, error=str(e))
            e.result = e.result or partial()
            raise

        await _agent_hooks(state.agent).on_agent_end(ctx, state.agent, state.final_output)
        await hooks.on_run_end(ctx, state.agent, state.final_output)
        result = partial(outcome)
        ctx.emit(
            EventType.RUN_END,
            outcome=outcome.value,
            turns=state.turn,
            pending=len(result.pending),
        )
        if channel is not None:
            channel.send(
                StreamEvent(
                    type=StreamEventType.DONE,
                    agent=state.agent.name,
                    data={"final_output": state.final_output, "outcome": outcome.value},
                )
            )
        return result

    # ------------------------------------------------------------------
    # Turn steps
    # ------------------------------------------------------------------

    def _build_request(
        self,
        agent: Agent,
        state: RunState,
        resolver: HandoffResolver,
        config: RunConfig,
    ) -> ModelRequest:
        settings = (config.model_settings or ModelSettings()).resolve(agent.model_settings)

        nudge_after = config.tool_nudge_after
        if nudge_after and state.consecutive_tool_turns >= nudge_after:
            settings.tool_choice = "auto"
            if state.consecutive_tool_turns == nudge_after:
                logger.info(
                    "Agent %s made %d consecutive tool turns; nudging for an answer",
                    agent.name,
                    nudge_after,
                )
                state.append(Message.user(TOOL_NUDGE_PROMPT))

        pending = state.thread.pending_tool_call_ids()
        if pending:
            logger.warning(
                "Agent %s is calling its model with unanswered tool calls: %s",
                agent.name,
                ", ".join(pending),
            )

        return ModelRequest(
            system_instructions=agent.system_prompt(),
            input=state.thread.replay(),
            tools=agent.tool_registry().get_specs(),
            handoffs=resolver.specs_for(agent, state),
            output_schema=agent.output_schema(),
            settings=settings,
            legacy_handoff_prefix=config.legacy_handoff_prefix,
        )

    def _retrier_for(self, config: RunConfig) -> RateLimitedRetrier:
        if config.model_provider is not None:
            return config.model_provider.retrier
        if self._retrier is not None:
            return self._retrier
        if self.provider is not None:
            return self.provider.retrier
        if self._fallback_retrier is None:
            self._fallback_retrier = RateLimitedRetrier()
        return self._fallback_retrier

    def _resolve_model(self, agent: Agent, config: RunConfig) -> Model:
        model = config.model if config.model is not None else agent.model
        if model is not None and not isinstance(model, str):
            return model
        provider = config.model_provider or self.provider
        if provider is None:
            raise ConfigurationError(
                f"agent {agent.name!r} names model {model!r} but no model provider is set"
            )
        return provider.get_model(model)

    async def _call_model(
        self,
        agent: Agent,
        request: ModelRequest,
        ctx: RunContext,
        config: RunConfig,
        retrier: RateLimitedRetrier,
        channel: EventChannel | None,
    ) -> ModelResponse:
        model = self._resolve_model(agent, config)
        agent_hooks = _agent_hooks(agent)
        await agent_hooks.on_before_model_call(ctx, agent, request)
        ctx.emit(
            EventType.MODEL_REQUEST,
            messages=len(request.input),
            tools=[t["function"]["name"] for t in request.tool_specs()],
        )

        def on_retry(attempt: int, error: BaseException, delay: float) -> None:
            ctx.emit(EventType.RETRY, attempt=attempt, error=str(error), delay=delay)

        estimated = request.estimate_tokens()
        try:
            if channel is None:
                response = await retrier.call(
                    lambda: model.get_response(request),
                    token=ctx.token,
                    estimated_tokens=estimated,
                    on_retry=on_retry,
                )
            else:
                response = await self._consume_stream(
                    model, request, ctx, retrier, channel, estimated, on_retry
                )
        except AgentRelayError:
            raise
        except Exception as e:
            raise ProviderError(f"model call for agent {agent.name!r} failed: {e}") from e

        ctx.emit(
            EventType.MODEL_RESPONSE,
            content=response.content,
            tool_calls=[tc.name for tc in response.calls],
            usage=response.usage.total_tokens,
        )
        if response.content:
            ctx.emit(EventType.TEXT, text=response.content)
        await agent_hooks.on_after_model_call(ctx, agent, response)
        return response

    async def _consume_stream(
        self,
        model: Model,
        request: ModelRequest,
        ctx: RunContext,
        retrier: RateLimitedRetrier,
        channel: EventChannel,
        estimated: int,
        on_retry: Callable[[int, BaseException, float], None],
    ) -> ModelResponse:
        response: ModelResponse | None = None
        async for event in retrier.open_stream(
            lambda: model.stream_response(request),
            token=ctx.token,
            estimated_tokens=estimated,
            on_retry=on_retry,
            is_failure=_stream_failure,
        ):
            if event.type is StreamEventType.ERROR:
                error = event.error or ProviderError("model stream failed")
                if isinstance(error, Exception):
                    raise error
                raise ProviderError(str(error)) from error
            if event.type is StreamEventType.DONE:
                response = event.response
                continue
            channel.send(replace(event, agent=ctx.agent))

        if response is None:
            raise ProviderError("model stream ended without a final response")
        return response

    async def _run_tool(
        self,
        agent: Agent,
        call: ToolCall,
        state: RunState,
        ctx: RunContext,
        channel: EventChannel | None,
    ) -> ToolResultPart:
        agent_hooks = _agent_hooks(agent)
        await agent_hooks.on_before_tool_call(ctx, agent, call)
        ctx.emit(EventType.TOOL_CALL, id=call.id, name=call.name, arguments=call.arguments)

        result = await ctx.token.race(agent.tool_registry().dispatch(call, ctx))

        if result.is_error:
            logger.warning("Tool %s returned an error: %s", call.name, result.content[:200])
        ctx.emit(
            EventType.TOOL_RESULT,
            id=call.id,
            name=call.name,
            content=result.content,
            is_error=result.is_error,
        )
        state.append(Message(role="tool", parts=[result]))
        if channel is not None:
            channel.send(
                StreamEvent(
                    type=StreamEventType.TOOL_RESULT,
                    tool_call=call,
                    content=result.content,
                    agent=agent.name,
                    data={"is_error": result.is_error},
                )
            )
        await agent_hooks.on_after_tool_call(ctx, agent, call, result)
        return result

    async def _handoff(
        self,
        calls: list[HandoffCall],
        state: RunState,
        resolver: HandoffResolver,
        ctx: RunContext,
        hooks: RunHooks,
        channel: EventChannel | None,
    ) -> None:
        call, *extra = calls
        for skipped in extra:
            logger.warning(
                "Agent %s requested more than one handoff; ignoring %s",
                state.agent.name,
                skipped.target or skipped.kind.value,
            )
            state.append(
                Message.tool_result_message(
                    skipped.call_id,
                    "Error: only one handoff per turn is allowed; this one was not applied.",
                    is_error=True,
                    tool_name=skipped.target,
                )
            )

        from_agent = state.agent
        await hooks.on_before_handoff(ctx, from_agent, call)
        await _agent_hooks(from_agent).on_before_handoff(ctx, from_agent, call)

        outcome = resolver.apply(call, state)
        state.transcript.append(outcome.marker)

        ctx.emit(
            EventType.RETURN if outcome.kind is HandoffKind.RETURN else EventType.HANDOFF,
            from_agent=outcome.from_agent.name,
            to_agent=outcome.to_agent.name,
            task_id=outcome.task_id,
            input=call.input,
            is_task_complete=call.is_task_complete,
            depth=len(state.stack),
        )
        await hooks.on_after_handoff(ctx, from_agent, outcome.to_agent, call)
        await _agent_hooks(from_agent).on_after_handoff(ctx, from_agent, outcome.to_agent, call)

        await _agent_hooks(from_agent).on_agent_end(ctx, from_agent, None)
        ctx.emit(EventType.AGENT_END)
        ctx.agent = outcome.to_agent.name
        ctx.task_id = state.current_task_id()
        await _agent_hooks(outcome.to_agent).on_agent_start(ctx, outcome.to_agent)
        ctx.emit(EventType.AGENT_START)

        if channel is not None:
            channel.send(
                StreamEvent(
                    type=StreamEventType.AGENT_UPDATED,
                    handoff=call,
                    agent=outcome.to_agent.name,
                    data={"from_agent": from_agent.name, "task_id": outcome.task_id},
                )
            )

    # ------------------------------------------------------------------
    # Guardrails and output
    # ------------------------------------------------------------------

    async def _check_input(
        self,
        ctx: RunContext,
        agent: Agent,
        input: str | list[Message],
        config: RunConfig,
    ) -> None:
        for guardrail in [*config.input_guardrails, *agent.input_guardrails]:
            result = await guardrail.run(ctx, agent, input)
            if result.tripwire_triggered:
                raise GuardrailTripped(guardrail.name, result.info, stage="input")

    async def _finalize(
        self, agent: Agent, content: str, ctx: RunContext, config: RunConfig
    ) -> Any:
        output: Any = content
        if agent.output_type is not None:
            try:
                output = agent.output_type.model_validate_json(content)
            except ValidationError as e:
                raise OutputValidationError(
                    f"agent {agent.name!r} output does not match "
                    f"{agent.output_type.__name__}: {e}",
                    output=content,
                ) from e

        for guardrail in [*config.output_guardrails, *agent.output_guardrails]:
            result = await guardrail.run(ctx, agent, output)
            if result.tripwire_triggered:
                raise GuardrailTripped(guardrail.name, result.info, stage="output")

        logger.info("Agent %s produced the final output", agent.name)
        return output


def _agent_hooks(agent: Agent) -> AgentHooks:
    return agent.hooks or _NO_HOOKS


def _stream_failure(event: StreamEvent) -> BaseException | None:
    if event.type is StreamEventType.ERROR:
        return event.error
    return None


def _input_messages(input: str | list[Message]) -> list[Message]:
    if isinstance(input, str):
        return [Message.user(input)]
    return list(input)


def _preview(input: str | list[Message], limit: int = 200) -> str:
    text = input if isinstance(input, str) else " ".join(m.text for m in input)
    return text[:limit]
