"""CLI entry point for agentrelay."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

import typer

from agentrelay.config import RelayConfig

if TYPE_CHECKING:
    from agentrelay.agent.registry import AgentRegistry
    from agentrelay.agent.result import RunResult
    from agentrelay.session.wire import Wire

app = typer.Typer(
    name="agentrelay",
    help="Run cooperating AI agents defined as markdown files.",
    no_args_is_help=True,
)


def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _load_registry(agents_dir: str) -> AgentRegistry:
    from agentrelay.agent.registry import AgentRegistry

    registry = AgentRegistry()
    registry.discover([agents_dir])
    return registry


@app.command()
def agents(
    agents_dir: str | None = typer.Option(
        None, "--agents-dir", "-d", help="Directory of agent markdown files."
    ),
    config_file: str | None = typer.Option(
        None, "--config", "-c", help="Path to config JSON file."
    ),
) -> None:
    """List the agents found in the agents directory."""
    config = RelayConfig.load(config_file)
    registry = _load_registry(agents_dir or config.agents_dir)
    if not len(registry):
        typer.echo(f"No agents found in {agents_dir or config.agents_dir}")
        raise typer.Exit(1)

    for name in registry.names():
        agent = registry.get(name)
        assert agent is not None
        roles = [r for r, on in (("delegator", agent.delegator), ("executor", agent.executor)) if on]
        role_str = f" [{', '.join(roles)}]" if roles else ""
        handoffs = f" -> {', '.join(agent.handoffs)}" if agent.handoffs else ""
        typer.echo(f"{name}{role_str}{handoffs}")
        if agent.description:
            typer.echo(f"    {agent.description}")


@app.command()
def run(
    prompt: str = typer.Argument(help="What to ask the starting agent."),
    agent_name: str = typer.Option(
        ..., "--agent", "-a", help="Name of the starting agent."
    ),
    agents_dir: str | None = typer.Option(
        None, "--agents-dir", "-d", help="Directory of agent markdown files."
    ),
    model: str | None = typer.Option(
        None, "--model", "-m", help="Model override (litellm format, e.g. openai/gpt-4o)."
    ),
    max_turns: int | None = typer.Option(
        None, "--max-turns", help="Model round-trips before giving up."
    ),
    stream: bool = typer.Option(False, "--stream", help="Print output as it streams."),
    workflow_id: str | None = typer.Option(
        None, "--workflow-id", "-w", help="Checkpoint the run under this workflow id."
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging."),
    config_file: str | None = typer.Option(
        None, "--config", "-c", help="Path to config JSON file."
    ),
) -> None:
    """Run a prompt through a team of agents."""
    setup_logging(verbose)
    if stream and workflow_id:
        typer.echo("Error: --stream and --workflow-id cannot be combined", err=True)
        raise typer.Exit(1)

    config = RelayConfig.load(config_file)
    if model:
        config.llm.model = model
    if max_turns:
        config.runner.max_turns = max_turns

    registry = _load_registry(agents_dir or config.agents_dir)
    agent = registry.get(agent_name)
    if agent is None:
        typer.echo(
            f"Error: unknown agent {agent_name!r}. Available: {', '.join(registry.names())}",
            err=True,
        )
        raise typer.Exit(1)

    typer.echo(f"Agent: {agent_name}")
    typer.echo(f"Model: {config.llm.model}")
    typer.echo("---")

    from agentrelay.errors import AgentRelayError

    try:
        result = asyncio.run(_run(prompt, agent_name, registry, config, stream, workflow_id))
    except AgentRelayError as e:
        typer.echo(f"\nERROR: {e}", err=True)
        raise typer.Exit(1)

    typer.echo("\n---")
    typer.echo(f"Outcome: {result.outcome.value} after {result.turns} turns (last agent: {result.last_agent})")
    for pending in result.pending:
        typer.echo(
            f"Pending: task {pending.task_id} ({pending.delegator} -> {pending.executor})"
        )


async def _run(
    prompt: str,
    agent_name: str,
    registry: AgentRegistry,
    config: RelayConfig,
    stream: bool,
    workflow_id: str | None = None,
) -> RunResult:
    from agentrelay.agent.runner import RunConfig, Runner, RunOptions
    from agentrelay.llm.model import ModelSettings
    from agentrelay.llm.provider import LiteLLMProvider
    from agentrelay.llm.streaming import StreamEventType
    from agentrelay.session.wire import Wire

    provider = LiteLLMProvider(
        default_model=config.llm.model,
        settings=ModelSettings(
            temperature=config.llm.temperature, max_tokens=config.llm.max_tokens
        ),
        retrier=config.rate_limit.build_retrier(),
    )
    runner = Runner(registry=registry, provider=provider)
    wire = Wire()
    consumer = asyncio.create_task(_consume_wire(wire, print_text=not stream))

    options = RunOptions(
        input=prompt,
        max_turns=config.runner.max_turns,
        config=RunConfig(
            observer=wire,
            tool_nudge_after=config.runner.tool_nudge_after,
            legacy_handoff_prefix=config.runner.legacy_handoff_prefix,
        ),
    )

    agent = registry.get(agent_name)
    assert agent is not None
    try:
        if workflow_id:
            from agentrelay.workflow import (
                JsonlStateStore,
                StateManagementConfig,
                WorkflowConfig,
                WorkflowRunner,
            )

            state = StateManagementConfig(
                store=JsonlStateStore(config.state_dir),
                workflow_id=workflow_id,
                restore_on_failure=True,
            )
            return await WorkflowRunner(runner, WorkflowConfig(state=state)).run(agent, options)

        if not stream:
            return await runner.run(agent, options)

        run_stream = runner.run_streamed(agent, options)
        async for event in run_stream.stream_events():
            if event.type is StreamEventType.CONTENT:
                print(event.content, end="", flush=True)
        return await run_stream.get_result()
    finally:
        wire.close()
        await consumer


async def _consume_wire(wire: Wire, print_text: bool = True) -> None:
    from agentrelay.session.wire import EventType

    queue = wire.subscribe()
    while True:
        event = await queue.get()
        if event is None:
            break

        d = event.data
        prefix = f"  [{event.agent}] " if event.agent else "  "

        if event.type == EventType.TURN_BEGIN:
            print(f"\n{prefix}[Turn {event.turn}]", flush=True)

        elif event.type == EventType.TEXT and print_text:
            print(d.get("text", ""), flush=True)

        elif event.type == EventType.TOOL_CALL:
            print(f"{prefix}> {d.get('name', '?')}", flush=True)

        elif event.type == EventType.TOOL_RESULT:
            content = d.get("content", "")
            status = "ERROR" if d.get("is_error") else "OK"
            first_line = content.split("\n")[0][:100] if content else status
            print(f"{prefix}< {d.get('name', '?')}: {first_line}", flush=True)

        elif event.type == EventType.HANDOFF:
            print(
                f"\n--- {d.get('from_agent')} -> {d.get('to_agent')} "
                f"(task {d.get('task_id')}) ---",
                flush=True,
            )

        elif event.type == EventType.RETURN:
            done = "done" if d.get("is_task_complete", True) else "interim"
            print(
                f"\n--- {d.get('from_agent')} returned to {d.get('to_agent')} "
                f"(task {d.get('task_id')}, {done}) ---",
                flush=True,
            )

        elif event.type == EventType.RETRY:
            print(
                f"{prefix}[retry {d.get('attempt')}] {d.get('error')} "
                f"(waiting {d.get('delay', 0):.1f}s)",
                flush=True,
            )

        elif event.type == EventType.ERROR:
            print(f"\nERROR: {d.get('error', 'Unknown error')}", flush=True)

    wire.unsubscribe(queue)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
