"""Run context and cooperative cancellation."""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from agentrelay.errors import RunCancelledError
from agentrelay.session.wire import EventType, NullObserver, Observer, RunEvent

logger = logging.getLogger(__name__)

R = TypeVar("R")


class CancellationToken:
    """A one-shot cancellation signal shared by everything in a run.

    Waits inside the runner (model calls, retry backoff, rate-limit waits,
    tool execution) race against the token, so cancelling takes effect at
    the next suspension point rather than after the current call finishes.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str = ""

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "run cancelled") -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()
        logger.info("Cancellation requested: %s", reason)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RunCancelledError(self.reason)

    async def sleep(self, delay: float) -> None:
        """Sleep for ``delay`` seconds, raising early if cancelled."""
        self.raise_if_cancelled()
        try:
            await asyncio.wait_for(self._event.wait(), timeout=max(delay, 0.0))
        except asyncio.TimeoutError:
            return
        raise RunCancelledError(self.reason)

    async def race(self, awaitable: Awaitable[R]) -> R:
        """Await ``awaitable`` unless the token fires first."""
        if self._event.is_set():
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise RunCancelledError(self.reason)

        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait(
                {task, waiter}, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if task in done:
            return task.result()

        task.cancel()
        await asyncio.wait({task})
        raise RunCancelledError(self.reason)


def new_run_id() -> str:
    return f"run-{uuid.uuid4().hex[:12]}"


@dataclass
class RunContext:
    """Per-run data handed to tools, hooks and guardrails.

    ``context`` is the caller's own object, passed through untouched.
    """

    run_id: str = field(default_factory=new_run_id)
    token: CancellationToken = field(default_factory=CancellationToken)
    observer: Observer = field(default_factory=NullObserver)
    context: Any = None
    agent: str = ""
    turn: int = 0
    task_id: str | None = None

    def emit(self, type: EventType, **data: Any) -> None:
        """Send an event stamped with the current run position."""
        self.observer.send(
            RunEvent(
                type=type,
                data=data,
                run_id=self.run_id,
                agent=self.agent,
                turn=self.turn,
                task_id=self.task_id,
            )
        )
