"""Observer protocol — decouples run execution from tracing and UIs.

The runner reports what happens (agent switches, model calls, tool calls,
retries) as ``RunEvent``s. Anything implementing ``send(event)`` can watch a
run; ``Wire`` fans events out to any number of asyncio queue subscribers.
"""

from __future__ import annotations

import asyncio
import enum
import time
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable


class EventType(enum.Enum):
    RUN_START = "run_start"
    RUN_END = "run_end"
    AGENT_START = "agent_start"
    AGENT_END = "agent_end"
    TURN_BEGIN = "turn_begin"
    MODEL_REQUEST = "model_request"
    MODEL_RESPONSE = "model_response"
    TEXT = "text"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    HANDOFF = "handoff"
    RETURN = "return"
    RETRY = "retry"
    ERROR = "error"


@dataclass
class RunEvent:
    """A single observation from a run."""

    type: EventType
    data: dict[str, Any] = field(default_factory=dict)
    run_id: str = ""
    agent: str = ""
    turn: int = 0
    task_id: str | None = None
    timestamp: float = field(default_factory=time.time)


@runtime_checkable
class Observer(Protocol):
    """Receives run events. Must not block."""

    def send(self, event: RunEvent) -> None: ...


class NullObserver:
    """Observer that discards everything."""

    def send(self, event: RunEvent) -> None:
        return None


class Wire:
    """Async message bus: runner -> subscribers.

    Single-producer, multi-consumer broadcast.
    """

    def __init__(self) -> None:
        self._subscribers: list[asyncio.Queue[RunEvent | None]] = []
        self._closed: bool = False

    def send(self, event: RunEvent) -> None:
        """Send an event to all subscribers.

        Silently drops events after ``close()`` has been called.
        """
        if self._closed:
            return
        for q in self._subscribers:
            q.put_nowait(event)

    def send_text(self, text: str, agent: str = "") -> None:
        self.send(RunEvent(type=EventType.TEXT, data={"text": text}, agent=agent))

    def send_error(self, error: str, agent: str = "") -> None:
        self.send(RunEvent(type=EventType.ERROR, data={"error": error}, agent=agent))

    def subscribe(self) -> asyncio.Queue[RunEvent | None]:
        """Subscribe to events. Returns a queue to read from."""
        q: asyncio.Queue[RunEvent | None] = asyncio.Queue()
        self._subscribers.append(q)
        return q

    def unsubscribe(self, q: asyncio.Queue) -> None:
        """Unsubscribe from events."""
        if q in self._subscribers:
            self._subscribers.remove(q)

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Signal all subscribers that the wire is closing."""
        if self._closed:
            return
        self._closed = True
        for q in self._subscribers:
            q.put_nowait(None)
