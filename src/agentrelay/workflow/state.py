"""Workflow state, validation rules, and checkpoint stores."""

from __future__ import annotations

import enum
import json
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

import aiofiles
from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from agentrelay.agent.agent import Agent
    from agentrelay.llm.handoff import HandoffCall

logger = logging.getLogger(__name__)


class WorkflowState(BaseModel):
    """Progress of a workflow, checkpointed on every phase transition.

    A phase is named after the agent that is active in it.
    """

    workflow_id: str = "default"
    current_phase: str = ""
    completed_phases: list[str] = Field(default_factory=list)
    artifacts: dict[str, Any] = Field(default_factory=dict)
    last_checkpoint: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    def transition(self, phase: str) -> None:
        if self.current_phase and self.current_phase != phase:
            self.completed_phases.append(self.current_phase)
        self.current_phase = phase


class Severity(str, enum.Enum):
    WARNING = "warning"
    ERROR = "error"


@dataclass
class ValidationRule:
    """A check run before each handoff.

    ``validate(state, from_agent, call)`` returns True when the handoff may
    proceed. A failing ERROR rule aborts the run; a failing WARNING rule
    is logged.
    """

    name: str
    validate: Callable[[WorkflowState, Agent, HandoffCall], bool]
    error_message: str = "validation failed"
    severity: Severity = Severity.ERROR


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------


@runtime_checkable
class StateStore(Protocol):
    async def save(self, workflow_id: str, state: WorkflowState) -> str:
        """Persist a checkpoint; returns its id."""
        ...

    async def load(
        self, workflow_id: str, checkpoint_id: str | None = None
    ) -> WorkflowState | None:
        """Load a checkpoint (the latest when ``checkpoint_id`` is None)."""
        ...

    async def list_checkpoints(self, workflow_id: str) -> list[str]: ...

    async def delete_checkpoint(self, workflow_id: str, checkpoint_id: str) -> None: ...


def _new_checkpoint_id() -> str:
    return f"ckpt-{uuid.uuid4().hex[:12]}"


class InMemoryStateStore:
    """Checkpoints kept in process memory."""

    def __init__(self) -> None:
        self._checkpoints: dict[str, list[tuple[str, dict[str, Any]]]] = {}

    async def save(self, workflow_id: str, state: WorkflowState) -> str:
        cid = _new_checkpoint_id()
        self._checkpoints.setdefault(workflow_id, []).append(
            (cid, state.model_dump(mode="json"))
        )
        return cid

    async def load(
        self, workflow_id: str, checkpoint_id: str | None = None
    ) -> WorkflowState | None:
        entries = self._checkpoints.get(workflow_id, [])
        for cid, data in reversed(entries):
            if checkpoint_id is None or cid == checkpoint_id:
                return WorkflowState.model_validate(data)
        return None

    async def list_checkpoints(self, workflow_id: str) -> list[str]:
        return [cid for cid, _ in self._checkpoints.get(workflow_id, [])]

    async def delete_checkpoint(self, workflow_id: str, checkpoint_id: str) -> None:
        entries = self._checkpoints.get(workflow_id, [])
        self._checkpoints[workflow_id] = [e for e in entries if e[0] != checkpoint_id]


class JsonlStateStore:
    """Checkpoints appended to ``<directory>/<workflow_id>.jsonl``.

    Each line is ``{"checkpoint_id": ..., "state": {...}}``. Best effort:
    no fsync, no locking across processes.
    """

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory).expanduser()

    def _path(self, workflow_id: str) -> Path:
        return self.directory / f"{workflow_id}.jsonl"

    async def _read(self, workflow_id: str) -> list[dict[str, Any]]:
        path = self._path(workflow_id)
        if not path.exists():
            return []
        entries = []
        async with aiofiles.open(path, "r", encoding="utf-8") as f:
            async for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    entries.append(json.loads(line))
                except json.JSONDecodeError:
                    logger.warning("Skipping malformed checkpoint line in %s", path)
        return entries

    async def save(self, workflow_id: str, state: WorkflowState) -> str:
        cid = _new_checkpoint_id()
        self.directory.mkdir(parents=True, exist_ok=True)
        line = json.dumps(
            {"checkpoint_id": cid, "state": state.model_dump(mode="json")},
            ensure_ascii=False,
        )
        async with aiofiles.open(self._path(workflow_id), "a", encoding="utf-8") as f:
            await f.write(line + "\n")
        return cid

    async def load(
        self, workflow_id: str, checkpoint_id: str | None = None
    ) -> WorkflowState | None:
        for entry in reversed(await self._read(workflow_id)):
            if checkpoint_id is None or entry.get("checkpoint_id") == checkpoint_id:
                return WorkflowState.model_validate(entry["state"])
        return None

    async def list_checkpoints(self, workflow_id: str) -> list[str]:
        return [e["checkpoint_id"] for e in await self._read(workflow_id)]

    async def delete_checkpoint(self, workflow_id: str, checkpoint_id: str) -> None:
        entries = await self._read(workflow_id)
        if not entries:
            return
        kept = [e for e in entries if e.get("checkpoint_id") != checkpoint_id]
        async with aiofiles.open(self._path(workflow_id), "w", encoding="utf-8") as f:
            for entry in kept:
                await f.write(json.dumps(entry, ensure_ascii=False) + "\n")


def now() -> datetime:
    return datetime.now(timezone.utc)
