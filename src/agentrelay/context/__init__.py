"""Conversation — ordered, append-only message history with JSONL persistence."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import aiofiles

from agentrelay.llm.message import (
    HandoffPart,
    Message,
    TextPart,
    ToolCallPart,
    ToolResultPart,
)

logger = logging.getLogger(__name__)


@dataclass
class Conversation:
    """One conversation thread.

    Items are only ever appended. ``replay()`` is what a model sees: the
    thread minus transcript-only handoff markers.
    """

    messages: list[Message] = field(default_factory=list)

    def append(self, message: Message) -> None:
        self.messages.append(message)

    def extend(self, messages: Iterable[Message]) -> None:
        self.messages.extend(messages)

    def replay(self) -> list[Message]:
        """Messages to send to a model, in order."""
        return [m for m in self.messages if not m.is_marker]

    def pending_tool_call_ids(self) -> list[str]:
        """Ids of tool calls in the last assistant message still lacking a result."""
        last_assistant: Message | None = None
        answered: set[str] = set()
        for m in self.messages:
            if m.role == "assistant":
                last_assistant = m
                answered = set()
            elif m.role == "tool" and m.tool_result is not None:
                answered.add(m.tool_result.tool_call_id)
        if last_assistant is None:
            return []
        return [
            p.id
            for p in last_assistant.parts
            if isinstance(p, ToolCallPart) and p.id not in answered
        ]

    def to_dicts(self) -> list[dict[str, Any]]:
        return [message_to_dict(m) for m in self.messages]

    @classmethod
    def from_dicts(cls, items: Iterable[dict[str, Any]]) -> Conversation:
        return cls(messages=[dict_to_message(d) for d in items])

    async def save(self, path: Path) -> None:
        """Write the whole thread as JSONL."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        async with aiofiles.open(path, "w", encoding="utf-8") as f:
            for msg in self.messages:
                await f.write(
                    json.dumps(message_to_dict(msg), ensure_ascii=False) + "\n"
                )

    @classmethod
    async def restore(cls, path: Path) -> Conversation:
        """Restore a thread from a JSONL file; missing file means empty."""
        path = Path(path)
        conv = cls()
        if not path.exists():
            return conv

        async with aiofiles.open(path, "r", encoding="utf-8") as f:
            async for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    data = json.loads(line)
                except json.JSONDecodeError:
                    logger.warning("Skipping malformed JSONL line in %s", path)
                    continue
                if "role" in data:
                    conv.messages.append(dict_to_message(data))

        return conv

    def __len__(self) -> int:
        return len(self.messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(self.messages)


def message_to_dict(msg: Message) -> dict[str, Any]:
    """Serialize a Message to a dict for JSONL storage."""
    result: dict[str, Any] = {"role": msg.role}
    if msg.name:
        result["name"] = msg.name

    text_parts = [p for p in msg.parts if isinstance(p, TextPart)]
    tc_parts = [p for p in msg.parts if isinstance(p, ToolCallPart)]
    tr_parts = [p for p in msg.parts if isinstance(p, ToolResultPart)]
    handoff_parts = [p for p in msg.parts if isinstance(p, HandoffPart)]

    if text_parts:
        result["content"] = "".join(p.text for p in text_parts)

    if tc_parts:
        result["tool_calls"] = [
            {"id": p.id, "name": p.name, "arguments": p.arguments} for p in tc_parts
        ]

    if tr_parts:
        p = tr_parts[0]
        result["tool_call_id"] = p.tool_call_id
        result["tool_name"] = p.tool_name
        result["content"] = p.content
        result["is_error"] = p.is_error

    if handoff_parts:
        h = handoff_parts[0]
        result["handoff"] = {
            "kind": h.kind,
            "from_agent": h.from_agent,
            "to_agent": h.to_agent,
            "task_id": h.task_id,
            "input": h.input,
            "is_task_complete": h.is_task_complete,
        }

    return result


def dict_to_message(data: dict[str, Any]) -> Message:
    """Deserialize a dict from JSONL to a Message."""
    role = data["role"]
    parts: list[Any] = []

    if role == "tool":
        parts.append(
            ToolResultPart(
                tool_call_id=data.get("tool_call_id", ""),
                content=data.get("content", ""),
                is_error=data.get("is_error", False),
                tool_name=data.get("tool_name", ""),
            )
        )
    elif "handoff" in data:
        parts.append(HandoffPart(**data["handoff"]))
    else:
        if data.get("content"):
            parts.append(TextPart(text=data["content"]))
        for tc in data.get("tool_calls", []):
            parts.append(
                ToolCallPart(
                    id=tc.get("id", ""),
                    name=tc.get("name", ""),
                    arguments=tc.get("arguments", ""),
                )
            )

    return Message(role=role, parts=parts, name=data.get("name"))


__all__ = ["Conversation", "message_to_dict", "dict_to_message"]
