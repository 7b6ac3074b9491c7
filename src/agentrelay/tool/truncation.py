"""Output truncation — bound tool output before it is replayed to a model."""

from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass

logger = logging.getLogger(__name__)

MAX_LINES = 2000
MAX_BYTES = 50 * 1024  # 50KB
SPILL_DIR = "~/.agentrelay/tool-output"


@dataclass(frozen=True)
class TruncationPolicy:
    max_lines: int = MAX_LINES
    max_bytes: int = MAX_BYTES
    spill_dir: str | None = SPILL_DIR  # None disables spilling


DEFAULT_POLICY = TruncationPolicy()


def truncate_output(text: str, policy: TruncationPolicy = DEFAULT_POLICY) -> str:
    """Clip tool output to ``policy`` limits.

    The tail is kept (errors and final answers tend to come last). When
    something is cut, the full text is spilled to a file and a one-line
    notice naming it is prepended.
    """
    if not text:
        return text

    lines = text.split("\n")
    total_bytes = len(text.encode("utf-8", errors="replace"))
    if len(lines) <= policy.max_lines and total_bytes <= policy.max_bytes:
        return text

    kept = "\n".join(lines[-policy.max_lines :])
    encoded = kept.encode("utf-8", errors="replace")
    if len(encoded) > policy.max_bytes:
        # Cut from the front at a safe UTF-8 boundary
        kept = encoded[-policy.max_bytes :].decode("utf-8", errors="ignore")

    dropped_lines = max(len(lines) - policy.max_lines, 0)
    dropped_bytes = total_bytes - len(kept.encode("utf-8", errors="replace"))
    notice = (
        f"[Output truncated: dropped {dropped_lines} lines / {dropped_bytes} bytes "
        f"of {len(lines)} lines / {total_bytes} bytes]"
    )

    if policy.spill_dir:
        path = _spill(text, policy.spill_dir)
        if path:
            notice += f"\n[Full output saved to: {path}]"

    return f"{notice}\n{kept}"


def _spill(text: str, directory: str) -> str | None:
    """Write the full output to ``directory``; None if that fails."""
    target = os.path.expanduser(directory)
    try:
        os.makedirs(target, exist_ok=True)
        fd, path = tempfile.mkstemp(prefix="agentrelay-", suffix=".txt", dir=target)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
    except OSError as e:
        logger.warning("Could not save full tool output to %s: %s", target, e)
        return None
    return path
