"""Run checkpoints: where the last unfinished run stopped.

A checkpoint is written whenever a run halts before every story passes and
is removed once the ledger completes. It records the story that was in
flight, why the run stopped and which workspace files were left
uncommitted, so the next run (or ``ralph status``) can report what it is
resuming from. The ledger and progress log remain the source of truth;
a lost or unreadable checkpoint never blocks a run.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Checkpoint:
    """State of a halted run."""

    pause_reason: str
    story_id: Optional[str] = None
    iteration: int = 0
    max_iterations: int = 0
    error: Optional[str] = None
    uncommitted_files: tuple[str, ...] = ()
    created_at: str = field(default_factory=lambda: datetime.now().isoformat())

    def to_dict(self) -> dict[str, Any]:
        return {
            "pause_reason": self.pause_reason,
            "story_id": self.story_id,
            "iteration": self.iteration,
            "max_iterations": self.max_iterations,
            "error": self.error,
            "uncommitted_files": list(self.uncommitted_files),
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Checkpoint:
        return cls(
            pause_reason=str(data["pause_reason"]),
            story_id=data.get("story_id"),
            iteration=int(data.get("iteration", 0)),
            max_iterations=int(data.get("max_iterations", 0)),
            error=data.get("error"),
            uncommitted_files=tuple(data.get("uncommitted_files", [])),
            created_at=data.get("created_at", ""),
        )

    def describe(self) -> str:
        """One line for logs and the status command."""
        where = f"story {self.story_id}" if self.story_id else "no story in flight"
        line = f"halted ({self.pause_reason}) at iteration {self.iteration}, {where}"
        if self.uncommitted_files:
            line += f", {len(self.uncommitted_files)} uncommitted file(s)"
        return line


class CheckpointStore:
    """Single JSON checkpoint file next to the ledger."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def save(self, checkpoint: Checkpoint) -> None:
        """Write the checkpoint. Failures are logged, never raised."""
        tmp = self.path.with_name(self.path.name + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(json.dumps(checkpoint.to_dict(), indent=2) + "\n", encoding="utf-8")
            os.replace(tmp, self.path)
        except OSError as exc:
            logger.warning(f"Failed to save checkpoint {self.path}: {exc}")
            return
        logger.debug(f"Checkpoint saved: {checkpoint.describe()}")

    def load(self) -> Optional[Checkpoint]:
        """The saved checkpoint, or None when there is none or it is unreadable."""
        if not self.path.exists():
            return None
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            return Checkpoint.from_dict(data)
        except (OSError, ValueError, KeyError, TypeError) as exc:
            logger.warning(f"Ignoring unreadable checkpoint {self.path}: {exc}")
            return None

    def clear(self) -> None:
        try:
            self.path.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning(f"Failed to clear checkpoint {self.path}: {exc}")
