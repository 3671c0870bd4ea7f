"""Append-only progress log of iteration outcomes.

Each outcome is one JSON line in ``progress.jsonl``. The log doubles as
the loop's memory: prompts for later iterations are built from a bounded
summary of its most recent entries, since the agent itself keeps nothing
between runs.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from .errors import LedgerIOError
from .gates import GateResult

logger = logging.getLogger(__name__)


class Verdict(str, Enum):
    """Overall result recorded for one iteration."""

    PASS = "pass"
    FAIL = "fail"
    INVOCATION_ERROR = "invocation-error"
    BLOCKED = "blocked"


@dataclass(frozen=True)
class IterationOutcome:
    """Immutable record of one iteration."""

    iteration: int
    story_id: str
    verdict: Verdict
    gate_results: tuple[GateResult, ...] = ()
    agent_exit_status: Optional[int] = None
    agent_status: str = ""
    attempts: int = 1
    duration: float = 0.0
    changed_files: tuple[str, ...] = ()
    output_excerpt: str = ""
    note: str = ""
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())

    @property
    def passed(self) -> bool:
        return self.verdict == Verdict.PASS

    def to_dict(self) -> dict[str, Any]:
        return {
            "iteration": self.iteration,
            "timestamp": self.timestamp,
            "story_id": self.story_id,
            "verdict": self.verdict.value,
            "gate_results": [g.to_dict() for g in self.gate_results],
            "agent_exit_status": self.agent_exit_status,
            "agent_status": self.agent_status,
            "attempts": self.attempts,
            "duration": round(self.duration, 3),
            "changed_files": list(self.changed_files),
            "output_excerpt": self.output_excerpt,
            "note": self.note,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> IterationOutcome:
        return cls(
            iteration=int(data["iteration"]),
            timestamp=data.get("timestamp", ""),
            story_id=data["story_id"],
            verdict=Verdict(data["verdict"]),
            gate_results=tuple(GateResult.from_dict(g) for g in data.get("gate_results", [])),
            agent_exit_status=data.get("agent_exit_status"),
            agent_status=data.get("agent_status", ""),
            attempts=int(data.get("attempts", 1)),
            duration=float(data.get("duration", 0.0)),
            changed_files=tuple(data.get("changed_files", [])),
            output_excerpt=data.get("output_excerpt", ""),
            note=data.get("note", ""),
        )

    def summary_line(self) -> str:
        """One human-readable line for prompts and logs."""
        gates = ", ".join(f"{g.name}={g.status.value}" for g in self.gate_results) or "no gates run"
        line = f"#{self.iteration} {self.story_id}: {self.verdict.value} (agent {self.agent_status or 'n/a'}; {gates})"
        if self.note:
            line += f" - {self.note}"
        return line


class ProgressLog:
    """Append-only JSON-lines log of IterationOutcomes."""

    def __init__(self, path: Path):
        """Initialize the progress log.

        Args:
            path: Location of the JSON-lines file. Created on first append.
        """
        self.path = Path(path)

    def append(self, outcome: IterationOutcome) -> None:
        """Append one outcome.

        Raises:
            LedgerIOError: The log could not be written.
        """
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(json.dumps(outcome.to_dict()) + "\n")
        except OSError as exc:
            raise LedgerIOError(f"Failed to append to progress log {self.path}: {exc}") from exc
        logger.debug(f"Progress: {outcome.summary_line()}")

    def read(self) -> list[IterationOutcome]:
        """All outcomes in append order. Unreadable lines are skipped."""
        if not self.path.exists():
            return []
        try:
            lines = self.path.read_bytes().splitlines()
        except OSError as exc:
            raise LedgerIOError(f"Failed to read progress log {self.path}: {exc}") from exc

        outcomes = []
        for lineno, line in enumerate(lines, 1):
            if not line.strip():
                continue
            # UnicodeDecodeError is a ValueError, so bad bytes skip the line
            try:
                outcomes.append(IterationOutcome.from_dict(json.loads(line.decode("utf-8"))))
            except (ValueError, KeyError, TypeError) as exc:
                logger.warning(f"Skipping malformed progress entry at {self.path}:{lineno}: {exc}")
        return outcomes

    def since(self, iteration: int) -> list[IterationOutcome]:
        """Outcomes with an iteration number strictly greater than ``iteration``."""
        return [o for o in self.read() if o.iteration > iteration]

    def last_iteration(self) -> int:
        outcomes = self.read()
        return outcomes[-1].iteration if outcomes else 0

    def last_for_story(self, story_id: str) -> Optional[IterationOutcome]:
        for outcome in reversed(self.read()):
            if outcome.story_id == story_id:
                return outcome
        return None

    def count_for_story(self, story_id: str, verdict: Optional[Verdict] = None) -> int:
        return sum(
            1 for o in self.read()
            if o.story_id == story_id and (verdict is None or o.verdict == verdict)
        )

    def summarize(self, limit: int = 5, max_chars: int = 4000) -> str:
        """Bounded summary of the most recent outcomes, newest last."""
        recent = self.read()[-limit:] if limit > 0 else []
        if not recent:
            return "No previous iterations."

        lines = [o.summary_line() for o in recent]
        text = "\n".join(lines)
        # Drop oldest lines first so the newest context survives
        while len(text) > max_chars and len(lines) > 1:
            lines.pop(0)
            text = "\n".join(lines)
        if len(text) > max_chars:
            text = text[: max(0, max_chars - 3)] + "..."
        return text
