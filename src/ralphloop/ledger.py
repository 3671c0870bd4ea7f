"""Story ledger: the persisted backlog the loop works through.

The ledger is a JSON document holding an ordered list of user stories.
It carries no scheduling logic; it only loads, validates and saves.
Saves go through a temp file and ``os.replace`` so a crash mid-write
leaves the previous version intact.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from .errors import ConfigError, LedgerIOError

logger = logging.getLogger(__name__)

LEDGER_VERSION = 1
BLOCKED_MARKER = "[BLOCKED]"


def _is_marker_line(line: str) -> bool:
    return line.lstrip().startswith(BLOCKED_MARKER)


def notes_blocked(notes: str) -> bool:
    """True if any line of ``notes`` starts with the blocked marker."""
    return any(_is_marker_line(line) for line in notes.splitlines())


@dataclass
class Story:
    """A single user story with its acceptance criteria."""

    id: str
    title: str
    description: str = ""
    acceptance_criteria: List[str] = field(default_factory=list)
    priority: int = 100
    passes: bool = False
    notes: str = ""

    @property
    def blocked(self) -> bool:
        """Blocked stories are skipped by selection until reset."""
        return notes_blocked(self.notes)

    def mark_blocked(self, reason: str) -> None:
        """Annotate the story as blocked. ``passes`` is left alone."""
        self.add_note(f"{BLOCKED_MARKER} {reason}")

    def clear_blocked(self) -> bool:
        """Drop every blocked annotation. Returns True if one was removed."""
        if not self.blocked:
            return False
        kept = [line for line in self.notes.splitlines() if not _is_marker_line(line)]
        self.notes = "\n".join(kept).strip()
        return True

    def add_note(self, note: str) -> None:
        self.notes = f"{self.notes}\n{note}".strip() if self.notes else note

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "acceptanceCriteria": list(self.acceptance_criteria),
            "priority": self.priority,
            "passes": self.passes,
            "notes": self.notes,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Story:
        """Build a Story from its ledger form, validating field types."""
        if not isinstance(data, dict):
            raise ConfigError(f"Story entry must be an object, got {type(data).__name__}")

        story_id = data.get("id")
        if not isinstance(story_id, str) or not story_id.strip():
            raise ConfigError(f"Story has missing or empty id: {data!r}")
        title = data.get("title")
        if not isinstance(title, str):
            raise ConfigError(f"Story {story_id}: 'title' must be a string")

        criteria = data.get("acceptanceCriteria", [])
        if not isinstance(criteria, list) or not all(isinstance(c, str) for c in criteria):
            raise ConfigError(f"Story {story_id}: 'acceptanceCriteria' must be a list of strings")

        priority = data.get("priority", 100)
        # bool is an int subclass; reject it explicitly
        if isinstance(priority, bool) or not isinstance(priority, int):
            raise ConfigError(f"Story {story_id}: 'priority' must be an integer")

        passes = data.get("passes", False)
        if not isinstance(passes, bool):
            raise ConfigError(f"Story {story_id}: 'passes' must be a boolean")

        description = data.get("description", "")
        notes = data.get("notes", "")
        if not isinstance(description, str) or not isinstance(notes, str):
            raise ConfigError(f"Story {story_id}: 'description' and 'notes' must be strings")

        return cls(
            id=story_id,
            title=title,
            description=description,
            acceptance_criteria=list(criteria),
            priority=priority,
            passes=passes,
            notes=notes,
        )


@dataclass
class Ledger:
    """Ordered collection of stories plus a schema version."""

    stories: List[Story] = field(default_factory=list)
    project: str = ""
    version: int = LEDGER_VERSION

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "project": self.project,
            "userStories": [s.to_dict() for s in self.stories],
        }

    @classmethod
    def from_dict(cls, data: Any) -> Ledger:
        if not isinstance(data, dict):
            raise ConfigError("Ledger document must be a JSON object")

        version = data.get("version", LEDGER_VERSION)
        if version != LEDGER_VERSION:
            raise ConfigError(f"Unsupported ledger version: {version!r}")

        raw_stories = data.get("userStories")
        if not isinstance(raw_stories, list):
            raise ConfigError("Ledger must contain a 'userStories' list")

        ledger = cls(
            stories=[Story.from_dict(s) for s in raw_stories],
            project=str(data.get("project", "")),
            version=version,
        )
        ledger.validate()
        return ledger

    def validate(self) -> None:
        """Raise ConfigError if story ids are not unique."""
        seen: set[str] = set()
        for story in self.stories:
            if story.id in seen:
                raise ConfigError(f"Duplicate story id in ledger: {story.id}")
            seen.add(story.id)

    def get(self, story_id: str) -> Optional[Story]:
        for story in self.stories:
            if story.id == story_id:
                return story
        return None

    def add(self, story: Story) -> bool:
        """Append a story unless its id is already present."""
        if self.get(story.id) is not None:
            return False
        self.stories.append(story)
        return True

    def failing(self) -> List[Story]:
        return [s for s in self.stories if not s.passes]

    def passing_count(self) -> int:
        return sum(1 for s in self.stories if s.passes)

    def all_pass(self) -> bool:
        return all(s.passes for s in self.stories)

    def next_story(self) -> Optional[Story]:
        """Most urgent failing, unblocked story.

        Lowest priority number wins; ties go to the lowest id.
        """
        candidates = [s for s in self.stories if not s.passes and not s.blocked]
        if not candidates:
            return None
        return min(candidates, key=lambda s: (s.priority, s.id))


def load_ledger(path: Path) -> Ledger:
    """Read and validate the ledger at ``path``.

    Raises:
        ConfigError: The file is missing, is not UTF-8 JSON, or fails validation.
    """
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Ledger file not found: {path}")
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Ledger {path} is not valid JSON: {exc}") from exc
    except UnicodeDecodeError as exc:
        raise ConfigError(f"Ledger {path} is not valid UTF-8: {exc}") from exc
    except OSError as exc:
        raise ConfigError(f"Failed to read ledger {path}: {exc}") from exc

    ledger = Ledger.from_dict(data)
    logger.debug(f"Loaded {len(ledger.stories)} stories from {path}")
    return ledger


def save_ledger(ledger: Ledger, path: Path) -> None:
    """Atomically rewrite the ledger file.

    Raises:
        LedgerIOError: The file could not be written.
    """
    path = Path(path)
    payload = json.dumps(ledger.to_dict(), indent=2) + "\n"
    tmp_name = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(payload)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
        tmp_name = None
    except OSError as exc:
        raise LedgerIOError(f"Failed to write ledger {path}: {exc}") from exc
    finally:
        if tmp_name and os.path.exists(tmp_name):
            os.unlink(tmp_name)


def scaffold_ledger(path: Path, project: str = "") -> Ledger:
    """Write an empty ledger with one example story.

    Raises:
        ConfigError: A ledger already exists at ``path``.
    """
    path = Path(path)
    if path.exists():
        raise ConfigError(f"Ledger already exists: {path}")
    ledger = Ledger(
        project=project or path.parent.resolve().name,
        stories=[
            Story(
                id="US-001",
                title="Example story",
                description="Describe the change the agent should make.",
                acceptance_criteria=["Tests pass"],
                priority=1,
            )
        ],
    )
    save_ledger(ledger, path)
    logger.info(f"Created ledger: {path}")
    return ledger
