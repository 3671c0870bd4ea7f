"""Quality gates: verification checks run against the workspace.

A quality profile names a set of gates plus an aggregation policy. The
engine runs every enabled gate (never short-circuiting, so the next prompt
gets the full diagnostic set), then folds the results into one verdict.

A gate that cannot run at all (missing tool, timeout, unparseable score)
reports ``error`` rather than ``fail`` so that "the code is wrong" and
"the environment is broken" stay distinguishable.
"""

from __future__ import annotations

import logging
import re
import shlex
import subprocess
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from .errors import ConfigError, GateExecutionError

logger = logging.getLogger(__name__)

# Shell exit statuses for "found but not executable" and "not found"
SHELL_MISSING_COMMAND = (126, 127)

MAX_DIAGNOSTIC_CHARS = 4000

# Tried in order when a min-score gate has no score_pattern of its own
DEFAULT_SCORE_PATTERNS = (
    r"(\d+(?:\.\d+)?)\s*%\s*coverage",
    r"TOTAL\s+.*?(\d+(?:\.\d+)?)\s*%",
    r"(\d+(?:\.\d+)?)\s*%\s*$",
)


class GateStatus(str, Enum):
    """Outcome of a single gate."""

    PASS = "pass"
    FAIL = "fail"
    ERROR = "error"
    SKIPPED = "skipped"


class AggregationPolicy(str, Enum):
    """How gate results fold into one verdict."""

    ALL_MUST_PASS = "all-must-pass"
    WEIGHTED_THRESHOLD = "weighted-threshold"


@dataclass
class GateDefinition:
    """One configured check."""

    name: str
    command: str = ""
    criterion: str = "exit-code"  # exit-code | min-score
    min_score: float = 0.0
    score_pattern: Optional[str] = None
    weight: float = 1.0
    timeout: int = 600
    enabled: bool = True
    shell: bool = False

    @classmethod
    def from_dict(cls, data: dict) -> GateDefinition:
        if not isinstance(data, dict) or not data.get("name"):
            raise ConfigError(f"Gate definition needs a name: {data!r}")
        gate = cls(
            name=str(data["name"]),
            command=str(data.get("command", "")),
            criterion=data.get("criterion", "exit-code"),
            min_score=float(data.get("min_score", 0.0)),
            score_pattern=data.get("score_pattern"),
            weight=float(data.get("weight", 1.0)),
            timeout=int(data.get("timeout", 600)),
            enabled=bool(data.get("enabled", True)),
            shell=bool(data.get("shell", False)),
        )
        gate.check()
        return gate

    def check(self) -> None:
        """Raise ConfigError for definitions that can never produce a verdict."""
        if self.criterion not in ("exit-code", "min-score"):
            raise ConfigError(f"Gate {self.name}: unknown criterion {self.criterion!r}")
        if self.enabled and not self.command.strip():
            raise ConfigError(f"Gate {self.name}: command is required")
        if self.weight <= 0:
            raise ConfigError(f"Gate {self.name}: weight must be positive")
        if self.score_pattern:
            try:
                re.compile(self.score_pattern)
            except re.error as exc:
                raise ConfigError(f"Gate {self.name}: invalid score_pattern: {exc}") from exc


@dataclass
class QualityProfile:
    """A named set of gates plus an aggregation policy."""

    name: str
    gates: list[GateDefinition] = field(default_factory=list)
    policy: AggregationPolicy = AggregationPolicy.ALL_MUST_PASS
    threshold: float = 1.0
    description: str = ""

    @classmethod
    def from_dict(cls, name: str, data: dict) -> QualityProfile:
        if not isinstance(data, dict):
            raise ConfigError(f"Profile {name} must be a mapping")
        try:
            policy = AggregationPolicy(data.get("policy", AggregationPolicy.ALL_MUST_PASS.value))
        except ValueError as exc:
            raise ConfigError(f"Profile {name}: unknown policy {data.get('policy')!r}") from exc
        threshold = float(data.get("threshold", 1.0))
        if not 0.0 <= threshold <= 1.0:
            raise ConfigError(f"Profile {name}: threshold must be between 0 and 1")

        gates = [GateDefinition.from_dict(g) for g in data.get("gates", []) or []]
        names = [g.name for g in gates]
        if len(names) != len(set(names)):
            raise ConfigError(f"Profile {name}: gate names must be unique")

        return cls(
            name=name,
            gates=gates,
            policy=policy,
            threshold=threshold,
            description=data.get("description", ""),
        )


@dataclass
class GateResult:
    """Result of running one gate."""

    name: str
    status: GateStatus
    score: Optional[float] = None
    diagnostics: str = ""
    duration: float = 0.0

    @property
    def passed(self) -> bool:
        return self.status in (GateStatus.PASS, GateStatus.SKIPPED)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "score": self.score,
            "diagnostics": self.diagnostics,
            "duration": round(self.duration, 3),
        }

    @classmethod
    def from_dict(cls, data: dict) -> GateResult:
        return cls(
            name=data["name"],
            status=GateStatus(data["status"]),
            score=data.get("score"),
            diagnostics=data.get("diagnostics", ""),
            duration=float(data.get("duration", 0.0)),
        )


@dataclass
class AggregateVerdict:
    """Folded result of a profile evaluation."""

    passed: bool
    policy: AggregationPolicy
    results: list[GateResult] = field(default_factory=list)
    score: float = 1.0

    @property
    def summary(self) -> str:
        counted = [r for r in self.results if r.status != GateStatus.SKIPPED]
        bad = [f"{r.name} ({r.status.value})" for r in counted if not r.passed]
        if not bad:
            return f"All {len(counted)} gates passed"
        ok = len(counted) - len(bad)
        return f"{ok}/{len(counted)} gates passed. Failed: {', '.join(bad)}"

    def failure_diagnostics(self) -> str:
        """Diagnostics of every non-passing gate, for the next prompt."""
        parts = []
        for result in self.results:
            if result.passed:
                continue
            parts.append(f"### {result.name} [{result.status.value}]\n{result.diagnostics}".rstrip())
        return "\n\n".join(parts)


def aggregate(
    results: list[GateResult],
    policy: AggregationPolicy,
    threshold: float = 1.0,
    weights: Optional[dict[str, float]] = None,
) -> AggregateVerdict:
    """Fold gate results into a verdict.

    Skipped gates count for neither side. With nothing left to count the
    verdict is a vacuous pass.
    """
    weights = weights or {}
    counted = [r for r in results if r.status != GateStatus.SKIPPED]
    if not counted:
        return AggregateVerdict(passed=True, policy=policy, results=results, score=1.0)

    total = sum(weights.get(r.name, 1.0) for r in counted)
    earned = sum(weights.get(r.name, 1.0) for r in counted if r.status == GateStatus.PASS)
    score = earned / total if total else 1.0

    if policy == AggregationPolicy.ALL_MUST_PASS:
        passed = all(r.status == GateStatus.PASS for r in counted)
    else:
        passed = score >= threshold

    return AggregateVerdict(passed=passed, policy=policy, results=results, score=score)


def parse_score(output: str, pattern: Optional[str] = None) -> Optional[float]:
    """Pull a numeric score out of gate output."""
    patterns = (pattern,) if pattern else DEFAULT_SCORE_PATTERNS
    for candidate in patterns:
        match = re.search(candidate, output, re.MULTILINE)
        if match:
            try:
                return float(match.group(1))
            except (IndexError, ValueError):
                continue
    return None


def _tail(text: str, limit: int = MAX_DIAGNOSTIC_CHARS) -> str:
    if len(text) <= limit:
        return text
    return "... (truncated)\n" + text[-limit:]


class GateEngine:
    """Runs quality profiles against a workspace."""

    def __init__(self, max_workers: Optional[int] = None):
        """Initialize the gate engine.

        Args:
            max_workers: Cap on concurrently running gates. Defaults to one
                worker per gate.
        """
        self.max_workers = max_workers

    def evaluate(self, profile: QualityProfile, workspace: Path) -> AggregateVerdict:
        """Run every gate of ``profile`` in ``workspace`` and aggregate."""
        workspace = Path(workspace)
        logger.info(f"Running quality profile '{profile.name}' ({len(profile.gates)} gates)")

        if not profile.gates:
            return aggregate([], profile.policy, profile.threshold)

        workers = self.max_workers or len(profile.gates)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="gate") as pool:
            futures = [pool.submit(self.run_gate, gate, workspace) for gate in profile.gates]
            results = [future.result() for future in futures]

        weights = {gate.name: gate.weight for gate in profile.gates}
        verdict = aggregate(results, profile.policy, profile.threshold, weights)
        log = logger.info if verdict.passed else logger.warning
        log(f"Quality verdict: {'PASS' if verdict.passed else 'FAIL'} - {verdict.summary}")
        return verdict

    def run_gate(self, gate: GateDefinition, workspace: Path) -> GateResult:
        """Run a single gate. Never raises; errors become ``error`` results."""
        if not gate.enabled:
            return GateResult(name=gate.name, status=GateStatus.SKIPPED, diagnostics="Gate disabled in profile")

        start = time.monotonic()
        try:
            result = self._execute(gate, workspace)
        except GateExecutionError as exc:
            logger.warning(f"Gate {gate.name} could not run: {exc}")
            result = GateResult(name=gate.name, status=GateStatus.ERROR, diagnostics=str(exc))
        result.duration = time.monotonic() - start
        return result

    def _execute(self, gate: GateDefinition, workspace: Path) -> GateResult:
        args: Any = gate.command if gate.shell else shlex.split(gate.command)
        logger.debug(f"Gate {gate.name}: {gate.command}")
        try:
            proc = subprocess.run(
                args,
                cwd=workspace,
                shell=gate.shell,
                capture_output=True,
                text=True,
                timeout=gate.timeout,
            )
        except FileNotFoundError as exc:
            raise GateExecutionError(f"Command not found: {gate.command}") from exc
        except subprocess.TimeoutExpired as exc:
            raise GateExecutionError(f"Timed out after {gate.timeout} seconds: {gate.command}") from exc
        except (OSError, ValueError) as exc:
            raise GateExecutionError(f"Failed to run {gate.command}: {exc}") from exc

        output = "\n".join(part for part in (proc.stdout, proc.stderr) if part)
        if gate.shell and proc.returncode in SHELL_MISSING_COMMAND:
            raise GateExecutionError(f"Shell could not run {gate.command} (exit {proc.returncode}): {_tail(output, 500)}")

        if gate.criterion == "min-score":
            score = parse_score(output, gate.score_pattern)
            if score is None:
                raise GateExecutionError(f"No score found in output of {gate.command}")
            status = GateStatus.PASS if score >= gate.min_score else GateStatus.FAIL
            message = f"Score {score:.2f} {'meets' if status == GateStatus.PASS else 'is below'} minimum {gate.min_score:.2f}"
            return GateResult(name=gate.name, status=status, score=score, diagnostics=f"{message}\n{_tail(output)}".strip())

        status = GateStatus.PASS if proc.returncode == 0 else GateStatus.FAIL
        return GateResult(
            name=gate.name,
            status=status,
            diagnostics=f"exit {proc.returncode}\n{_tail(output)}".strip(),
        )


def builtin_profiles(test_command: str = "pytest -q") -> dict[str, QualityProfile]:
    """Profiles available without any ralph.yaml."""
    return {
        "minimal": QualityProfile(
            name="minimal",
            description="No gates; agent success alone completes a story",
        ),
        "standard": QualityProfile(
            name="standard",
            description="Test suite must pass",
            gates=[GateDefinition(name="tests", command=test_command)],
        ),
        "comprehensive": QualityProfile(
            name="comprehensive",
            description="Tests, lint and format checks, weighted",
            policy=AggregationPolicy.WEIGHTED_THRESHOLD,
            threshold=0.8,
            gates=[
                GateDefinition(name="tests", command=test_command, weight=3.0),
                GateDefinition(name="lint", command="ruff check .", weight=1.0),
                GateDefinition(name="format", command="ruff format --check .", weight=1.0),
            ],
        ),
    }


def load_profiles(quality: dict) -> dict[str, QualityProfile]:
    """Merge built-in profiles with the ``quality.profiles`` config section."""
    quality = quality or {}
    profiles = builtin_profiles(quality.get("test_command", "pytest -q"))
    for name, data in (quality.get("profiles") or {}).items():
        try:
            profiles[name] = QualityProfile.from_dict(name, data)
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"Profile {name}: {exc}") from exc
    return profiles


def get_profile(quality: dict, name: str) -> QualityProfile:
    """Look up a profile by name.

    Raises:
        ConfigError: No profile with that name exists.
    """
    profiles = load_profiles(quality)
    if name not in profiles:
        available = ", ".join(sorted(profiles))
        raise ConfigError(f"Quality profile '{name}' not found. Available: {available}")
    return profiles[name]
