"""Agent invocation: one isolated process per iteration.

Each call spawns a fresh agent process, feeds it the prompt on stdin and
waits for it to exit or time out. Nothing is carried over between calls.
The agent's text output is kept for the progress log but never parsed for
a verdict; only the workspace state and the quality gates decide whether
a story is done.
"""

from __future__ import annotations

import logging
import os
import shutil
import signal
import subprocess
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional

import git
from git.exc import GitCommandError, InvalidGitRepositoryError, NoSuchPathError

from .errors import InvocationError

logger = logging.getLogger(__name__)

# Seconds between SIGTERM and SIGKILL
TERMINATE_GRACE = 5.0

AGENT_PRESETS: dict[str, list[str]] = {
    "claude": ["claude", "--print", "--dangerously-skip-permissions"],
    "amp": ["amp", "--dangerously-allow-all", "--execute"],
}


class InvocationStatus(str, Enum):
    """How an agent process ended."""

    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"
    SPAWN_ERROR = "spawn-error"
    KILLED = "killed"


@dataclass
class InvocationResult:
    """Outcome of a single agent run."""

    status: InvocationStatus
    exit_status: Optional[int] = None
    output: str = ""
    elapsed: float = 0.0
    changed_files: list[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status == InvocationStatus.COMPLETED

    def raise_for_status(self) -> None:
        """Raise InvocationError unless the agent completed."""
        if not self.success:
            raise InvocationError(
                self.error or f"Agent {self.status.value}",
                status=self.status.value,
                exit_status=self.exit_status,
            )


def detect_agent() -> Optional[str]:
    """Name of the first agent preset whose executable is on PATH."""
    for name, command in AGENT_PRESETS.items():
        if shutil.which(command[0]):
            return name
    return None


def build_agent_command(
    name: str,
    command: Optional[list[str]] = None,
    model: Optional[str] = None,
) -> list[str]:
    """Resolve the argv used to launch the agent.

    An explicit ``command`` wins over the preset named by ``name``.

    Raises:
        ValueError: ``name`` is not a known preset and no command was given.
    """
    if command:
        return list(command)
    if name not in AGENT_PRESETS:
        raise ValueError(f"Unknown agent '{name}'. Known agents: {', '.join(AGENT_PRESETS)}")
    argv = list(AGENT_PRESETS[name])
    if model and name == "claude":
        argv += ["--model", model]
    return argv


def changed_files(workspace: Path) -> list[str]:
    """Files modified or untracked in the workspace's git repository.

    Returns an empty list when the workspace is not a git repository.
    """
    try:
        repo = git.Repo(workspace, search_parent_directories=True)
    except (InvalidGitRepositoryError, NoSuchPathError):
        return []
    try:
        files = {item.a_path for item in repo.index.diff(None)}
        if repo.head.is_valid():
            files.update(item.a_path for item in repo.index.diff("HEAD"))
        files.update(repo.untracked_files)
    except (GitCommandError, ValueError) as exc:
        logger.warning(f"Failed to read git status in {workspace}: {exc}")
        return []
    return sorted(files)


def _tail(text: str, limit: int) -> str:
    if limit <= 0 or len(text) <= limit:
        return text
    return "... (truncated)\n" + text[-limit:]


class AgentInvoker:
    """Runs the external coding agent once per call."""

    def __init__(
        self,
        command: list[str],
        max_output_chars: int = 20000,
        env: Optional[dict[str, str]] = None,
    ):
        """Initialize the invoker.

        Args:
            command: argv used to start the agent. The prompt goes to stdin.
            max_output_chars: Tail of combined output kept per run.
            env: Extra environment variables for the agent process.
        """
        self.command = list(command)
        self.max_output_chars = max_output_chars
        self.env = env or {}
        self._lock = threading.Lock()
        self._process: Optional[subprocess.Popen] = None
        self._killed = False

    def check_installed(self) -> bool:
        """Check if the agent executable is available."""
        return shutil.which(self.command[0]) is not None

    def invoke(self, prompt: str, working_directory: Path, timeout: float) -> InvocationResult:
        """Run the agent once.

        Args:
            prompt: Full prompt, written to the agent's stdin.
            working_directory: Workspace the agent operates on.
            timeout: Seconds before the agent is terminated.

        Returns:
            InvocationResult. Never raises for agent failures; output that is
            not valid UTF-8 is decoded with replacement characters.
        """
        start = time.monotonic()
        logger.info(f"Invoking agent: {' '.join(self.command)}")
        logger.debug(f"Prompt: {prompt[:200]}...")

        try:
            proc = subprocess.Popen(
                self.command,
                cwd=working_directory,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                encoding="utf-8",
                errors="replace",
                env={**os.environ, **self.env},
                start_new_session=True,
            )
        except (FileNotFoundError, PermissionError, OSError) as exc:
            logger.error(f"Failed to start agent: {exc}")
            return InvocationResult(
                status=InvocationStatus.SPAWN_ERROR,
                elapsed=time.monotonic() - start,
                error=f"Failed to start agent {self.command[0]}: {exc}",
            )

        with self._lock:
            self._process = proc
            self._killed = False

        try:
            try:
                output, _ = proc.communicate(input=prompt, timeout=timeout)
                status = InvocationStatus.COMPLETED if proc.returncode == 0 else InvocationStatus.FAILED
                error = None if proc.returncode == 0 else f"Agent exited with code {proc.returncode}"
            except subprocess.TimeoutExpired:
                logger.error(f"Agent timed out after {timeout} seconds")
                self._stop(proc)
                output, _ = proc.communicate()
                status = InvocationStatus.TIMEOUT
                error = f"Agent timed out after {timeout} seconds"
            except Exception as exc:
                logger.error(f"Unexpected error running agent: {exc}")
                self._stop(proc)
                output = ""
                status = InvocationStatus.FAILED
                error = f"Unexpected error running agent: {exc}"
        finally:
            with self._lock:
                killed = self._killed
                self._process = None

        if killed and status != InvocationStatus.COMPLETED:
            status = InvocationStatus.KILLED
            error = "Agent was terminated by a forced stop"

        elapsed = time.monotonic() - start
        result = InvocationResult(
            status=status,
            exit_status=proc.returncode,
            output=_tail(output or "", self.max_output_chars),
            elapsed=elapsed,
            changed_files=changed_files(working_directory),
            error=error,
        )
        logger.info(
            f"Agent finished: {status.value} (exit {proc.returncode}) in {elapsed:.1f}s, "
            f"{len(result.changed_files)} files changed"
        )
        return result

    def terminate(self) -> bool:
        """Kill the in-flight agent process, if any. Returns True if one was running."""
        with self._lock:
            proc = self._process
            if proc is None:
                return False
            self._killed = True
        logger.warning("Terminating in-flight agent process")
        self._stop(proc)
        return True

    def _stop(self, proc: subprocess.Popen) -> None:
        """SIGTERM the agent's process group, then SIGKILL after a grace period."""
        try:
            os.killpg(proc.pid, signal.SIGTERM)
        except (ProcessLookupError, PermissionError, AttributeError):
            proc.terminate()
        try:
            proc.wait(timeout=TERMINATE_GRACE)
        except subprocess.TimeoutExpired:
            try:
                os.killpg(proc.pid, signal.SIGKILL)
            except (ProcessLookupError, PermissionError, AttributeError):
                proc.kill()


class MockAgentInvoker(AgentInvoker):
    """Mock invoker for testing and ``--mock`` runs.

    Replays ``script`` one entry per call (the last entry repeats). Each
    entry is an InvocationStatus; ``on_invoke`` may touch the workspace to
    simulate agent edits.
    """

    def __init__(self, script: Optional[list[InvocationStatus]] = None, on_invoke=None):
        super().__init__(command=["mock-agent"])
        self.script = list(script or [InvocationStatus.COMPLETED])
        self.on_invoke = on_invoke
        self.call_count = 0
        self.prompts: list[str] = []

    def check_installed(self) -> bool:
        """Always return True for mock."""
        return True

    def invoke(self, prompt: str, working_directory: Path, timeout: float) -> InvocationResult:
        index = min(self.call_count, len(self.script) - 1)
        status = self.script[index]
        self.call_count += 1
        self.prompts.append(prompt)

        if self.on_invoke is not None:
            self.on_invoke(self.call_count, Path(working_directory))

        exit_status = {
            InvocationStatus.COMPLETED: 0,
            InvocationStatus.FAILED: 1,
            InvocationStatus.TIMEOUT: -signal.SIGTERM,
            InvocationStatus.KILLED: -signal.SIGKILL,
        }.get(status)
        return InvocationResult(
            status=status,
            exit_status=exit_status,
            output=f"Mock agent run {self.call_count}: {status.value}",
            elapsed=0.0,
            error=None if status == InvocationStatus.COMPLETED else f"Mock agent {status.value}",
        )

    def terminate(self) -> bool:
        return False
