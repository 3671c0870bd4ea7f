"""Tests for the agent invoker."""

from __future__ import annotations

import subprocess
import sys
import threading
import time
from pathlib import Path
from unittest.mock import MagicMock, patch

import git
import pytest

from ralphloop.agent_runner import (
    AGENT_PRESETS,
    AgentInvoker,
    InvocationResult,
    InvocationStatus,
    MockAgentInvoker,
    build_agent_command,
    changed_files,
    detect_agent,
)
from ralphloop.errors import InvocationError


class TestInvocationResult:
    """Tests for InvocationResult dataclass."""

    def test_success_result(self) -> None:
        result = InvocationResult(status=InvocationStatus.COMPLETED, exit_status=0, output="done")

        assert result.success is True
        assert result.error is None

    @pytest.mark.parametrize(
        "status",
        [InvocationStatus.FAILED, InvocationStatus.TIMEOUT, InvocationStatus.SPAWN_ERROR, InvocationStatus.KILLED],
    )
    def test_failure_statuses(self, status: InvocationStatus) -> None:
        assert InvocationResult(status=status).success is False

    def test_raise_for_status(self) -> None:
        InvocationResult(status=InvocationStatus.COMPLETED, exit_status=0).raise_for_status()

        with pytest.raises(InvocationError, match="timed out") as exc_info:
            InvocationResult(
                status=InvocationStatus.TIMEOUT, exit_status=-15, error="Agent timed out after 5 seconds"
            ).raise_for_status()

        assert exc_info.value.status == "timeout"
        assert exc_info.value.exit_status == -15


class TestAgentCommand:
    """Tests for agent command resolution."""

    def test_claude_preset_with_model(self) -> None:
        argv = build_agent_command("claude", model="opus")

        assert argv[: len(AGENT_PRESETS["claude"])] == AGENT_PRESETS["claude"]
        assert argv[-2:] == ["--model", "opus"]

    def test_amp_preset_ignores_model(self) -> None:
        assert build_agent_command("amp", model="opus") == AGENT_PRESETS["amp"]

    def test_explicit_command_wins(self) -> None:
        assert build_agent_command("claude", command=["my-agent", "-y"]) == ["my-agent", "-y"]

    def test_unknown_agent(self) -> None:
        with pytest.raises(ValueError, match="Unknown agent"):
            build_agent_command("cursor")

    def test_detect_agent(self) -> None:
        with patch("ralphloop.agent_runner.shutil.which", side_effect=lambda exe: exe == "amp"):
            assert detect_agent() == "amp"
        with patch("ralphloop.agent_runner.shutil.which", return_value=None):
            assert detect_agent() is None


class TestAgentInvoker:
    """Tests for AgentInvoker with real child processes."""

    def test_prompt_on_stdin(self, tmp_path: Path) -> None:
        """The prompt reaches the agent on stdin and output is captured."""
        invoker = AgentInvoker([sys.executable, "-c", "import sys; print(sys.stdin.read().upper())"])

        result = invoker.invoke("hello agent", tmp_path, timeout=30)

        assert result.status == InvocationStatus.COMPLETED
        assert result.exit_status == 0
        assert "HELLO AGENT" in result.output

    def test_nonzero_exit(self, tmp_path: Path) -> None:
        invoker = AgentInvoker([sys.executable, "-c", "import sys; sys.exit(3)"])

        result = invoker.invoke("", tmp_path, timeout=30)

        assert result.status == InvocationStatus.FAILED
        assert result.exit_status == 3

    def test_spawn_error(self, tmp_path: Path) -> None:
        invoker = AgentInvoker(["definitely-not-a-real-agent-xyz"])

        result = invoker.invoke("prompt", tmp_path, timeout=30)

        assert result.status == InvocationStatus.SPAWN_ERROR
        assert result.exit_status is None
        assert "Failed to start agent" in result.error

    def test_timeout(self, tmp_path: Path) -> None:
        invoker = AgentInvoker([sys.executable, "-c", "import time; time.sleep(30)"])

        result = invoker.invoke("", tmp_path, timeout=0.5)

        assert result.status == InvocationStatus.TIMEOUT
        assert "timed out" in result.error

    def test_output_bounded(self, tmp_path: Path) -> None:
        invoker = AgentInvoker([sys.executable, "-c", "print('x' * 5000)"], max_output_chars=100)

        result = invoker.invoke("", tmp_path, timeout=30)

        assert len(result.output) < 200
        assert result.output.startswith("... (truncated)")

    def test_terminate_kills_running_agent(self, tmp_path: Path) -> None:
        invoker = AgentInvoker([sys.executable, "-c", "import time; time.sleep(30)"])
        results: list[InvocationResult] = []
        worker = threading.Thread(target=lambda: results.append(invoker.invoke("", tmp_path, timeout=60)))
        worker.start()

        deadline = time.monotonic() + 10
        while invoker._process is None and time.monotonic() < deadline:
            time.sleep(0.05)
        assert invoker.terminate() is True
        worker.join(15)

        assert results[0].status == InvocationStatus.KILLED

    def test_terminate_when_idle(self) -> None:
        assert AgentInvoker(["agent"]).terminate() is False

    def test_check_installed(self) -> None:
        with patch("ralphloop.agent_runner.shutil.which", return_value="/usr/bin/claude"):
            assert AgentInvoker(["claude"]).check_installed() is True
        with patch("ralphloop.agent_runner.shutil.which", return_value=None):
            assert AgentInvoker(["claude"]).check_installed() is False

    def test_timeout_stops_process_group(self, tmp_path: Path) -> None:
        """Timeouts go through _stop."""
        proc = MagicMock(returncode=-15, pid=1234)
        proc.communicate.side_effect = [subprocess.TimeoutExpired(cmd="agent", timeout=1), ("partial", None)]

        invoker = AgentInvoker(["agent"])
        with patch("ralphloop.agent_runner.subprocess.Popen", return_value=proc), \
                patch.object(invoker, "_stop") as mock_stop:
            result = invoker.invoke("prompt", tmp_path, timeout=1)

        mock_stop.assert_called_once_with(proc)
        assert result.status == InvocationStatus.TIMEOUT
        assert result.output == "partial"

    def test_output_not_utf8(self, tmp_path: Path) -> None:
        invoker = AgentInvoker([sys.executable, "-c", "import sys; sys.stdout.buffer.write(b'caf\\xe9 \\xff')"])

        result = invoker.invoke("", tmp_path, timeout=30)

        assert result.status == InvocationStatus.COMPLETED
        assert result.output == "caf\ufffd \ufffd"

    def test_unexpected_error_is_a_failed_run(self, tmp_path: Path) -> None:
        proc = MagicMock(returncode=None, pid=1234)
        proc.communicate.side_effect = RuntimeError("pipe closed")

        invoker = AgentInvoker(["agent"])
        with patch("ralphloop.agent_runner.subprocess.Popen", return_value=proc), \
                patch.object(invoker, "_stop") as mock_stop:
            result = invoker.invoke("prompt", tmp_path, timeout=1)

        mock_stop.assert_called_once_with(proc)
        assert result.status == InvocationStatus.FAILED
        assert "Unexpected error running agent: pipe closed" in result.error
        assert invoker._process is None


class TestChangedFiles:
    """Tests for git-based change detection."""

    def test_not_a_repo(self, tmp_path: Path) -> None:
        assert changed_files(tmp_path) == []

    def test_modified_and_untracked(self, tmp_path: Path) -> None:
        repo = git.Repo.init(tmp_path)
        with repo.config_writer() as cfg:
            cfg.set_value("user", "name", "Test")
            cfg.set_value("user", "email", "test@example.com")
        (tmp_path / "tracked.txt").write_text("one\n")
        repo.index.add(["tracked.txt"])
        repo.index.commit("initial")

        (tmp_path / "tracked.txt").write_text("two\n")
        (tmp_path / "new.txt").write_text("new\n")

        assert changed_files(tmp_path) == ["new.txt", "tracked.txt"]


class TestMockAgentInvoker:
    """Tests for MockAgentInvoker."""

    def test_replays_script(self, tmp_path: Path) -> None:
        invoker = MockAgentInvoker([InvocationStatus.TIMEOUT, InvocationStatus.COMPLETED])

        first = invoker.invoke("p1", tmp_path, timeout=1)
        second = invoker.invoke("p2", tmp_path, timeout=1)
        third = invoker.invoke("p3", tmp_path, timeout=1)

        assert first.status == InvocationStatus.TIMEOUT
        assert second.success and third.success
        assert invoker.call_count == 3
        assert invoker.prompts == ["p1", "p2", "p3"]

    def test_on_invoke_hook(self, tmp_path: Path) -> None:
        calls = []
        invoker = MockAgentInvoker(on_invoke=lambda n, ws: calls.append((n, ws)))

        invoker.invoke("p", tmp_path, timeout=1)

        assert calls == [(1, tmp_path)]
