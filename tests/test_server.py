"""Tests for the control server."""

from __future__ import annotations

import json
import sys
import threading
from pathlib import Path
from unittest.mock import patch

import pytest

from ralphloop.agent_runner import AgentInvoker, InvocationStatus, MockAgentInvoker
from ralphloop.config import Config
from ralphloop.gates import GateEngine
from ralphloop.ledger import Ledger, Story, load_ledger, save_ledger
from ralphloop.orchestrator import Orchestrator
from ralphloop.server import LoopController, create_server


def _factory(invoker: MockAgentInvoker):
    def build(config: Config, lock: threading.RLock) -> Orchestrator:
        return Orchestrator.from_config(config, invoker=invoker, lock=lock)
    return build


class TestLoopController:
    """Tests for LoopController."""

    def test_status_before_start(self, config: Config) -> None:
        controller = LoopController(config)

        status = controller.status()

        assert status["ok"] is True
        assert status["status"]["state"] == "idle"
        assert status["status"]["running"] is False
        assert status["status"]["total_stories"] == 2

    def test_start_runs_to_completion(self, config: Config) -> None:
        controller = LoopController(config, _factory(MockAgentInvoker()))

        response = controller.start()
        assert response["ok"] is True
        assert response["started"] is True
        assert controller.wait(10)

        status = controller.status()["status"]
        assert status["state"] == "completed"
        assert status["stories_passed"] == 2
        assert status["result"]["halt_reason"] == "completed"
        assert controller.last_result.iterations == 2

    def test_start_while_running_is_noop(self, config: Config) -> None:
        entered = threading.Event()
        release = threading.Event()

        def block(n: int, ws: Path) -> None:
            entered.set()
            release.wait(10)

        invoker = MockAgentInvoker(on_invoke=block)
        controller = LoopController(config, _factory(invoker))
        controller.start()
        try:
            assert entered.wait(10)
            second = controller.start()
            assert second["ok"] is True
            assert second["started"] is False
            assert second["status"]["state"] == "invoking"
            assert controller.run_quality_gates()["error"]["kind"] == "busy"
            assert controller.load_ledger("prd.json")["error"]["kind"] == "busy"
        finally:
            release.set()
            controller.wait(10)

        assert invoker.call_count == 2

    def test_stop_cancels_run(self, config: Config) -> None:
        entered = threading.Event()
        release = threading.Event()

        def block(n: int, ws: Path) -> None:
            entered.set()
            release.wait(10)

        controller = LoopController(config, _factory(MockAgentInvoker(on_invoke=block)))
        before = config.ledger_path.read_bytes()
        controller.start()
        assert entered.wait(10)

        response = controller.stop()
        release.set()
        controller.wait(10)

        assert response["stopping"] is True
        assert controller.status()["status"]["halt_reason"] == "cancelled"
        assert config.ledger_path.read_bytes() == before

    def test_crashed_run_reports_error_halt(self, config: Config) -> None:
        class CrashingInvoker(MockAgentInvoker):
            def invoke(self, prompt: str, working_directory: Path, timeout: float):
                raise RuntimeError("runner bug")

        controller = LoopController(config, _factory(CrashingInvoker()))
        controller.start()
        assert controller.wait(10)

        status = controller.status()["status"]
        assert status["running"] is False
        assert status["state"] == "halted"
        assert status["halt_reason"] == "error"
        assert "runner bug" in status["error"]
        assert status["checkpoint"]["pause_reason"] == "error"
        assert status["checkpoint"]["story_id"] == "US-001"

    def test_agent_output_not_utf8(self, config: Config) -> None:
        invoker = AgentInvoker([sys.executable, "-c", "import sys; sys.stdout.buffer.write(b'caf\\xe9 \\xff')"])
        controller = LoopController(config, _factory(invoker))

        controller.start()
        assert controller.wait(30)

        status = controller.status()["status"]
        assert status["state"] == "completed"
        assert status["checkpoint"] is None

    def test_start_waits_for_quality_gates(self, config: Config) -> None:
        """The agent never starts while the gates are reading the workspace."""
        entered = threading.Event()
        release = threading.Event()
        real_evaluate = GateEngine.evaluate
        gate_results: list[dict] = []
        start_results: list[dict] = []

        def slow_evaluate(engine: GateEngine, profile, workspace):
            entered.set()
            release.wait(10)
            return real_evaluate(engine, profile, workspace)

        invoker = MockAgentInvoker()
        controller = LoopController(config, _factory(invoker))
        with patch.object(GateEngine, "evaluate", autospec=True, side_effect=slow_evaluate):
            gates = threading.Thread(target=lambda: gate_results.append(controller.run_quality_gates()))
            gates.start()
            assert entered.wait(10)

            starter = threading.Thread(target=lambda: start_results.append(controller.start()))
            starter.start()
            starter.join(0.5)
            assert starter.is_alive()
            assert invoker.call_count == 0

            release.set()
            gates.join(10)
            starter.join(10)
            assert controller.wait(10)

        assert gate_results[0]["passed"] is True
        assert start_results[0]["started"] is True
        assert invoker.call_count == 2

    def test_stop_when_idle(self, config: Config) -> None:
        assert LoopController(config).stop()["stopping"] is False

    def test_start_with_bad_config(self, config: Config) -> None:
        config.profile = "missing-profile"
        controller = LoopController(config)

        response = controller.start()

        assert response["ok"] is False
        assert response["error"]["kind"] == "config"
        assert not controller.running

    def test_start_rejects_zero_budget(self, config: Config) -> None:
        response = LoopController(config).start(max_iterations=0)

        assert response["error"]["kind"] == "config"

    def test_list_stories(self, config: Config) -> None:
        response = LoopController(config).list_stories()

        assert [s["id"] for s in response["stories"]] == ["US-001", "US-002"]
        assert response["stories"][0]["blocked"] is False

    def test_list_stories_missing_ledger(self, tmp_path: Path) -> None:
        response = LoopController(Config(project_dir=tmp_path)).list_stories()

        assert response["ok"] is False
        assert response["error"]["kind"] == "config"

    def test_get_progress_since(self, config: Config) -> None:
        controller = LoopController(config, _factory(MockAgentInvoker()))
        controller.start()
        controller.wait(10)

        assert [e["iteration"] for e in controller.get_progress()["entries"]] == [1, 2]
        assert [e["iteration"] for e in controller.get_progress(1)["entries"]] == [2]

    def test_reset_story(self, config: Config) -> None:
        config.loop.max_retries = 0
        controller = LoopController(config, _factory(MockAgentInvoker([InvocationStatus.FAILED])))
        controller.start()
        controller.wait(10)
        assert load_ledger(config.ledger_path).get("US-001").blocked

        response = controller.reset_story("US-001")

        assert response["ok"] is True
        assert response["story"]["blocked"] is False
        assert not load_ledger(config.ledger_path).get("US-001").blocked

    def test_reset_unknown_story(self, config: Config) -> None:
        response = LoopController(config).reset_story("US-404")

        assert response["ok"] is False
        assert response["error"]["kind"] == "not-found"

    def test_load_ledger(self, config: Config, tmp_path: Path) -> None:
        other = tmp_path / "other.json"
        save_ledger(Ledger(stories=[Story(id="X-1", title="x")]), other)
        controller = LoopController(config)

        response = controller.load_ledger(str(other))

        assert response == {"ok": True, "ledger": str(other), "stories": 1}
        assert [s["id"] for s in controller.list_stories()["stories"]] == ["X-1"]

    def test_load_invalid_ledger(self, config: Config, tmp_path: Path) -> None:
        bad = tmp_path / "bad.json"
        bad.write_text("nope")
        controller = LoopController(config)

        response = controller.load_ledger(str(bad))

        assert response["ok"] is False
        assert response["error"]["kind"] == "config"
        assert controller.config.ledger_path == tmp_path / "prd.json"

    def test_run_quality_gates(self, config: Config) -> None:
        config.quality = {"profiles": {"check": {"gates": [{"name": "ok", "command": "true"}]}}}

        response = LoopController(config).run_quality_gates("check")

        assert response["ok"] is True
        assert response["passed"] is True
        assert response["results"][0]["status"] == "pass"

    def test_run_quality_gates_unknown_profile(self, config: Config) -> None:
        response = LoopController(config).run_quality_gates("nope")

        assert response["error"]["kind"] == "config"


class TestCreateServer:
    """Tests for the MCP wiring."""

    def test_registers_tools_and_resources(self, config: Config) -> None:
        server = create_server(LoopController(config))

        tools = {tool.name for tool in server._tool_manager.list_tools()}
        assert {
            "start", "stop", "status", "list_stories", "get_progress",
            "load_ledger", "reset_story", "run_quality_gates",
        } <= tools

        resources = {str(r.uri) for r in server._resource_manager.list_resources()}
        assert {"ralph://status", "ralph://stories", "ralph://progress"} <= resources

    @pytest.mark.parametrize("uri", ["ralph://status", "ralph://stories", "ralph://progress"])
    def test_resources_return_json(self, config: Config, uri: str) -> None:
        server = create_server(LoopController(config))

        resource = server._resource_manager._resources[uri]

        assert json.loads(resource.fn())["ok"] is True
