"""Control server: observe and drive the loop over MCP.

``LoopController`` owns at most one orchestrator run at a time, executed
on a worker thread. Every operation returns a plain dict so the MCP tools
are thin wrappers; failures come back as
``{"ok": False, "error": {"kind": ..., "message": ...}}`` instead of
raising into the protocol layer.
"""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Any, Callable, Optional

from mcp.server.fastmcp import FastMCP

from .config import Config
from .errors import RalphError
from .gates import GateEngine, get_profile
from .checkpoint import CheckpointStore
from .ledger import load_ledger, notes_blocked, save_ledger
from .orchestrator import LoopResult, LoopSnapshot, Orchestrator
from .progress import ProgressLog

logger = logging.getLogger(__name__)

OrchestratorFactory = Callable[[Config, threading.RLock], Orchestrator]


def _error(kind: str, message: str) -> dict[str, Any]:
    return {"ok": False, "error": {"kind": kind, "message": message}}


def _from_exception(exc: RalphError) -> dict[str, Any]:
    return _error(exc.kind, str(exc))


def _story_view(story: dict) -> dict[str, Any]:
    return {**story, "blocked": notes_blocked(story.get("notes") or "")}


def _default_factory(config: Config, lock: threading.RLock) -> Orchestrator:
    return Orchestrator.from_config(config, lock=lock)


class LoopController:
    """Runs one orchestrator at a time on a background thread."""

    def __init__(self, config: Config, factory: Optional[OrchestratorFactory] = None):
        """Initialize the controller.

        Args:
            config: Project configuration. ``load_ledger`` may repoint its
                ledger path between runs.
            factory: Builds the orchestrator for each run. Tests inject
                mock invokers through this.
        """
        self.config = config
        self.lock = threading.RLock()
        self._factory = factory or _default_factory
        self._guard = threading.Lock()
        self._orchestrator: Optional[Orchestrator] = None
        self._thread: Optional[threading.Thread] = None
        self._last_result: Optional[LoopResult] = None
        self._last_error: Optional[str] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def last_result(self) -> Optional[LoopResult]:
        return self._last_result

    def start(self, max_iterations: Optional[int] = None) -> dict[str, Any]:
        """Start a run. A no-op returning current status if one is active."""
        with self._guard:
            if self.running:
                logger.info("Start requested while a run is active; ignoring")
                return {"ok": True, "started": False, "status": self._status_dict()}

            if max_iterations is not None and max_iterations < 1:
                return _error("config", "max_iterations must be at least 1")
            try:
                orchestrator = self._factory(self.config, self.lock)
            except RalphError as exc:
                logger.error(f"Cannot start loop: {exc}")
                return _from_exception(exc)

            self._orchestrator = orchestrator
            self._last_result = None
            self._last_error = None
            self._thread = threading.Thread(
                target=self._run,
                args=(orchestrator, max_iterations),
                name="ralph-loop",
                daemon=True,
            )
            self._thread.start()
            logger.info("Loop started")
            return {"ok": True, "started": True, "status": self._status_dict()}

    def _run(self, orchestrator: Orchestrator, max_iterations: Optional[int]) -> None:
        try:
            self._last_result = orchestrator.run(max_iterations)
        except Exception as exc:
            logger.exception("Loop crashed")
            self._last_error = f"{type(exc).__name__}: {exc}"

    def stop(self, force: bool = False) -> dict[str, Any]:
        """Request a stop; with ``force`` the running agent is killed too."""
        with self._guard:
            if not self.running or self._orchestrator is None:
                return {"ok": True, "stopping": False, "status": self._status_dict()}
            self._orchestrator.request_stop(force=force)
            return {"ok": True, "stopping": True, "status": self._status_dict()}

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Join the worker thread. Returns True when no run is active."""
        thread = self._thread
        if thread is not None:
            thread.join(timeout)
        return not self.running

    def status(self) -> dict[str, Any]:
        """Current loop status from the last committed snapshot."""
        return {"ok": True, "status": self._status_dict()}

    def _snapshot(self) -> LoopSnapshot:
        if self._orchestrator is not None:
            return self._orchestrator.snapshot()
        try:
            ledger = load_ledger(self.config.ledger_path)
        except RalphError:
            return LoopSnapshot(max_iterations=self.config.loop.max_iterations)
        return LoopSnapshot(
            max_iterations=self.config.loop.max_iterations,
            stories=tuple(s.to_dict() for s in ledger.stories),
        )

    def _status_dict(self) -> dict[str, Any]:
        data = self._snapshot().to_dict()
        data["ledger"] = str(self.config.ledger_path)
        data["result"] = self._last_result.to_dict() if self._last_result else None
        if self._last_error:
            data["error"] = self._last_error
        checkpoint = None if data["running"] else CheckpointStore(self.config.checkpoint_path).load()
        data["checkpoint"] = checkpoint.to_dict() if checkpoint else None
        return data

    def list_stories(self) -> dict[str, Any]:
        """Stories as last committed by the loop, or as stored on disk."""
        if self.running and self._orchestrator is not None:
            stories = list(self._orchestrator.snapshot().stories)
        else:
            try:
                stories = [s.to_dict() for s in load_ledger(self.config.ledger_path).stories]
            except RalphError as exc:
                return _from_exception(exc)
        return {"ok": True, "stories": [_story_view(s) for s in stories]}

    def get_progress(self, since_iteration: int = 0) -> dict[str, Any]:
        """Progress entries with an iteration number above ``since_iteration``."""
        try:
            with self.lock:
                outcomes = ProgressLog(self.config.progress_path).since(since_iteration)
        except RalphError as exc:
            return _from_exception(exc)
        return {"ok": True, "entries": [o.to_dict() for o in outcomes]}

    def load_ledger(self, path: str) -> dict[str, Any]:
        """Point the controller at another ledger file. Only while idle."""
        with self._guard:
            if self.running:
                return _error("busy", "Cannot load a ledger while the loop is running")
            ledger_path = Path(path)
            if not ledger_path.is_absolute():
                ledger_path = self.config.project_dir / ledger_path
            try:
                ledger = load_ledger(ledger_path)
            except RalphError as exc:
                return _from_exception(exc)
            self.config.ledger_path = ledger_path
            self._orchestrator = None
            logger.info(f"Loaded ledger {ledger_path} ({len(ledger.stories)} stories)")
            return {"ok": True, "ledger": str(ledger_path), "stories": len(ledger.stories)}

    def reset_story(self, story_id: str) -> dict[str, Any]:
        """Clear the blocked marker on a story."""
        try:
            if self.running and self._orchestrator is not None:
                story = self._orchestrator.reset_story(story_id)
            else:
                with self.lock:
                    ledger = load_ledger(self.config.ledger_path)
                    story = ledger.get(story_id)
                    if story is None:
                        raise KeyError(story_id)
                    if story.clear_blocked():
                        save_ledger(ledger, self.config.ledger_path)
        except KeyError:
            return _error("not-found", f"Story {story_id} not found")
        except RalphError as exc:
            return _from_exception(exc)
        return {"ok": True, "story": _story_view(story.to_dict())}

    def run_quality_gates(self, profile: Optional[str] = None) -> dict[str, Any]:
        """Evaluate a quality profile against the workspace. Only while idle.

        The guard is held for the whole evaluation, so ``start`` waits until
        the gates are done with the workspace.
        """
        with self._guard:
            if self.running:
                return _error("busy", "Cannot run quality gates while the loop is running")
            try:
                quality_profile = get_profile(self.config.quality, profile or self.config.profile)
            except RalphError as exc:
                return _from_exception(exc)
            verdict = GateEngine().evaluate(quality_profile, self.config.project_dir)
        return {
            "ok": True,
            "profile": quality_profile.name,
            "passed": verdict.passed,
            "score": verdict.score,
            "summary": verdict.summary,
            "results": [r.to_dict() for r in verdict.results],
        }


def create_server(controller: LoopController) -> FastMCP:
    """Build the MCP server exposing ``controller``."""
    mcp = FastMCP("ralph")

    @mcp.tool()
    def start(max_iterations: Optional[int] = None) -> dict[str, Any]:
        """Start the iteration loop. No-op if it is already running."""
        return controller.start(max_iterations)

    @mcp.tool()
    def stop(force: bool = False) -> dict[str, Any]:
        """Stop the loop at the next state transition; force also kills the running agent."""
        return controller.stop(force)

    @mcp.tool()
    def status() -> dict[str, Any]:
        """Current loop state, iteration counters and story totals."""
        return controller.status()

    @mcp.tool()
    def list_stories() -> dict[str, Any]:
        """All stories in the ledger with their pass and blocked flags."""
        return controller.list_stories()

    @mcp.tool()
    def get_progress(since_iteration: int = 0) -> dict[str, Any]:
        """Progress log entries after the given iteration number."""
        return controller.get_progress(since_iteration)

    @mcp.tool()
    def load_ledger(path: str) -> dict[str, Any]:
        """Switch to another ledger file while the loop is idle."""
        return controller.load_ledger(path)

    @mcp.tool()
    def reset_story(story_id: str) -> dict[str, Any]:
        """Unblock a story so the loop picks it up again."""
        return controller.reset_story(story_id)

    @mcp.tool()
    def run_quality_gates(profile: Optional[str] = None) -> dict[str, Any]:
        """Run a quality profile against the workspace without invoking the agent."""
        return controller.run_quality_gates(profile)

    @mcp.resource("ralph://status")
    def status_resource() -> str:
        """Loop status as JSON."""
        return json.dumps(controller.status(), indent=2)

    @mcp.resource("ralph://stories")
    def stories_resource() -> str:
        """Ledger stories as JSON."""
        return json.dumps(controller.list_stories(), indent=2)

    @mcp.resource("ralph://progress")
    def progress_resource() -> str:
        """Full progress log as JSON."""
        return json.dumps(controller.get_progress(0), indent=2)

    return mcp


def run_server(controller: LoopController) -> None:
    """Serve over stdio until the client disconnects, then stop the loop."""
    mcp = create_server(controller)
    logger.info(f"Control server ready (ledger: {controller.config.ledger_path})")
    try:
        mcp.run(transport="stdio")
    finally:
        if controller.running:
            logger.info("Client disconnected; stopping loop")
            controller.stop(force=True)
            controller.wait(timeout=30)
