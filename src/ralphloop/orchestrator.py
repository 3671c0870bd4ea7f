"""Orchestrator for the ralphloop iteration loop.

The orchestrator is a sequential state machine:

    idle -> selecting -> invoking -> verifying -> updating -> selecting ...
                 |
                 +-> completed | halted

Each iteration picks one story, runs the agent on it once (retrying only
invocation errors), verifies the workspace with the quality gates and then
commits the result to the ledger and progress log under a single lock.
A stop request is honoured at the next transition boundary; an iteration
interrupted that way is abandoned without touching the ledger.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from .agent_runner import (
    AgentInvoker,
    InvocationResult,
    InvocationStatus,
    MockAgentInvoker,
    build_agent_command,
    changed_files,
    detect_agent,
)
from .checkpoint import Checkpoint, CheckpointStore
from .config import Config, LoopConfig
from .errors import CancellationRequested, ConfigError, InvocationError, LedgerIOError
from .gates import AggregateVerdict, GateEngine, QualityProfile, get_profile
from .ledger import Ledger, Story, load_ledger, save_ledger
from .progress import IterationOutcome, ProgressLog, Verdict
from .prompts import PromptBuilder
from .trackers import NullTracker, TrackerBoundary, create_tracker

logger = logging.getLogger(__name__)

OUTPUT_EXCERPT_CHARS = 1000


class LoopState(str, Enum):
    """States of the iteration state machine."""

    IDLE = "idle"
    SELECTING = "selecting"
    INVOKING = "invoking"
    VERIFYING = "verifying"
    UPDATING = "updating"
    COMPLETED = "completed"
    HALTED = "halted"


class HaltReason(str, Enum):
    """Why a run stopped."""

    COMPLETED = "completed"
    BUDGET = "budget"
    ERROR = "error"
    CONFIG = "config"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class LoopSnapshot:
    """Last committed view of the loop, safe to read without the lock."""

    state: LoopState = LoopState.IDLE
    iteration: int = 0
    iterations_used: int = 0
    max_iterations: int = 0
    current_story: Optional[str] = None
    stories: tuple[dict, ...] = ()
    halt_reason: Optional[HaltReason] = None
    error: Optional[str] = None
    stop_requested: bool = False
    updated_at: str = field(default_factory=lambda: datetime.now().isoformat())

    @property
    def running(self) -> bool:
        return self.state not in (LoopState.IDLE, LoopState.COMPLETED, LoopState.HALTED)

    def to_dict(self) -> dict[str, Any]:
        passed = sum(1 for s in self.stories if s.get("passes"))
        return {
            "state": self.state.value,
            "running": self.running,
            "iteration": self.iteration,
            "iterations_used": self.iterations_used,
            "max_iterations": self.max_iterations,
            "current_story": self.current_story,
            "stories_passed": passed,
            "total_stories": len(self.stories),
            "halt_reason": self.halt_reason.value if self.halt_reason else None,
            "error": self.error,
            "stop_requested": self.stop_requested,
            "updated_at": self.updated_at,
        }


@dataclass
class LoopResult:
    """Result of one orchestrator run."""

    state: LoopState
    halt_reason: HaltReason
    iterations: int
    max_iterations: int
    stories_passed: int = 0
    total_stories: int = 0
    error: Optional[str] = None
    outcomes: list[IterationOutcome] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.state == LoopState.COMPLETED

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "halt_reason": self.halt_reason.value,
            "iterations": self.iterations,
            "max_iterations": self.max_iterations,
            "stories_passed": self.stories_passed,
            "total_stories": self.total_stories,
            "error": self.error,
        }


class Orchestrator:
    """Drives the agent through the ledger one story per iteration."""

    def __init__(
        self,
        ledger_path: Path,
        progress_log: ProgressLog,
        invoker: AgentInvoker,
        profile: QualityProfile,
        workspace: Path,
        loop_config: Optional[LoopConfig] = None,
        agent_timeout: float = 1800,
        gate_engine: Optional[GateEngine] = None,
        tracker: Optional[TrackerBoundary] = None,
        prompt_builder: Optional[PromptBuilder] = None,
        create_issue_on_block: bool = True,
        checkpoints: Optional[CheckpointStore] = None,
        lock: Optional[threading.RLock] = None,
    ):
        """Initialize the orchestrator.

        Args:
            ledger_path: Ledger JSON file, loaded at the start of ``run``.
            progress_log: Append-only outcome log.
            invoker: Agent invoker used for every iteration.
            profile: Quality profile that decides whether a story passes.
            workspace: Directory the agent edits and the gates inspect.
            loop_config: Budget, retry and context settings.
            agent_timeout: Seconds before an agent run is terminated.
            gate_engine: Quality gate engine. Defaults to a new GateEngine.
            tracker: Tracker boundary. Defaults to a NullTracker.
            prompt_builder: Prompt renderer. Defaults to the built-in template.
            create_issue_on_block: Open a tracker issue when a story is blocked.
            checkpoints: Where halted runs record their position. None disables it.
            lock: Exclusion primitive shared with the control server.
        """
        self.ledger_path = Path(ledger_path)
        self.progress_log = progress_log
        self.invoker = invoker
        self.profile = profile
        self.workspace = Path(workspace)
        self.loop_config = loop_config or LoopConfig()
        self.agent_timeout = agent_timeout
        self.gate_engine = gate_engine or GateEngine()
        self.tracker = tracker or TrackerBoundary(NullTracker())
        self.prompt_builder = prompt_builder or PromptBuilder()
        self.create_issue_on_block = create_issue_on_block
        self.checkpoints = checkpoints

        self.lock = lock or threading.RLock()
        self._cancel = threading.Event()
        self._ledger: Optional[Ledger] = None
        self._snapshot = LoopSnapshot(max_iterations=self.loop_config.max_iterations)

    @classmethod
    def from_config(
        cls,
        config: Config,
        invoker: Optional[AgentInvoker] = None,
        tracker: Optional[TrackerBoundary] = None,
        lock: Optional[threading.RLock] = None,
    ) -> Orchestrator:
        """Build an orchestrator and its collaborators from a Config.

        Raises:
            ConfigError: Invalid settings, unknown profile or agent.
        """
        config.ensure_valid()
        profile = get_profile(config.quality, config.profile)

        if invoker is None:
            invoker = cls._invoker_from_config(config)
        if tracker is None:
            tracker = TrackerBoundary(create_tracker(config.tracker))

        return cls(
            ledger_path=config.ledger_path,
            progress_log=ProgressLog(config.progress_path),
            invoker=invoker,
            profile=profile,
            workspace=config.project_dir,
            loop_config=config.loop,
            agent_timeout=config.agent.timeout,
            tracker=tracker,
            prompt_builder=PromptBuilder.from_project(config.project_dir),
            create_issue_on_block=config.tracker.create_issue_on_block,
            checkpoints=CheckpointStore(config.checkpoint_path) if config.loop.checkpoint else None,
            lock=lock,
        )

    @staticmethod
    def _invoker_from_config(config: Config) -> AgentInvoker:
        if config.mock_mode:
            return MockAgentInvoker()
        agent = config.agent
        name = agent.name
        if name == "auto" and not agent.command:
            name = detect_agent() or ""
            if not name:
                raise ConfigError("No agent found. Install Claude Code CLI or Amp CLI, or set agent.command.")
        try:
            command = build_agent_command(name, agent.command, agent.model)
        except ValueError as exc:
            raise ConfigError(str(exc)) from exc
        return AgentInvoker(command, max_output_chars=agent.max_output_chars)

    # -- observation and control -------------------------------------------

    def snapshot(self) -> LoopSnapshot:
        """Last committed state. Does not take the lock."""
        return self._snapshot

    @property
    def state(self) -> LoopState:
        return self._snapshot.state

    @property
    def stop_requested(self) -> bool:
        return self._cancel.is_set()

    def request_stop(self, force: bool = False) -> None:
        """Ask the loop to stop at the next transition boundary.

        With ``force`` the in-flight agent process is terminated as well.
        """
        logger.info(f"Stop requested{' (force)' if force else ''}")
        self._cancel.set()
        self._snapshot = replace(self._snapshot, stop_requested=True)
        if force:
            self.invoker.terminate()

    def reset_story(self, story_id: str) -> Optional[Story]:
        """Clear a story's blocked marker so selection considers it again.

        Works on the in-memory ledger while a run is active, otherwise on the
        ledger file.

        Raises:
            KeyError: No story with that id.
        """
        with self.lock:
            ledger = self._ledger if self._ledger is not None else load_ledger(self.ledger_path)
            story = ledger.get(story_id)
            if story is None:
                raise KeyError(story_id)
            if story.clear_blocked():
                save_ledger(ledger, self.ledger_path)
                logger.info(f"Story {story_id} unblocked")
            if self._ledger is not None:
                self._publish(stories=ledger)
            return story

    # -- main loop ------------------------------------------------------------

    def run(self, max_iterations: Optional[int] = None) -> LoopResult:
        """Run iterations until completion, budget exhaustion, or a stop.

        Args:
            max_iterations: Budget override for this run.

        Returns:
            LoopResult describing how the run ended.
        """
        budget = max_iterations if max_iterations is not None else self.loop_config.max_iterations
        outcomes: list[IterationOutcome] = []
        used = 0

        with self.lock:
            self._snapshot = LoopSnapshot(
                state=LoopState.SELECTING,
                max_iterations=budget,
                stop_requested=self._cancel.is_set(),
            )

        try:
            if budget < 1:
                raise ConfigError("max_iterations must be at least 1")
            ledger = self._load()
            base = self.progress_log.last_iteration()

            logger.info("=" * 60)
            logger.info(f"Starting loop: {ledger.passing_count()}/{len(ledger.stories)} stories passing, budget {budget}")
            if self.checkpoints is not None:
                previous = self.checkpoints.load()
                if previous is not None:
                    logger.info(f"Resuming: last run {previous.describe()}")
            logger.info("=" * 60)

            while True:
                self._check_cancel()
                self._transition(LoopState.SELECTING)

                if ledger.all_pass():
                    return self._finish(LoopState.COMPLETED, HaltReason.COMPLETED, used, budget, outcomes)
                if used >= budget:
                    return self._finish(
                        LoopState.HALTED, HaltReason.BUDGET, used, budget, outcomes,
                        error=f"Max iterations ({budget}) reached",
                    )
                story = ledger.next_story()
                if story is None:
                    # Nothing left the budget can be spent on
                    return self._finish(
                        LoopState.HALTED, HaltReason.BUDGET, used, budget, outcomes,
                        error=f"All remaining stories are blocked ({budget - used} iteration(s) unusable)",
                    )

                used += 1
                outcome = self._iterate(ledger, story, base + used, used, budget)
                outcomes.append(outcome)

        except CancellationRequested:
            return self._finish(LoopState.HALTED, HaltReason.CANCELLED, used, budget, outcomes, error="Stopped by request")
        except ConfigError as exc:
            logger.error(f"Configuration error: {exc}")
            return self._finish(LoopState.HALTED, HaltReason.CONFIG, used, budget, outcomes, error=str(exc))
        except LedgerIOError as exc:
            logger.error(f"Ledger I/O failure: {exc}")
            return self._finish(LoopState.HALTED, HaltReason.ERROR, used, budget, outcomes, error=str(exc))
        except Exception as exc:
            logger.exception("Loop crashed")
            return self._finish(
                LoopState.HALTED, HaltReason.ERROR, used, budget, outcomes,
                error=f"{type(exc).__name__}: {exc}",
            )
        finally:
            self._ledger = None

    def _load(self) -> Ledger:
        """Load the ledger and merge in tracker stories with new ids."""
        fetched = self.tracker.fetch_stories()
        with self.lock:
            ledger = load_ledger(self.ledger_path)
            added = [s for s in fetched if ledger.add(s)]
            if added:
                logger.info(f"Added {len(added)} stories from tracker '{self.tracker.name}'")
                save_ledger(ledger, self.ledger_path)
            self._ledger = ledger
            self._publish(stories=ledger)
            return ledger

    def _iterate(self, ledger: Ledger, story: Story, iteration: int, used: int, budget: int) -> IterationOutcome:
        """Run one iteration for ``story`` and commit its outcome."""
        start = time.monotonic()
        logger.info(f"Iteration {used}/{budget} | Story {story.id}: {story.title}")
        self._transition(LoopState.INVOKING, iteration=iteration, used=used, story=story.id)

        previous = self.progress_log.last_for_story(story.id)
        prompt = self.prompt_builder.build(
            story=story,
            workspace=self.workspace,
            progress_summary=self.progress_log.summarize(
                self.loop_config.context_entries, self.loop_config.context_max_chars
            ),
            previous=previous,
            gate_names=[g.name for g in self.profile.gates if g.enabled],
            ledger_name=self.ledger_path.name,
        )

        result, attempts = self._invoke_with_retries(prompt)

        # An interrupted iteration is abandoned before anything is written
        self._check_cancel()

        verdict: Optional[AggregateVerdict] = None
        passes = False
        block_reason = None
        note = ""

        if not result.success:
            block_reason = f"agent {result.status.value} after {attempts} attempt(s): {result.error or ''}".strip()
            outcome_verdict = Verdict.INVOCATION_ERROR
        else:
            self._transition(LoopState.VERIFYING)
            verdict = self.gate_engine.evaluate(self.profile, self.workspace)
            self._check_cancel()
            if verdict.passed:
                passes = True
                outcome_verdict = Verdict.PASS
            else:
                outcome_verdict = Verdict.FAIL
                note = verdict.summary
                cap = self.loop_config.max_iterations_per_story
                failures = self.progress_log.count_for_story(story.id, Verdict.FAIL) + 1
                if cap and failures >= cap:
                    block_reason = f"quality gates failed in {failures} iterations"
                    outcome_verdict = Verdict.BLOCKED

        self._transition(LoopState.UPDATING)
        outcome = IterationOutcome(
            iteration=iteration,
            story_id=story.id,
            verdict=outcome_verdict,
            gate_results=tuple(verdict.results) if verdict else (),
            agent_exit_status=result.exit_status,
            agent_status=result.status.value,
            attempts=attempts,
            duration=time.monotonic() - start,
            changed_files=tuple(result.changed_files),
            output_excerpt=result.output[-OUTPUT_EXCERPT_CHARS:],
            note=block_reason or note,
        )

        with self.lock:
            if passes:
                story.passes = True
            if block_reason:
                story.mark_blocked(block_reason)
            save_ledger(ledger, self.ledger_path)
            self.progress_log.append(outcome)
            self._publish(stories=ledger)

        if passes:
            logger.info(f"Story {story.id} passes ({verdict.summary if verdict else ''})")
        elif block_reason:
            logger.warning(f"Story {story.id} blocked: {block_reason}")
        else:
            logger.warning(f"Story {story.id} did not pass: {note}")

        if passes or block_reason:
            self.tracker.update_story_status(story)
        if block_reason and self.create_issue_on_block:
            self.tracker.create_issue(
                f"[ralph] Story {story.id} blocked",
                f"Story **{story.id}: {story.title}** was blocked.\n\n{block_reason}\n\n"
                f"Last agent output:\n\n```\n{outcome.output_excerpt}\n```",
            )
        return outcome

    def _invoke_with_retries(self, prompt: str) -> tuple[InvocationResult, int]:
        """Invoke the agent, retrying invocation errors in the same slot."""
        attempts = 0
        while True:
            attempts += 1
            result: Optional[InvocationResult] = None
            try:
                result = self.invoker.invoke(prompt, self.workspace, self.agent_timeout)
                result.raise_for_status()
                return result, attempts
            except InvocationError as exc:
                logger.warning(f"Agent attempt {attempts} failed: {exc.status} {exc}")
                if result is None:
                    result = InvocationResult(
                        status=InvocationStatus.FAILED, exit_status=exc.exit_status, error=str(exc)
                    )
            except OSError as exc:
                logger.warning(f"Agent attempt {attempts} could not start: {exc}")
                result = InvocationResult(status=InvocationStatus.SPAWN_ERROR, error=str(exc))

            if self._cancel.is_set() or attempts > self.loop_config.max_retries:
                return result, attempts

    # -- state bookkeeping ------------------------------------------------------

    def _check_cancel(self) -> None:
        if self._cancel.is_set():
            raise CancellationRequested("Stop requested")

    def _transition(
        self,
        state: LoopState,
        iteration: Optional[int] = None,
        used: Optional[int] = None,
        story: Optional[str] = None,
    ) -> None:
        logger.debug(f"State -> {state.value}")
        with self.lock:
            changes: dict[str, Any] = {"state": state}
            if iteration is not None:
                changes["iteration"] = iteration
            if used is not None:
                changes["iterations_used"] = used
            if story is not None:
                changes["current_story"] = story
            self._publish(**changes)

    def _publish(self, stories: Optional[Ledger] = None, **changes: Any) -> None:
        """Swap in a new snapshot. Caller holds the lock."""
        if stories is not None:
            changes["stories"] = tuple(s.to_dict() for s in stories.stories)
        changes["updated_at"] = datetime.now().isoformat()
        changes["stop_requested"] = self._cancel.is_set()
        self._snapshot = replace(self._snapshot, **changes)

    def _finish(
        self,
        state: LoopState,
        reason: HaltReason,
        used: int,
        budget: int,
        outcomes: list[IterationOutcome],
        error: Optional[str] = None,
    ) -> LoopResult:
        with self.lock:
            in_flight = self._snapshot.current_story
            iteration = self._snapshot.iteration
            self._publish(state=state, halt_reason=reason, error=error, current_story=None)
            stories = self._snapshot.stories

        # Config halts leave an earlier checkpoint in place
        if self.checkpoints is not None and reason != HaltReason.CONFIG:
            if state == LoopState.COMPLETED:
                self.checkpoints.clear()
            else:
                self.checkpoints.save(
                    Checkpoint(
                        pause_reason=reason.value,
                        story_id=in_flight,
                        iteration=iteration,
                        max_iterations=budget,
                        error=error,
                        uncommitted_files=tuple(
                            f for f in changed_files(self.workspace) if Path(f).name != self.checkpoints.path.name
                        ),
                    )
                )

        passed = sum(1 for s in stories if s.get("passes"))
        if state == LoopState.COMPLETED:
            logger.info(f"All {len(stories)} stories pass after {used} iteration(s)")
        else:
            logger.warning(f"Loop halted ({reason.value}): {error}. {passed}/{len(stories)} stories passing")

        return LoopResult(
            state=state,
            halt_reason=reason,
            iterations=used,
            max_iterations=budget,
            stories_passed=passed,
            total_stories=len(stories),
            error=error,
            outcomes=outcomes,
        )
