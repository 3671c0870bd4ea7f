"""CLI entrypoint for ralphloop.

``ralph run`` drives the loop in the foreground; ``ralph serve`` exposes it
over MCP on stdio. The remaining commands inspect or adjust the project
files (ledger, progress log, quality profiles) without running the agent.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from . import __version__
from .checkpoint import CheckpointStore
from .config import CONFIG_FILENAME, Config
from .errors import ConfigError, RalphError
from .gates import GateEngine, GateStatus, get_profile, load_profiles
from .ledger import load_ledger, save_ledger, scaffold_ledger
from .orchestrator import HaltReason, LoopResult, Orchestrator
from .progress import ProgressLog, Verdict
from .server import LoopController, run_server

# Initialize Typer app
app = typer.Typer(
    name="ralph",
    help="Autonomous agent loop that works a story ledger until every story passes its quality gates.",
    add_completion=False,
)

console = Console()
err_console = Console(stderr=True)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_BUDGET = 2
EXIT_ERROR = 3
EXIT_CONFIG = 4
EXIT_CANCELLED = 130

EXIT_CODES = {
    HaltReason.COMPLETED: EXIT_OK,
    HaltReason.BUDGET: EXIT_BUDGET,
    HaltReason.ERROR: EXIT_ERROR,
    HaltReason.CONFIG: EXIT_CONFIG,
    HaltReason.CANCELLED: EXIT_CANCELLED,
}

SAMPLE_CONFIG = """\
# ralphloop configuration
log_level: INFO

loop:
  max_iterations: 10
  max_retries: 2
  max_iterations_per_story: 10
  checkpoint: true

agent:
  name: claude        # claude | amp | auto
  timeout: 1800

quality:
  profile: standard   # minimal | standard | comprehensive | custom
  test_command: pytest -q

tracker:
  provider: none      # none | github | linear
"""

VERDICT_STYLES = {
    Verdict.PASS: "green",
    Verdict.FAIL: "yellow",
    Verdict.INVOCATION_ERROR: "red",
    Verdict.BLOCKED: "red",
}


def setup_logging(verbose: bool = False, stderr: bool = False, level: str = "INFO") -> None:
    """Configure logging with Rich handler.

    Args:
        verbose: If True, set DEBUG level; otherwise ``level``.
        stderr: Log to stderr, keeping stdout free for a protocol stream.
        level: Level name from the config (log_level or RALPH_LOG_LEVEL).
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else getattr(logging, level.upper(), logging.INFO),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console if stderr else console, rich_tracebacks=True)],
    )


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"ralphloop version {__version__}")
        raise typer.Exit()


def load_config(directory: Path) -> Config:
    """Load config for ``directory`` or exit with the config error code."""
    project_dir = directory.resolve()
    if not project_dir.exists():
        console.print(f"[red]Error:[/red] Directory does not exist: {project_dir}")
        raise typer.Exit(EXIT_CONFIG)
    try:
        return Config.from_env(project_dir)
    except ConfigError as exc:
        console.print(f"[red]Configuration error:[/red] {exc}")
        raise typer.Exit(EXIT_CONFIG)


@app.callback()
def main(
    version: bool = typer.Option(
        None,
        "--version",
        "-v",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
) -> None:
    """Autonomous agent loop over a story ledger."""
    pass


def _run_in_worker(orchestrator: Orchestrator, max_iterations: Optional[int]) -> LoopResult:
    """Run the loop on a worker thread so Ctrl-C becomes a cooperative stop.

    The first interrupt stops at the next state transition; a second one
    also kills the running agent.
    """
    holder: list[LoopResult] = []
    worker = threading.Thread(
        target=lambda: holder.append(orchestrator.run(max_iterations)),
        name="ralph-loop",
        daemon=True,
    )
    worker.start()

    interrupts = 0
    while worker.is_alive():
        try:
            worker.join(0.5)
        except KeyboardInterrupt:
            interrupts += 1
            if interrupts == 1:
                console.print("\n[yellow]Stopping after the current step (Ctrl-C again to kill the agent)...[/yellow]")
                orchestrator.request_stop()
            else:
                console.print("\n[red]Killing the agent...[/red]")
                orchestrator.request_stop(force=True)

    if not holder:
        raise RalphError("Loop thread exited without a result")
    return holder[0]


def _print_result(result: LoopResult) -> None:
    if result.outcomes:
        table = Table(title="Iterations")
        table.add_column("#", justify="right")
        table.add_column("Story", style="cyan")
        table.add_column("Verdict")
        table.add_column("Attempts", justify="right")
        table.add_column("Gates")
        for outcome in result.outcomes:
            style = VERDICT_STYLES.get(outcome.verdict, "white")
            gates = ", ".join(f"{g.name}:{g.status.value}" for g in outcome.gate_results) or "-"
            table.add_row(
                str(outcome.iteration),
                outcome.story_id,
                f"[{style}]{outcome.verdict.value}[/{style}]",
                str(outcome.attempts),
                gates,
            )
        console.print(table)

    console.print()
    if result.success:
        console.print(
            f"[bold green]All {result.total_stories} stories pass[/bold green] "
            f"after {result.iterations} iteration(s)."
        )
    else:
        console.print(f"[bold yellow]Loop halted ({result.halt_reason.value}):[/bold yellow] {result.error}")
        console.print(
            f"[dim]Stories passing:[/dim] {result.stories_passed}/{result.total_stories}  "
            f"[dim]Iterations:[/dim] {result.iterations}/{result.max_iterations}"
        )


@app.command()
def run(
    max_iterations: Optional[int] = typer.Option(
        None,
        "--max-iterations",
        "-n",
        help="Iteration budget for this run (default from config: 10).",
    ),
    directory: Path = typer.Option(
        Path("."),
        "--directory",
        "-d",
        help="Project directory containing the ledger.",
    ),
    profile: Optional[str] = typer.Option(
        None,
        "--profile",
        "-p",
        help="Quality profile (minimal, standard, comprehensive or one from ralph.yaml).",
    ),
    agent: Optional[str] = typer.Option(
        None,
        "--agent",
        "-a",
        help="Agent preset: claude, amp or auto.",
    ),
    mock: bool = typer.Option(
        False,
        "--mock",
        "-m",
        help="Use a mock agent that always succeeds.",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        help="Enable verbose output.",
    ),
) -> None:
    """Run the loop until every story passes or the budget runs out.

    Examples:
        ralph run
        ralph run --max-iterations 20 --profile comprehensive
        ralph run --directory ../my-app --agent amp
    """
    config = load_config(directory)
    setup_logging(verbose, level=config.log_level)

    if profile:
        config.profile = profile
    if agent:
        config.agent.name = agent
    if mock:
        config.mock_mode = True
    if max_iterations is not None:
        config.loop.max_iterations = max_iterations

    errors = config.validate()
    if errors:
        console.print("[red]Configuration errors:[/red]")
        for error in errors:
            console.print(f"  - {error}")
        raise typer.Exit(EXIT_CONFIG)

    if not config.ledger_path.exists():
        console.print(f"[red]Error:[/red] Ledger not found: {config.ledger_path}")
        console.print("[dim]Hint: run 'ralph init' to create one[/dim]")
        raise typer.Exit(EXIT_CONFIG)

    try:
        orchestrator = Orchestrator.from_config(config)
    except ConfigError as exc:
        console.print(f"[red]Configuration error:[/red] {exc}")
        raise typer.Exit(EXIT_CONFIG)

    console.print("\n[bold]Starting ralph loop[/bold]")
    console.print(f"[dim]Project:[/dim] {config.project_dir}")
    console.print(f"[dim]Ledger:[/dim] {config.ledger_path}")
    console.print(f"[dim]Agent:[/dim] {'mock' if config.mock_mode else ' '.join(orchestrator.invoker.command)}")
    console.print(f"[dim]Profile:[/dim] {config.profile}")
    console.print(f"[dim]Max iterations:[/dim] {config.loop.max_iterations}")
    console.print()

    result = _run_in_worker(orchestrator, config.loop.max_iterations)
    _print_result(result)
    raise typer.Exit(EXIT_CODES[result.halt_reason])


@app.command()
def init(
    directory: Path = typer.Argument(
        Path("."),
        help="Project directory to initialize.",
    ),
    project: Optional[str] = typer.Option(
        None,
        "--project",
        help="Project name stored in the ledger (default: directory name).",
    ),
) -> None:
    """Create a starter ledger and ralph.yaml."""
    project_dir = directory.resolve()
    project_dir.mkdir(parents=True, exist_ok=True)
    config = load_config(project_dir)

    try:
        ledger = scaffold_ledger(config.ledger_path, project or "")
    except ConfigError as exc:
        console.print(f"[red]Error:[/red] {exc}")
        raise typer.Exit(EXIT_FAILURE)
    console.print(f"[green]Created[/green] {config.ledger_path} ({len(ledger.stories)} example story)")

    config_file = project_dir / CONFIG_FILENAME
    if config_file.exists():
        console.print(f"[dim]Keeping existing {config_file}[/dim]")
    else:
        config_file.write_text(SAMPLE_CONFIG, encoding="utf-8")
        console.print(f"[green]Created[/green] {config_file}")

    console.print("\n[bold]Next steps:[/bold]")
    console.print(f"  1. Edit {config.ledger_path.name} with your user stories")
    console.print("  2. Run [cyan]ralph run[/cyan]")


@app.command()
def serve(
    directory: Path = typer.Option(
        Path("."),
        "--directory",
        "-d",
        help="Project directory.",
    ),
    ledger: Optional[Path] = typer.Option(
        None,
        "--ledger",
        help="Ledger file (default: prd.json in the project directory).",
    ),
    mock: bool = typer.Option(
        False,
        "--mock",
        "-m",
        help="Use a mock agent that always succeeds.",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        help="Enable verbose output.",
    ),
) -> None:
    """Serve the loop controls over MCP (stdio)."""
    config = load_config(directory)
    # stdout carries the protocol; everything human-readable goes to stderr
    setup_logging(verbose, stderr=True, level=config.log_level)
    if ledger is not None:
        config.ledger_path = ledger.resolve()
    if mock:
        config.mock_mode = True

    errors = config.validate()
    if errors:
        for error in errors:
            err_console.print(f"[red]Configuration error:[/red] {error}")
        raise typer.Exit(EXIT_CONFIG)

    run_server(LoopController(config))


@app.command()
def status(
    directory: Path = typer.Option(
        Path("."),
        "--directory",
        "-d",
        help="Project directory.",
    ),
) -> None:
    """Show the stories in the ledger."""
    config = load_config(directory)
    try:
        ledger = load_ledger(config.ledger_path)
    except ConfigError as exc:
        console.print(f"[red]Error:[/red] {exc}")
        raise typer.Exit(EXIT_CONFIG)

    table = Table(title=f"{ledger.project or config.project_dir.name} - {config.ledger_path.name}")
    table.add_column("ID", style="cyan")
    table.add_column("Priority", justify="right")
    table.add_column("Title")
    table.add_column("Status")

    for story in sorted(ledger.stories, key=lambda s: (s.priority, s.id)):
        if story.passes:
            state = "[green]passes[/green]"
        elif story.blocked:
            state = "[red]blocked[/red]"
        else:
            state = "[yellow]pending[/yellow]"
        table.add_row(story.id, str(story.priority), story.title, state)

    console.print(table)
    console.print(f"\n[dim]{ledger.passing_count()}/{len(ledger.stories)} stories passing[/dim]")

    checkpoint = CheckpointStore(config.checkpoint_path).load()
    if checkpoint is not None:
        console.print(f"[yellow]Last run {checkpoint.describe()}[/yellow]")
        if checkpoint.error:
            console.print(f"[dim]{checkpoint.error}[/dim]")


@app.command()
def reset(
    story_id: str = typer.Argument(..., help="ID of the story to unblock."),
    directory: Path = typer.Option(
        Path("."),
        "--directory",
        "-d",
        help="Project directory.",
    ),
) -> None:
    """Clear a story's blocked marker so the loop retries it."""
    config = load_config(directory)
    try:
        ledger = load_ledger(config.ledger_path)
    except ConfigError as exc:
        console.print(f"[red]Error:[/red] {exc}")
        raise typer.Exit(EXIT_CONFIG)

    story = ledger.get(story_id)
    if story is None:
        console.print(f"[red]Error:[/red] Story not found: {story_id}")
        raise typer.Exit(EXIT_FAILURE)

    if not story.clear_blocked():
        console.print(f"[yellow]Story {story_id} is not blocked.[/yellow]")
        return

    try:
        save_ledger(ledger, config.ledger_path)
    except RalphError as exc:
        console.print(f"[red]Error:[/red] {exc}")
        raise typer.Exit(EXIT_ERROR)
    console.print(f"[green]Story {story_id} unblocked.[/green]")


@app.command()
def gates(
    profile: Optional[str] = typer.Option(
        None,
        "--profile",
        "-p",
        help="Quality profile to run (default from config).",
    ),
    directory: Path = typer.Option(
        Path("."),
        "--directory",
        "-d",
        help="Project directory.",
    ),
    list_profiles: bool = typer.Option(
        False,
        "--list",
        "-l",
        help="List available profiles instead of running one.",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        help="Enable verbose output.",
    ),
) -> None:
    """Run a quality profile against the project without invoking the agent."""
    config = load_config(directory)
    setup_logging(verbose, level=config.log_level)

    try:
        if list_profiles:
            profiles = load_profiles(config.quality)
        else:
            quality_profile = get_profile(config.quality, profile or config.profile)
    except ConfigError as exc:
        console.print(f"[red]Configuration error:[/red] {exc}")
        raise typer.Exit(EXIT_CONFIG)

    if list_profiles:
        table = Table(title="Quality Profiles")
        table.add_column("Name", style="cyan")
        table.add_column("Policy")
        table.add_column("Gates")
        table.add_column("Description")
        for name, item in profiles.items():
            table.add_row(
                name,
                item.policy.value,
                ", ".join(g.name for g in item.gates) or "-",
                item.description,
            )
        console.print(table)
        return

    verdict = GateEngine().evaluate(quality_profile, config.project_dir)

    table = Table(title=f"Quality profile: {quality_profile.name}")
    table.add_column("Gate", style="cyan")
    table.add_column("Status")
    table.add_column("Score", justify="right")
    table.add_column("Duration", justify="right")
    colors = {GateStatus.PASS: "green", GateStatus.FAIL: "yellow", GateStatus.ERROR: "red", GateStatus.SKIPPED: "dim"}
    for result in verdict.results:
        color = colors[result.status]
        table.add_row(
            result.name,
            f"[{color}]{result.status.value}[/{color}]",
            f"{result.score:.2f}" if result.score is not None else "-",
            f"{result.duration:.1f}s",
        )
    console.print(table)

    if verdict.passed:
        console.print(f"\n[green]PASS[/green] {verdict.summary}")
        return
    console.print(f"\n[red]FAIL[/red] {verdict.summary}")
    if verbose:
        console.print(verdict.failure_diagnostics())
    raise typer.Exit(EXIT_FAILURE)


@app.command()
def log(
    directory: Path = typer.Option(
        Path("."),
        "--directory",
        "-d",
        help="Project directory.",
    ),
    limit: int = typer.Option(
        20,
        "--limit",
        "-n",
        help="Number of most recent entries to show.",
    ),
    story: Optional[str] = typer.Option(
        None,
        "--story",
        "-s",
        help="Only show entries for this story.",
    ),
) -> None:
    """Show recent entries of the progress log."""
    config = load_config(directory)
    try:
        outcomes = ProgressLog(config.progress_path).read()
    except RalphError as exc:
        console.print(f"[red]Error:[/red] {exc}")
        raise typer.Exit(EXIT_ERROR)

    if story:
        outcomes = [o for o in outcomes if o.story_id == story]
    if not outcomes:
        console.print("[yellow]No progress entries yet.[/yellow]")
        return

    table = Table(title="Progress Log")
    table.add_column("#", justify="right")
    table.add_column("Time", style="dim")
    table.add_column("Story", style="cyan")
    table.add_column("Verdict")
    table.add_column("Agent")
    table.add_column("Note")

    for outcome in outcomes[-limit:]:
        style = VERDICT_STYLES.get(outcome.verdict, "white")
        table.add_row(
            str(outcome.iteration),
            outcome.timestamp[:19],
            outcome.story_id,
            f"[{style}]{outcome.verdict.value}[/{style}]",
            outcome.agent_status or "-",
            outcome.note[:60],
        )
    console.print(table)


if __name__ == "__main__":
    app()
