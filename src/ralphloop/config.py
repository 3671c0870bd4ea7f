"""Configuration management for ralphloop."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal, Optional

import yaml
from dotenv import load_dotenv

from .errors import ConfigError

# Type alias for tracker provider names
TrackerName = Literal["none", "github", "linear"]

CONFIG_FILENAME = "ralph.yaml"
DEFAULT_LEDGER = "prd.json"
DEFAULT_PROGRESS = "progress.jsonl"
DEFAULT_CHECKPOINT = ".ralph-checkpoint.json"

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

_TRUE_VALUES = ("true", "1", "yes")


def _env_flag(name: str, default: str = "") -> bool:
    return os.getenv(name, default).lower() in _TRUE_VALUES


@dataclass
class LoopConfig:
    """Settings for the iteration loop itself."""

    max_iterations: int = 10
    max_retries: int = 2
    max_iterations_per_story: int = 10
    context_entries: int = 5
    context_max_chars: int = 4000
    checkpoint: bool = True

    @classmethod
    def from_dict(cls, data: dict) -> LoopConfig:
        """Create LoopConfig from the ``loop`` section of ralph.yaml."""
        loop_data = data.get("loop", {}) or {}
        return cls(
            max_iterations=int(loop_data.get("max_iterations", 10)),
            max_retries=int(loop_data.get("max_retries", 2)),
            max_iterations_per_story=int(loop_data.get("max_iterations_per_story", 10)),
            context_entries=int(loop_data.get("context_entries", 5)),
            context_max_chars=int(loop_data.get("context_max_chars", 4000)),
            checkpoint=bool(loop_data.get("checkpoint", True)),
        )


@dataclass
class AgentSettings:
    """Settings for the external coding agent."""

    name: str = "claude"
    command: Optional[list[str]] = None
    model: Optional[str] = None
    timeout: int = 1800
    max_output_chars: int = 20000

    @classmethod
    def from_dict(cls, data: dict) -> AgentSettings:
        """Create AgentSettings from the ``agent`` section of ralph.yaml."""
        agent_data = data.get("agent", {}) or {}
        command = agent_data.get("command")
        if isinstance(command, str):
            command = command.split()
        return cls(
            name=agent_data.get("name", "claude"),
            command=list(command) if command else None,
            model=agent_data.get("model"),
            timeout=int(agent_data.get("timeout", 1800)),
            max_output_chars=int(agent_data.get("max_output_chars", 20000)),
        )


@dataclass
class GitHubSettings:
    """Settings for the GitHub issues provider."""

    repo: str = ""
    label: str = "ralph"
    token: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> GitHubSettings:
        return cls(
            repo=data.get("repo", ""),
            label=data.get("label", "ralph"),
            token=data.get("token"),
        )


@dataclass
class LinearSettings:
    """Settings for the Linear provider."""

    team_id: str = ""
    api_key: Optional[str] = None
    done_state_id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> LinearSettings:
        return cls(
            team_id=data.get("team_id", ""),
            api_key=data.get("api_key"),
            done_state_id=data.get("done_state_id"),
        )


@dataclass
class TrackerConfig:
    """Configuration for project tracker selection and settings."""

    provider: TrackerName = "none"
    create_issue_on_block: bool = True
    timeout: int = 30
    github: GitHubSettings = field(default_factory=GitHubSettings)
    linear: LinearSettings = field(default_factory=LinearSettings)

    @classmethod
    def from_dict(cls, data: dict) -> TrackerConfig:
        """Create TrackerConfig from the ``tracker`` section of ralph.yaml."""
        tracker_data = data.get("tracker", {}) or {}
        return cls(
            provider=tracker_data.get("provider", "none"),
            create_issue_on_block=tracker_data.get("create_issue_on_block", True),
            timeout=int(tracker_data.get("timeout", 30)),
            github=GitHubSettings.from_dict(tracker_data.get("github", {}) or {}),
            linear=LinearSettings.from_dict(tracker_data.get("linear", {}) or {}),
        )


@dataclass
class Config:
    """Configuration settings for a ralphloop project."""

    # Paths
    project_dir: Path = field(default_factory=Path.cwd)
    ledger_path: Optional[Path] = None
    progress_path: Optional[Path] = None
    checkpoint_path: Optional[Path] = None

    # Quality
    profile: str = "standard"
    quality: dict[str, Any] = field(default_factory=dict)

    # Runtime Settings
    log_level: str = "INFO"
    mock_mode: bool = False

    loop: LoopConfig = field(default_factory=LoopConfig)
    agent: AgentSettings = field(default_factory=AgentSettings)
    tracker: TrackerConfig = field(default_factory=TrackerConfig)

    def __post_init__(self) -> None:
        self.project_dir = Path(self.project_dir)
        if self.ledger_path is None:
            self.ledger_path = self.project_dir / DEFAULT_LEDGER
        if self.progress_path is None:
            self.progress_path = self.project_dir / DEFAULT_PROGRESS
        if self.checkpoint_path is None:
            self.checkpoint_path = self.project_dir / DEFAULT_CHECKPOINT

    @classmethod
    def from_dict(cls, data: dict, project_dir: Path) -> Config:
        """Create Config from a parsed ralph.yaml document."""
        quality_data = data.get("quality", {}) or {}
        ledger = data.get("ledger")
        progress = data.get("progress")
        return cls(
            project_dir=project_dir,
            ledger_path=project_dir / ledger if ledger else None,
            progress_path=project_dir / progress if progress else None,
            profile=quality_data.get("profile", "standard"),
            log_level=str(data.get("log_level", "INFO")).upper(),
            quality=quality_data,
            loop=LoopConfig.from_dict(data),
            agent=AgentSettings.from_dict(data),
            tracker=TrackerConfig.from_dict(data),
        )

    @classmethod
    def load_from_file(cls, project_dir: Path) -> Config:
        """Load config from ralph.yaml in ``project_dir``.

        Missing file yields defaults. A file that is not valid YAML, or not a
        mapping, raises ConfigError.
        """
        config_path = project_dir / CONFIG_FILENAME
        if not config_path.exists():
            return cls(project_dir=project_dir)
        try:
            with open(config_path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"Invalid YAML in {config_path}: {exc}") from exc
        except UnicodeDecodeError as exc:
            raise ConfigError(f"{config_path} is not valid UTF-8: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigError(f"{config_path} must contain a mapping")
        try:
            return cls.from_dict(data, project_dir)
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"Invalid value in {config_path}: {exc}") from exc

    @classmethod
    def from_env(cls, project_dir: Optional[Path] = None) -> Config:
        """Load ralph.yaml, then apply environment overrides.

        Args:
            project_dir: Optional project directory. Defaults to CWD.

        Returns:
            Config instance.
        """
        load_dotenv()

        project = Path(project_dir) if project_dir else Path.cwd()
        config = cls.load_from_file(project)

        try:
            if os.getenv("RALPH_MAX_ITERATIONS"):
                config.loop.max_iterations = int(os.getenv("RALPH_MAX_ITERATIONS", "10"))
            if os.getenv("RALPH_MAX_RETRIES"):
                config.loop.max_retries = int(os.getenv("RALPH_MAX_RETRIES", "2"))
            if os.getenv("RALPH_AGENT_TIMEOUT"):
                config.agent.timeout = int(os.getenv("RALPH_AGENT_TIMEOUT", "1800"))
        except ValueError as exc:
            raise ConfigError(f"Invalid numeric environment override: {exc}") from exc

        config.agent.name = os.getenv("RALPH_AGENT", config.agent.name)
        config.agent.model = os.getenv("RALPH_AGENT_MODEL", config.agent.model or "") or None
        config.profile = os.getenv("RALPH_PROFILE", config.profile)
        config.log_level = os.getenv("RALPH_LOG_LEVEL", config.log_level).upper()
        config.mock_mode = config.mock_mode or _env_flag("RALPH_MOCK_MODE")

        config.tracker.github.token = config.tracker.github.token or os.getenv("GITHUB_TOKEN")
        config.tracker.linear.api_key = config.tracker.linear.api_key or os.getenv("LINEAR_API_KEY")
        config.tracker.linear.team_id = config.tracker.linear.team_id or os.getenv("LINEAR_TEAM_ID", "")

        return config

    def validate(self) -> list[str]:
        """Validate configuration and return list of errors.

        Returns:
            List of validation error messages. Empty if valid.
        """
        errors = []

        if not self.project_dir.exists():
            errors.append(f"Project directory does not exist: {self.project_dir}")

        if self.loop.max_iterations < 1:
            errors.append("loop.max_iterations must be at least 1")
        if self.loop.max_retries < 0:
            errors.append("loop.max_retries must not be negative")
        if self.loop.max_iterations_per_story < 0:
            errors.append("loop.max_iterations_per_story must not be negative")
        if self.agent.timeout <= 0:
            errors.append("agent.timeout must be positive")
        if self.log_level not in LOG_LEVELS:
            errors.append(f"Unknown log level: {self.log_level}")

        if self.tracker.provider not in ("none", "github", "linear"):
            errors.append(f"Unknown tracker provider: {self.tracker.provider}")
        elif self.tracker.provider == "github" and not self.tracker.github.repo:
            errors.append("tracker.github.repo is required for the github provider")
        elif self.tracker.provider == "linear" and not self.tracker.linear.team_id:
            errors.append("tracker.linear.team_id (or LINEAR_TEAM_ID) is required for the linear provider")

        return errors

    def ensure_valid(self) -> None:
        """Raise ConfigError listing every validation problem."""
        errors = self.validate()
        if errors:
            raise ConfigError("; ".join(errors))

    @property
    def config_file(self) -> Path:
        """Path to ralph.yaml."""
        return self.project_dir / CONFIG_FILENAME
