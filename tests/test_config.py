"""Tests for configuration management."""

from __future__ import annotations

from pathlib import Path

import pytest

from ralphloop.config import (
    AgentSettings,
    Config,
    LoopConfig,
    TrackerConfig,
)
from ralphloop.errors import ConfigError


class TestConfig:
    """Tests for Config class."""

    def test_from_env_defaults(self, tmp_path: Path) -> None:
        """Test Config.from_env with no ralph.yaml and no environment."""
        config = Config.from_env(tmp_path)

        assert config.project_dir == tmp_path
        assert config.ledger_path == tmp_path / "prd.json"
        assert config.progress_path == tmp_path / "progress.jsonl"
        assert config.profile == "standard"
        assert config.loop.max_iterations == 10
        assert config.loop.max_retries == 2
        assert config.agent.name == "claude"
        assert config.agent.timeout == 1800
        assert config.tracker.provider == "none"
        assert config.mock_mode is False

    def test_from_env_with_values(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        """Test environment overrides."""
        monkeypatch.setenv("RALPH_MAX_ITERATIONS", "3")
        monkeypatch.setenv("RALPH_MAX_RETRIES", "0")
        monkeypatch.setenv("RALPH_AGENT_TIMEOUT", "60")
        monkeypatch.setenv("RALPH_AGENT", "amp")
        monkeypatch.setenv("RALPH_PROFILE", "comprehensive")
        monkeypatch.setenv("RALPH_MOCK_MODE", "true")
        monkeypatch.setenv("GITHUB_TOKEN", "gh-token")

        config = Config.from_env(tmp_path)

        assert config.loop.max_iterations == 3
        assert config.loop.max_retries == 0
        assert config.agent.timeout == 60
        assert config.agent.name == "amp"
        assert config.profile == "comprehensive"
        assert config.mock_mode is True
        assert config.tracker.github.token == "gh-token"

    def test_from_env_rejects_bad_number(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        """Non-numeric overrides are config errors."""
        monkeypatch.setenv("RALPH_MAX_ITERATIONS", "many")

        with pytest.raises(ConfigError):
            Config.from_env(tmp_path)

    def test_load_from_file(self, tmp_path: Path) -> None:
        """Test loading ralph.yaml."""
        (tmp_path / "ralph.yaml").write_text(
            """
ledger: backlog/prd.json
loop:
  max_iterations: 25
  max_retries: 1
agent:
  name: custom
  command: my-agent --yes
  timeout: 90
quality:
  profile: strict
  profiles:
    strict:
      gates:
        - name: tests
          command: pytest
tracker:
  provider: github
  github:
    repo: acme/widgets
"""
        )

        config = Config.load_from_file(tmp_path)

        assert config.ledger_path == tmp_path / "backlog" / "prd.json"
        assert config.loop.max_iterations == 25
        assert config.loop.max_retries == 1
        assert config.agent.command == ["my-agent", "--yes"]
        assert config.agent.timeout == 90
        assert config.profile == "strict"
        assert "strict" in config.quality["profiles"]
        assert config.tracker.provider == "github"
        assert config.tracker.github.repo == "acme/widgets"

    def test_load_from_file_invalid_yaml(self, tmp_path: Path) -> None:
        """Broken YAML raises ConfigError."""
        (tmp_path / "ralph.yaml").write_text("loop: [unclosed")

        with pytest.raises(ConfigError, match="Invalid YAML"):
            Config.load_from_file(tmp_path)

    def test_load_from_file_not_mapping(self, tmp_path: Path) -> None:
        """A YAML list at the top level is rejected."""
        (tmp_path / "ralph.yaml").write_text("- one\n- two\n")

        with pytest.raises(ConfigError, match="mapping"):
            Config.load_from_file(tmp_path)

    def test_load_from_file_not_utf8(self, tmp_path: Path) -> None:
        (tmp_path / "ralph.yaml").write_bytes(b"quality:\n  profile: caf\xe9\n")

        with pytest.raises(ConfigError):
            Config.load_from_file(tmp_path)

    def test_log_level_from_file_and_env(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        (tmp_path / "ralph.yaml").write_text("log_level: warning\nloop:\n  checkpoint: false\n")

        config = Config.from_env(tmp_path)
        assert config.log_level == "WARNING"
        assert config.loop.checkpoint is False
        assert config.checkpoint_path == tmp_path / ".ralph-checkpoint.json"

        monkeypatch.setenv("RALPH_LOG_LEVEL", "debug")
        assert Config.from_env(tmp_path).log_level == "DEBUG"

    def test_validate_rejects_unknown_log_level(self, tmp_path: Path) -> None:
        config = Config(project_dir=tmp_path, log_level="LOUD")

        assert config.validate() == ["Unknown log level: LOUD"]

    def test_validate_defaults(self, tmp_path: Path) -> None:
        """Default config is valid."""
        assert Config(project_dir=tmp_path).validate() == []

    def test_validate_reports_every_problem(self, tmp_path: Path) -> None:
        """validate() collects all errors."""
        config = Config(
            project_dir=tmp_path,
            loop=LoopConfig(max_iterations=0, max_retries=-1),
            agent=AgentSettings(timeout=0),
            tracker=TrackerConfig(provider="github"),
        )

        errors = config.validate()

        assert len(errors) == 4
        assert any("max_iterations" in e for e in errors)
        assert any("github.repo" in e for e in errors)

    def test_ensure_valid_raises(self, tmp_path: Path) -> None:
        """ensure_valid converts errors to ConfigError."""
        config = Config(project_dir=tmp_path / "missing")

        with pytest.raises(ConfigError, match="does not exist"):
            config.ensure_valid()

    def test_config_file_property(self, tmp_path: Path) -> None:
        """Test config_file path."""
        assert Config(project_dir=tmp_path).config_file == tmp_path / "ralph.yaml"


class TestLoopConfig:
    """Tests for LoopConfig."""

    def test_from_dict_partial(self) -> None:
        """Missing keys use defaults."""
        loop = LoopConfig.from_dict({"loop": {"max_iterations": 4}})

        assert loop.max_iterations == 4
        assert loop.max_retries == 2
        assert loop.max_iterations_per_story == 10

    def test_from_dict_empty_section(self) -> None:
        """An empty loop section is allowed."""
        assert LoopConfig.from_dict({"loop": None}) == LoopConfig()
