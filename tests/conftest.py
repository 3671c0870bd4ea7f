"""Shared test fixtures for ralphloop tests."""

from __future__ import annotations

from pathlib import Path

import pytest

from ralphloop.config import Config
from ralphloop.gates import GateDefinition, QualityProfile
from ralphloop.ledger import Ledger, Story, save_ledger


@pytest.fixture(autouse=True)
def no_dotenv(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep a developer's .env out of the tests."""
    monkeypatch.setattr("ralphloop.config.load_dotenv", lambda: None)
    for name in (
        "RALPH_MAX_ITERATIONS",
        "RALPH_MAX_RETRIES",
        "RALPH_AGENT_TIMEOUT",
        "RALPH_AGENT",
        "RALPH_AGENT_MODEL",
        "RALPH_PROFILE",
        "RALPH_LOG_LEVEL",
        "RALPH_MOCK_MODE",
        "GITHUB_TOKEN",
        "LINEAR_API_KEY",
        "LINEAR_TEAM_ID",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    """A project directory with a two-story ledger."""
    ledger = Ledger(
        project="demo",
        stories=[
            Story(
                id="US-001",
                title="Add login form",
                description="Users can log in with email and password.",
                acceptance_criteria=["Form renders", "Invalid password shows an error"],
                priority=1,
            ),
            Story(
                id="US-002",
                title="Add logout button",
                description="Users can log out.",
                acceptance_criteria=["Button clears the session"],
                priority=2,
            ),
        ],
    )
    save_ledger(ledger, tmp_path / "prd.json")
    return tmp_path


@pytest.fixture
def config(project_dir: Path) -> Config:
    """Config for the sample project, with no gates and a mock agent."""
    cfg = Config(project_dir=project_dir, profile="minimal", mock_mode=True)
    cfg.loop.max_iterations = 5
    return cfg


@pytest.fixture
def passing_profile() -> QualityProfile:
    """Profile whose single gate always passes."""
    return QualityProfile(name="ok", gates=[GateDefinition(name="true", command="true")])


@pytest.fixture
def failing_profile() -> QualityProfile:
    """Profile whose single gate always fails."""
    return QualityProfile(name="broken", gates=[GateDefinition(name="false", command="false")])
