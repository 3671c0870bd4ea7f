"""Project tracker adapters.

The orchestrator only ever sees the ProjectTracker capability set:
fetch stories, push a story's status, open an issue. Concrete providers
are picked from configuration by ``create_tracker``, and every provider
is wrapped in a TrackerBoundary so tracker trouble is logged and dropped
instead of interrupting the loop.
"""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from typing import Any, Optional

import requests

from .config import TrackerConfig
from .errors import ConfigError, IntegrationError
from .ledger import Story

logger = logging.getLogger(__name__)

GITHUB_API = "https://api.github.com"
LINEAR_API = "https://api.linear.app/graphql"

DEFAULT_PRIORITY = 100

_CHECKBOX = re.compile(r"^\s*[-*]\s+\[[ xX]\]\s+(.+?)\s*$", re.MULTILINE)
_PRIORITY_LABEL = re.compile(r"^priority[:/ -]?(\d+)$", re.IGNORECASE)


def parse_acceptance_criteria(body: str) -> list[str]:
    """Markdown checklist items in an issue body."""
    return [m.group(1) for m in _CHECKBOX.finditer(body or "")]


class ProjectTracker(ABC):
    """Capability set every tracker provider implements."""

    name = "tracker"

    @abstractmethod
    def fetch_stories(self) -> list[Story]:
        """Stories currently on the tracker."""

    @abstractmethod
    def update_story_status(self, story: Story) -> None:
        """Push a story's pass/blocked state to the tracker."""

    @abstractmethod
    def create_issue(self, title: str, body: str) -> str:
        """Open a new issue and return its identifier."""


class NullTracker(ProjectTracker):
    """Tracker used when no provider is configured."""

    name = "none"

    def fetch_stories(self) -> list[Story]:
        return []

    def update_story_status(self, story: Story) -> None:
        return None

    def create_issue(self, title: str, body: str) -> str:
        return ""


class GitHubTracker(ProjectTracker):
    """Board backed by labelled GitHub issues.

    Story ids are ``GH-<issue number>``. A story that passes closes its
    issue; a blocked story gets a ``blocked`` label and a comment.
    """

    name = "github"

    def __init__(
        self,
        repo: str,
        token: Optional[str] = None,
        label: str = "ralph",
        timeout: int = 30,
        session: Optional[requests.Session] = None,
    ):
        if not repo or "/" not in repo:
            raise ConfigError(f"GitHub repo must look like 'owner/name', got {repo!r}")
        self.repo = repo
        self.label = label
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({"Accept": "application/vnd.github+json"})
        if token:
            self.session.headers.update({"Authorization": f"Bearer {token}"})

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        url = f"{GITHUB_API}/repos/{self.repo}{path}"
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as exc:
            raise IntegrationError(f"GitHub request failed: {exc}") from exc

        if response.status_code == 401:
            raise IntegrationError("GitHub authentication failed (check GITHUB_TOKEN)")
        if response.status_code in (403, 429) and response.headers.get("X-RateLimit-Remaining") == "0":
            raise IntegrationError("GitHub API rate limit exceeded")
        if not response.ok:
            raise IntegrationError(f"GitHub API error {response.status_code}: {response.text[:500]}")
        return response.json() if response.content else None

    @staticmethod
    def issue_number(story_id: str) -> Optional[int]:
        match = re.fullmatch(r"GH-(\d+)", story_id)
        return int(match.group(1)) if match else None

    def fetch_stories(self) -> list[Story]:
        issues = self._request("GET", "/issues", params={"labels": self.label, "state": "all", "per_page": 100})
        stories = []
        for issue in issues or []:
            if "pull_request" in issue:
                continue
            priority = DEFAULT_PRIORITY
            for label in issue.get("labels", []):
                match = _PRIORITY_LABEL.match(label.get("name", ""))
                if match:
                    priority = int(match.group(1))
            body = issue.get("body") or ""
            stories.append(
                Story(
                    id=f"GH-{issue['number']}",
                    title=issue.get("title", ""),
                    description=body,
                    acceptance_criteria=parse_acceptance_criteria(body),
                    priority=priority,
                    passes=issue.get("state") == "closed",
                )
            )
        return stories

    def update_story_status(self, story: Story) -> None:
        number = self.issue_number(story.id)
        if number is None:
            logger.debug(f"Story {story.id} has no GitHub issue; skipping status push")
            return
        if story.passes:
            self._request("POST", f"/issues/{number}/comments", json={"body": "Quality gates passed."})
            self._request("PATCH", f"/issues/{number}", json={"state": "closed"})
        elif story.blocked:
            self._request("POST", f"/issues/{number}/labels", json={"labels": ["blocked"]})
            self._request("POST", f"/issues/{number}/comments", json={"body": story.notes or "Story blocked."})

    def create_issue(self, title: str, body: str) -> str:
        issue = self._request("POST", "/issues", json={"title": title, "body": body, "labels": [self.label]})
        return f"GH-{issue['number']}"


class LinearTracker(ProjectTracker):
    """Issue tracker backed by Linear's GraphQL API.

    Story ids are Linear identifiers such as ``ENG-12``.
    """

    name = "linear"

    def __init__(
        self,
        api_key: str,
        team_id: str,
        done_state_id: Optional[str] = None,
        timeout: int = 30,
        session: Optional[requests.Session] = None,
    ):
        if not api_key:
            raise ConfigError("LINEAR_API_KEY environment variable not set")
        if not team_id:
            raise ConfigError("LINEAR_TEAM_ID environment variable not set")
        self.team_id = team_id
        self.done_state_id = done_state_id
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({"Authorization": api_key, "Content-Type": "application/json"})

    def _graphql(self, query: str, variables: Optional[dict] = None) -> dict:
        try:
            response = self.session.post(
                LINEAR_API,
                json={"query": query, "variables": variables or {}},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise IntegrationError(f"Linear request failed: {exc}") from exc

        if response.status_code == 401:
            raise IntegrationError("Invalid Linear API key")
        if response.status_code == 429:
            raise IntegrationError("Linear API rate limit exceeded")
        if not response.ok:
            raise IntegrationError(f"Linear API error {response.status_code}: {response.text[:500]}")

        payload = response.json()
        if payload.get("errors"):
            raise IntegrationError(payload["errors"][0].get("message", "Unknown GraphQL error"))
        if payload.get("data") is None:
            raise IntegrationError("No data in Linear response")
        return payload["data"]

    def _issue_id(self, identifier: str) -> Optional[str]:
        data = self._graphql("query($id: String!) { issue(id: $id) { id } }", {"id": identifier})
        issue = data.get("issue")
        return issue["id"] if issue else None

    def fetch_stories(self) -> list[Story]:
        data = self._graphql(
            """query($team: String!) {
                team(id: $team) {
                    issues(first: 100) {
                        nodes { identifier title description priority state { type } }
                    }
                }
            }""",
            {"team": self.team_id},
        )
        nodes = ((data.get("team") or {}).get("issues") or {}).get("nodes", [])
        stories = []
        for node in nodes:
            description = node.get("description") or ""
            # Linear priority 0 means "no priority"
            priority = node.get("priority") or DEFAULT_PRIORITY
            stories.append(
                Story(
                    id=node["identifier"],
                    title=node.get("title", ""),
                    description=description,
                    acceptance_criteria=parse_acceptance_criteria(description),
                    priority=int(priority),
                    passes=(node.get("state") or {}).get("type") == "completed",
                )
            )
        return stories

    def update_story_status(self, story: Story) -> None:
        if not (story.passes or story.blocked):
            return
        issue_id = self._issue_id(story.id)
        if issue_id is None:
            logger.debug(f"Story {story.id} not found in Linear; skipping status push")
            return
        body = "Quality gates passed." if story.passes else (story.notes or "Story blocked.")
        self._graphql(
            "mutation($id: String!, $body: String!) { commentCreate(input: {issueId: $id, body: $body}) { success } }",
            {"id": issue_id, "body": body},
        )
        if story.passes and self.done_state_id:
            self._graphql(
                "mutation($id: String!, $state: String!) { issueUpdate(id: $id, input: {stateId: $state}) { success } }",
                {"id": issue_id, "state": self.done_state_id},
            )

    def create_issue(self, title: str, body: str) -> str:
        data = self._graphql(
            """mutation($team: String!, $title: String!, $body: String) {
                issueCreate(input: {teamId: $team, title: $title, description: $body}) {
                    success
                    issue { identifier }
                }
            }""",
            {"team": self.team_id, "title": title, "body": body},
        )
        result = data.get("issueCreate") or {}
        if not result.get("success") or not result.get("issue"):
            raise IntegrationError("Linear issue creation failed")
        return result["issue"]["identifier"]


class TrackerBoundary:
    """Wraps a provider so no tracker failure escapes into the loop."""

    def __init__(self, tracker: ProjectTracker):
        self.tracker = tracker

    @property
    def name(self) -> str:
        return self.tracker.name

    def fetch_stories(self) -> list[Story]:
        try:
            return self.tracker.fetch_stories()
        except Exception as exc:
            self._report("fetch_stories", exc)
            return []

    def update_story_status(self, story: Story) -> bool:
        try:
            self.tracker.update_story_status(story)
            return True
        except Exception as exc:
            self._report(f"update_story_status({story.id})", exc)
            return False

    def create_issue(self, title: str, body: str) -> Optional[str]:
        try:
            return self.tracker.create_issue(title, body)
        except Exception as exc:
            self._report("create_issue", exc)
            return None

    def _report(self, operation: str, exc: Exception) -> None:
        error = exc if isinstance(exc, IntegrationError) else IntegrationError(str(exc))
        logger.warning(f"Tracker '{self.tracker.name}' {operation} failed: {error}")


def create_tracker(config: TrackerConfig, session: Optional[requests.Session] = None) -> ProjectTracker:
    """Instantiate the provider named in the tracker config.

    Raises:
        ConfigError: Unknown provider or missing provider settings.
    """
    if config.provider == "none":
        return NullTracker()
    if config.provider == "github":
        return GitHubTracker(
            repo=config.github.repo,
            token=config.github.token,
            label=config.github.label,
            timeout=config.timeout,
            session=session,
        )
    if config.provider == "linear":
        return LinearTracker(
            api_key=config.linear.api_key or "",
            team_id=config.linear.team_id,
            done_state_id=config.linear.done_state_id,
            timeout=config.timeout,
            session=session,
        )
    raise ConfigError(f"Unknown tracker provider: {config.provider}")
