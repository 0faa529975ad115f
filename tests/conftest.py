"""Shared fixtures: agent files, events and a fake platform.

Provides:
- ``write_agent`` — write an agent Markdown file under a tmp agents dir
- ``make_agent`` — parse front-matter text straight into an AgentDefinition
- ``make_event`` — build a RepositoryEvent from a few fields
- ``FakePlatform`` — in-memory PlatformQueries with call recording
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

import httpx
import pytest

from repo_agents.models import AgentDefinition, RepositoryEvent
from repo_agents.parser import parse_agent

ISSUE_AGENT = """\
---
name: Issue Triage
on:
  issues:
    types: [opened, labeled]
permissions:
  issues: write
outputs:
  add-label: true
  add-comment:
    max: 2
---
Read the issue and label it.
"""


# ── Definitions ──────────────────────────────────────────────────────────────


def agent_text(frontmatter: str, body: str = "Do the thing.") -> str:
    return f"---\n{frontmatter.strip()}\n---\n{body}\n"


@pytest.fixture
def agents_dir(tmp_path: Path) -> Path:
    d = tmp_path / ".github" / "agents"
    d.mkdir(parents=True)
    return d


@pytest.fixture
def write_agent(agents_dir: Path):
    """Write ``<filename>`` with the given front-matter; returns its path."""

    def _write(filename: str, frontmatter: str, body: str = "Do the thing.") -> Path:
        path = agents_dir / filename
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(agent_text(frontmatter, body))
        return path

    return _write


@pytest.fixture
def make_agent():
    """Parse front-matter text into a definition; fails the test on errors."""

    def _make(frontmatter: str, body: str = "Do the thing.", path: str = "agent.md") -> AgentDefinition:
        result = parse_agent(agent_text(frontmatter, body), path=path)
        assert result.definition is not None, [str(d) for d in result.diagnostics]
        return result.definition

    return _make


# ── Events ───────────────────────────────────────────────────────────────────


@pytest.fixture
def make_event():
    def _make(
        event_name: str = "issues",
        action: str | None = "opened",
        *,
        actor: str = "alice",
        number: int | None = 42,
        labels: list[str] | None = None,
        subject: str = "issue",
        extra: dict | None = None,
        dispatch_agent: str | None = None,
    ) -> RepositoryEvent:
        payload: dict = {"sender": {"login": actor}}
        if action is not None:
            payload["action"] = action
        if number is not None:
            payload[subject] = {
                "number": number,
                "state": "open",
                "labels": [{"name": name} for name in labels or []],
            }
        payload.update(extra or {})
        return RepositoryEvent.from_payload(event_name, payload, dispatch_agent=dispatch_agent)

    return _make


# ── Fake platform ────────────────────────────────────────────────────────────


@dataclass
class FakePlatform:
    """In-memory :class:`~repo_agents.platform.PlatformQueries`.

    Set ``fail`` to a method name to make that query raise a transport error.
    """

    labels: dict[int, list[str]] = field(default_factory=dict)
    teams: dict[str, set[str]] = field(default_factory=dict)
    blockers: dict[int, list[dict]] = field(default_factory=dict)
    blocking: dict[int, list[dict]] = field(default_factory=dict)
    last_runs: dict[str, datetime] = field(default_factory=dict)
    open_prs: dict[str, int] = field(default_factory=dict)
    fail: set[str] = field(default_factory=set)
    calls: list[tuple] = field(default_factory=list)

    def _record(self, name: str, *args) -> None:
        self.calls.append((name, *args))
        if name in self.fail:
            raise httpx.ConnectError(f"{name} unavailable")

    async def get_labels(self, number: int) -> list[str]:
        self._record("get_labels", number)
        return list(self.labels.get(number, []))

    async def is_team_member(self, team: str, username: str) -> bool:
        self._record("is_team_member", team, username)
        return username in self.teams.get(team, set())

    async def open_blockers(self, number: int) -> list[dict]:
        self._record("open_blockers", number)
        return [b for b in self.blockers.get(number, []) if b.get("state", "open") == "open"]

    async def blocked_issues(self, number: int) -> list[dict]:
        self._record("blocked_issues", number)
        return [dict(issue) for issue in self.blocking.get(number, [])]

    async def last_run_started(self, agent_slug: str) -> datetime | None:
        self._record("last_run_started", agent_slug)
        return self.last_runs.get(agent_slug)

    async def count_open_prs(self, author: str) -> int:
        self._record("count_open_prs", author)
        return self.open_prs.get(author, 0)

    def called(self, name: str) -> bool:
        return any(call[0] == name for call in self.calls)


@pytest.fixture
def platform() -> FakePlatform:
    return FakePlatform()
