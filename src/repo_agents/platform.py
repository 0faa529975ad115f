"""Read-only platform queries used by the router and the admission gate.

:class:`PlatformQueries` is the seam: :class:`GitHubPlatform` answers the
queries from the GitHub REST API, tests substitute in-memory fakes.
Answers are best-effort fresh; nothing here caches across invocations.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Protocol, runtime_checkable

from repo_agents.github_client import GitHubClient

logger = logging.getLogger(__name__)

RUN_MARKER_PREFIX = "run-marker--"


def run_marker_name(slug: str) -> str:
    """Artifact name recording that an agent was admitted in some run."""
    return f"{RUN_MARKER_PREFIX}{slug}"


def search_author(identity: str) -> str:
    """Search qualifier value for a login; Apps search as ``app/<slug>``."""
    if identity.endswith("[bot]"):
        return f"app/{identity[: -len('[bot]')]}"
    return identity


def _parse_timestamp(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


@runtime_checkable
class PlatformQueries(Protocol):
    """Read-only questions the router and gate ask the platform."""

    async def get_labels(self, number: int) -> list[str]:
        """Current labels on an issue or pull request."""
        ...

    async def is_team_member(self, team: str, username: str) -> bool:
        """Whether *username* is an active member of *team* (``org/slug`` or ``slug``)."""
        ...

    async def open_blockers(self, number: int) -> list[dict]:
        """Open issues blocking issue *number*."""
        ...

    async def blocked_issues(self, number: int) -> list[dict]:
        """Issues that issue *number* blocks, in any state."""
        ...

    async def last_run_started(self, agent_slug: str) -> datetime | None:
        """Start time of the most recent prior admitted run of an agent."""
        ...

    async def count_open_prs(self, author: str) -> int:
        """Open pull requests authored by *author* in the repository."""
        ...


class GitHubPlatform:
    """:class:`PlatformQueries` backed by the GitHub REST API."""

    def __init__(self, github: GitHubClient, owner: str, repo: str, *, run_id: str | None = None):
        self.github = github
        self.owner = owner
        self.repo = repo
        self.run_id = run_id

    async def get_labels(self, number: int) -> list[str]:
        return await self.github.get_labels(self.owner, self.repo, number)

    async def is_team_member(self, team: str, username: str) -> bool:
        org, _, slug = team.rpartition("/")
        membership = await self.github.get_team_membership(org or self.owner, slug, username)
        return bool(membership) and membership.get("state") == "active"

    async def open_blockers(self, number: int) -> list[dict]:
        blockers = await self.github.list_blocked_by(self.owner, self.repo, number)
        return [b for b in blockers if b.get("state") == "open"]

    async def blocked_issues(self, number: int) -> list[dict]:
        return await self.github.list_blocking(self.owner, self.repo, number)

    async def last_run_started(self, agent_slug: str) -> datetime | None:
        artifacts = await self.github.list_artifacts(
            self.owner, self.repo, name=run_marker_name(agent_slug)
        )
        times = []
        for artifact in artifacts:
            run = artifact.get("workflow_run") or {}
            if self.run_id and str(run.get("id")) == str(self.run_id):
                continue
            if artifact.get("created_at"):
                times.append(_parse_timestamp(artifact["created_at"]))
        return max(times, default=None)

    async def count_open_prs(self, author: str) -> int:
        query = f"repo:{self.owner}/{self.repo} is:pr is:open author:{search_author(author)}"
        result = await self.github.search_issues(query)
        return int(result.get("total_count", 0))
