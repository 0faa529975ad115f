"""Progress comments on the issue or pull request that triggered an agent.

The comment is created when the gate admits the agent, and its id rides on
the verdict so the execution and audit jobs can edit it in place. Audit
replaces the table with the final summary. Progress is best-effort: API
errors are logged and never change a stage's result.
"""

from __future__ import annotations

import enum
import logging

import httpx
from pydantic import BaseModel, Field

from repo_agents.github_client import GitHubClient
from repo_agents.models import AgentDefinition, ValidationVerdict

logger = logging.getLogger(__name__)


class ProgressStage(str, enum.Enum):
    VALIDATION = "validation"
    CONTEXT = "context"
    AGENT = "agent"
    OUTPUTS = "outputs"


class ProgressStatus(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


STATUS_ICONS = {
    ProgressStatus.PENDING: "⏳",
    ProgressStatus.RUNNING: "🔄",
    ProgressStatus.SUCCESS: "✅",
    ProgressStatus.FAILED: "❌",
    ProgressStatus.SKIPPED: "⏭️",
}


class ProgressState(BaseModel):
    agent: str
    slug: str
    stages: dict[ProgressStage, ProgressStatus] = Field(default_factory=dict)
    error: str | None = None

    @classmethod
    def initial(cls, agent: AgentDefinition) -> ProgressState:
        """Validation has passed; everything after it is still to come."""
        return cls(
            agent=agent.name,
            slug=agent.slug,
            stages={
                ProgressStage.VALIDATION: ProgressStatus.SUCCESS,
                ProgressStage.CONTEXT: (
                    ProgressStatus.PENDING if agent.context is not None else ProgressStatus.SKIPPED
                ),
                ProgressStage.AGENT: ProgressStatus.PENDING,
                ProgressStage.OUTPUTS: (
                    ProgressStatus.PENDING if agent.outputs else ProgressStatus.SKIPPED
                ),
            },
        )

    def mark(self, stage: ProgressStage, status: ProgressStatus, error: str | None = None) -> ProgressState:
        stages = {**self.stages, stage: status}
        return self.model_copy(update={"stages": stages, "error": error or self.error})

    @property
    def failed(self) -> bool:
        return ProgressStatus.FAILED in self.stages.values()


def progress_marker(run_id: str | None, slug: str) -> str:
    return f"<!-- repo-agents-progress:{run_id or 'local'}:{slug} -->"


def format_progress(state: ProgressState, run_id: str | None = None, run_url: str | None = None) -> str:
    icon = "❌" if state.failed else "🤖"
    lines = [
        progress_marker(run_id, state.slug),
        f"### {icon} Agent: {state.agent}",
        "",
        "| Stage | Status |",
        "|-------|--------|",
    ]
    for stage in ProgressStage:
        if stage in state.stages:
            lines.append(f"| {stage.value.capitalize()} | {STATUS_ICONS[state.stages[stage]]} |")
    if state.error:
        lines += ["", f"> **Error:** {state.error}"]
    if run_url:
        lines += ["", "---", f"*[View workflow run]({run_url})*"]
    return "\n".join(lines)


class ProgressReporter:
    """Creates and edits progress comments for one workflow run."""

    def __init__(
        self,
        github: GitHubClient,
        owner: str,
        repo: str,
        *,
        run_id: str | None = None,
        run_url: str | None = None,
    ):
        self.github = github
        self.owner = owner
        self.repo = repo
        self.run_id = run_id
        self.run_url = run_url

    async def start(self, agent: AgentDefinition, verdict: ValidationVerdict) -> int | None:
        """Post the initial comment for an admitted agent; returns its id."""
        if not agent.use_progress_comment or verdict.target_number is None:
            return None
        body = format_progress(ProgressState.initial(agent), self.run_id, self.run_url)
        try:
            comment = await self.github.comment_on_issue(
                self.owner, self.repo, verdict.target_number, body
            )
        except (httpx.HTTPError, RuntimeError) as exc:
            logger.warning("Could not create progress comment for %s: %s", agent.name, exc)
            return None
        logger.info("Created progress comment %s on #%s", comment.get("id"), verdict.target_number)
        return comment.get("id")

    async def report(self, verdict: ValidationVerdict | None, state: ProgressState) -> None:
        if verdict is None or verdict.progress_comment_id is None:
            return
        await self._edit(verdict.progress_comment_id, format_progress(state, self.run_id, self.run_url))

    async def finish(self, verdict: ValidationVerdict | None, slug: str, summary: str) -> None:
        """Replace the table with the final summary."""
        if verdict is None or verdict.progress_comment_id is None:
            return
        await self._edit(verdict.progress_comment_id, f"{progress_marker(self.run_id, slug)}\n{summary}")

    async def _edit(self, comment_id: int, body: str) -> None:
        try:
            await self.github.update_comment(self.owner, self.repo, comment_id, body)
        except (httpx.HTTPError, RuntimeError) as exc:
            logger.warning("Could not update progress comment %s: %s", comment_id, exc)
