"""audit-report: aggregate one agent's stage results and escalate failures.

Runs for every admitted agent whatever happened downstream. Problems in this
stage (e.g. the tracking issue cannot be created) are logged only; they never
turn a finished run into a failed one.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

import httpx
from pydantic import BaseModel, Field

from repo_agents.actions import append_step_summary
from repo_agents.artifacts import AUDIT_FILE, EXECUTION_FILE, VERDICT_FILE, ArtifactStore
from repo_agents.config import Settings
from repo_agents.github_client import GitHubClient
from repo_agents.models import AgentDefinition, ValidationVerdict
from repo_agents.stages.execute import ExecutionResult, ExecutionStatus
from repo_agents.stages.outputs import OutputResult, OutputStatus
from repo_agents.stages.progress import ProgressReporter

logger = logging.getLogger(__name__)

ISSUE_TITLE_PREFIX = "Agent failure: "


class AuditRecord(BaseModel):
    agent: str
    slug: str
    run_url: str | None = None
    admitted: bool = False
    skip_reason: str | None = None
    execution_status: ExecutionStatus | None = None
    execution_error: str | None = None
    outputs: list[OutputResult] = Field(default_factory=list)
    failures: list[str] = Field(default_factory=list)
    metrics: dict = Field(default_factory=dict)
    tracking_issue: int | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def failed(self) -> bool:
        return bool(self.failures)


def build_record(
    agent: AgentDefinition,
    verdict: ValidationVerdict | None,
    execution: ExecutionResult | None,
    outputs: list[OutputResult],
    run_url: str | None = None,
) -> AuditRecord:
    """Combine stage artifacts into one record; missing artifacts count as failures."""
    record = AuditRecord(agent=agent.name, slug=agent.slug, run_url=run_url, outputs=outputs)

    if verdict is None:
        record.failures.append("validation: no verdict recorded")
        return record
    record.admitted = verdict.should_run
    record.skip_reason = verdict.skip_reason
    if not verdict.should_run:
        return record

    if execution is None:
        record.failures.append("execution: no result recorded")
    else:
        record.execution_status = execution.status
        record.execution_error = execution.error
        record.metrics = dict(execution.metrics)
        if execution.status == ExecutionStatus.FAILURE:
            record.failures.append(f"execution: {execution.error or 'failed'}")

    for result in outputs:
        if result.status == OutputStatus.FAILURE:
            detail = "; ".join(result.errors) or "failed"
            record.failures.append(f"{result.kind.value}: {detail}")
    return record


def summary_markdown(record: AuditRecord) -> str:
    icon = "❌" if record.failed else ("✅" if record.admitted else "⏭️")
    lines = [f"## {icon} {record.agent}", ""]
    if not record.admitted:
        lines.append(f"Skipped: {record.skip_reason or 'not admitted'}")
    else:
        status = record.execution_status.value if record.execution_status else "missing"
        lines.append(f"- Execution: **{status}**")
        cost = record.metrics.get("total_cost_usd")
        if cost is not None:
            lines.append(f"- Cost: ${cost:.4f}")
        for result in record.outputs:
            lines.append(f"- `{result.kind.value}`: {result.status.value} ({result.applied} applied)")
    if record.failures:
        lines += ["", "### Failures", ""]
        lines += [f"- {failure}" for failure in record.failures]
    if record.run_url:
        lines += ["", f"[Workflow run]({record.run_url})"]
    return "\n".join(lines) + "\n"


def issue_body(record: AuditRecord) -> str:
    lines = [
        f"The **{record.agent}** agent failed.",
        "",
        *[f"- {failure}" for failure in record.failures],
    ]
    if record.run_url:
        lines += ["", f"Run: {record.run_url}"]
    return "\n".join(lines)


async def open_tracking_issue(
    github: GitHubClient, owner: str, repo: str, agent: AgentDefinition, record: AuditRecord
) -> int | None:
    """Comment on the agent's open failure issue, or create one."""
    title = f"{ISSUE_TITLE_PREFIX}{agent.name}"
    found = await github.search_issues(
        f'repo:{owner}/{repo} is:issue is:open in:title "{title}"', per_page=10
    )
    for item in found.get("items", []):
        if item.get("title") == title:
            number = item["number"]
            await github.comment_on_issue(owner, repo, number, issue_body(record))
            logger.info("Commented on existing failure issue #%s", number)
            return number

    issue = await github.create_issue(
        owner,
        repo,
        title=title,
        body=issue_body(record),
        labels=list(agent.audit.labels),
        assignees=list(agent.audit.assignees),
    )
    logger.info("Created failure issue #%s for %s", issue.get("number"), agent.name)
    return issue.get("number")


async def run_audit(
    agent: AgentDefinition,
    store: ArtifactStore,
    settings: Settings,
    *,
    github: GitHubClient | None = None,
    progress: ProgressReporter | None = None,
) -> AuditRecord:
    """Write ``audit.json`` and the step summary; escalate terminal failures.

    The agent's progress comment, if it has one, becomes the final summary.
    """
    slug = agent.slug
    verdict = store.read(slug, VERDICT_FILE, ValidationVerdict)
    record = build_record(
        agent,
        verdict,
        store.read(slug, EXECUTION_FILE, ExecutionResult),
        store.read_all(slug, "outputs-", OutputResult),
        run_url=settings.run_url,
    )

    if record.failed and agent.audit.create_issues and github is not None:
        try:
            owner, repo = settings.owner_repo
            record.tracking_issue = await open_tracking_issue(github, owner, repo, agent, record)
        except (httpx.HTTPError, ValueError, RuntimeError) as exc:
            logger.error("Could not open failure issue for %s: %s", agent.name, exc)

    summary = summary_markdown(record)
    if progress is not None:
        await progress.finish(verdict, slug, summary)

    store.write(slug, AUDIT_FILE, record)
    if not append_step_summary(summary):
        logger.info("Audit for %s: %s", agent.name, "failed" if record.failed else "ok")
    return record
