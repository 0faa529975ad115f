"""agent-execution: collect context, run the AI backend, capture its proposals.

Both collaborators sit behind protocols so the stage can be driven by fakes:

- :class:`ContextCollector` gathers repository data for agents with a
  ``context`` block, or reports that too little was found to bother running.
- :class:`AgentExecutor` runs the backend and returns its free-form output
  together with the mutations it proposes.

The backend proposes a mutation by writing ``<kind>.json`` (or
``<kind>-<n>.json``) into the outputs directory; nothing is applied here.
"""

from __future__ import annotations

import asyncio
import enum
import json
import logging
import os
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol

import httpx
from pydantic import BaseModel, Field

from repo_agents.artifacts import EXECUTION_FILE, ArtifactStore
from repo_agents.errors import ExecutionFailure
from repo_agents.github_client import GitHubClient
from repo_agents.models import AgentDefinition, OutputKind, RepositoryEvent, ValidationVerdict
from repo_agents.stages.progress import ProgressReporter, ProgressStage, ProgressState, ProgressStatus

logger = logging.getLogger(__name__)

DEFAULT_MIN_ITEMS = 1

# Write is granted only to agents that can propose mutations
READ_TOOLS = "Read,Glob,Grep"
WRITE_TOOLS = "Write,Read,Glob,Grep"


# ── Records ──────────────────────────────────────────────────────────────────


class ExecutionStatus(str, enum.Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"


class ProposedMutation(BaseModel):
    """One platform action the backend asked for, not yet validated."""

    kind: OutputKind
    data: dict[str, Any] = Field(default_factory=dict)
    source: str = ""


class ContextBundle(BaseModel):
    text: str = ""
    item_count: int = 0
    below_threshold: bool = False
    reason: str | None = None


class ExecutionResult(BaseModel):
    agent: str
    status: ExecutionStatus
    target_number: int | None = None
    output: str = ""
    mutations: list[ProposedMutation] = Field(default_factory=list)
    skip_reason: str | None = None
    error: str | None = None
    metrics: dict[str, Any] = Field(default_factory=dict)
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: datetime | None = None

    def mutations_of(self, kind: OutputKind | str) -> list[ProposedMutation]:
        kind = OutputKind(kind)
        return [m for m in self.mutations if m.kind == kind]


# ── Collaborator protocols ───────────────────────────────────────────────────


class ContextCollector(Protocol):
    async def collect(self, agent: AgentDefinition, event: RepositoryEvent) -> ContextBundle:
        ...


class AgentExecutor(Protocol):
    async def execute(
        self, agent: AgentDefinition, prompt: str, outputs_dir: Path
    ) -> tuple[str, dict[str, Any]]:
        """Run the backend; return its output text and metrics.

        Raises:
            ExecutionFailure: If the backend fails or times out.
        """
        ...


# ── Prompt and proposals ─────────────────────────────────────────────────────


def build_prompt(
    agent: AgentDefinition,
    event_snapshot: dict[str, Any] | None,
    context: ContextBundle | None,
    outputs_dir: Path,
) -> str:
    """Instructions, event snapshot, context and output conventions, in order."""
    sections = [f"# Agent: {agent.name}", ""]
    if event_snapshot:
        sections += [
            "## Triggering event",
            "",
            "```json",
            json.dumps(event_snapshot, indent=2, sort_keys=True),
            "```",
            "",
        ]
    if context and context.text:
        sections += ["## Repository context", "", context.text, ""]
    if agent.outputs:
        sections += [
            "## Available outputs",
            "",
            f"Propose actions by writing JSON files to `{outputs_dir}`.",
            "Name each file `<kind>.json`, or `<kind>-<n>.json` for several of one kind.",
            "",
        ]
        for cap in agent.outputs:
            limit = f" (at most {cap.max})" if cap.max else ""
            sections.append(f"- `{cap.kind.value}`{limit}")
        if agent.allowed_paths:
            sections += ["", "File changes are limited to: " + ", ".join(agent.allowed_paths)]
        sections.append("")
    sections += ["---", "", agent.instructions]
    return "\n".join(sections)


def collect_proposals(outputs_dir: Path, declared: list[OutputKind]) -> list[ProposedMutation]:
    """Read ``<kind>[-n].json`` files for declared kinds, in name order.

    A file may hold one object or a list of objects. Unreadable files are
    logged and ignored; files for undeclared kinds are ignored.
    """
    if not outputs_dir.is_dir():
        return []
    mutations: list[ProposedMutation] = []
    for kind in declared:
        pattern = re.compile(rf"^{re.escape(kind.value)}(-\d+)?\.json$")
        for path in sorted(outputs_dir.iterdir()):
            if not pattern.match(path.name):
                continue
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as exc:
                logger.warning("Ignoring unreadable output file %s: %s", path, exc)
                continue
            items = data if isinstance(data, list) else [data]
            for item in items:
                if isinstance(item, dict):
                    mutations.append(ProposedMutation(kind=kind, data=item, source=path.name))
                else:
                    logger.warning("Ignoring non-object entry in %s", path)
    return mutations


# ── Claude Code executor ─────────────────────────────────────────────────────


class ClaudeCodeExecutor:
    """Runs the ``claude`` CLI in print mode with JSON output."""

    def __init__(self, command: str = "claude", *, timeout_minutes: int = 30, cwd: str | Path = "."):
        self.command = command
        self.timeout_minutes = timeout_minutes
        self.cwd = Path(cwd)

    def args(self, agent: AgentDefinition, outputs_dir: Path | None = None) -> list[str]:
        """Command line for *agent*.

        Agents with outputs get the Write tool and, since the outputs
        directory usually lies outside the working tree, access to it.
        """
        tools = WRITE_TOOLS if agent.outputs else READ_TOOLS
        args = [self.command, "--print", "--output-format", "json", "--allowedTools", tools]
        if agent.outputs and outputs_dir is not None:
            args += ["--add-dir", str(outputs_dir.resolve())]
        if agent.claude.model:
            args += ["--model", agent.claude.model]
        return args

    def env(self, agent: AgentDefinition) -> dict[str, str]:
        env = dict(os.environ)
        if agent.claude.max_tokens:
            env["CLAUDE_CODE_MAX_OUTPUT_TOKENS"] = str(agent.claude.max_tokens)
        return env

    async def execute(
        self, agent: AgentDefinition, prompt: str, outputs_dir: Path
    ) -> tuple[str, dict[str, Any]]:
        outputs_dir.mkdir(parents=True, exist_ok=True)
        try:
            proc = await asyncio.create_subprocess_exec(
                *self.args(agent, outputs_dir),
                cwd=str(self.cwd),
                env=self.env(agent),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise ExecutionFailure(f"Could not start {self.command}: {exc}") from exc
        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                proc.communicate(prompt.encode()), timeout=self.timeout_minutes * 60
            )
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise ExecutionFailure(f"Agent timed out after {self.timeout_minutes} minute(s)")

        stdout = (stdout_bytes or b"").decode()
        stderr = (stderr_bytes or b"").decode()
        try:
            payload = json.loads(stdout) if stdout.strip() else {}
        except json.JSONDecodeError:
            payload = {"result": stdout}
        if not isinstance(payload, dict):
            payload = {"result": stdout}

        if proc.returncode or payload.get("is_error"):
            detail = stderr.strip() or str(payload.get("result", ""))[:500]
            raise ExecutionFailure(f"claude exited with {proc.returncode}: {detail}")

        metrics = {
            key: payload[key]
            for key in ("total_cost_usd", "num_turns", "duration_ms", "session_id")
            if key in payload
        }
        return str(payload.get("result", "")), metrics


# ── GitHub context collector ─────────────────────────────────────────────────


class GitHubContextCollector:
    """Collects issue and pull request listings for the ``context`` block.

    Other sources in the block are left to dedicated collectors and are
    reported in the debug log only.
    """

    def __init__(self, github: GitHubClient, owner: str, repo: str):
        self.github = github
        self.owner = owner
        self.repo = repo

    async def _issues(self, cfg: dict[str, Any], since: str | None) -> list[dict]:
        labels = cfg.get("labels")
        issues = await self.github.list_issues(
            self.owner,
            self.repo,
            labels=",".join(labels) if labels else None,
            state=cfg.get("states", ["open"])[0] if cfg.get("states") else "open",
            since=since,
            per_page=min(cfg.get("limit") or 100, 100),
        )
        return issues

    async def _pull_requests(self, cfg: dict[str, Any]) -> list[dict]:
        state = cfg.get("states", ["open"])[0] if cfg.get("states") else "open"
        prs = await self.github.list_pull_requests(
            self.owner, self.repo, state=state, per_page=min(cfg.get("limit") or 100, 100)
        )
        labels = set(cfg.get("labels") or [])
        if labels:
            prs = [p for p in prs if labels & {lbl["name"] for lbl in p.get("labels", [])}]
        return prs

    async def collect(self, agent: AgentDefinition, event: RepositoryEvent) -> ContextBundle:
        context = agent.context
        if context is None:
            return ContextBundle()

        sections: list[str] = []
        total = 0
        if context.issues is not None:
            issues = await self._issues(context.issues.model_dump(exclude_none=True), context.since)
            total += len(issues)
            sections.append(
                "### Issues\n\n"
                + "\n".join(f"- #{i['number']}: {i.get('title', '')}" for i in issues)
            )
        if context.pull_requests is not None:
            prs = await self._pull_requests(context.pull_requests.model_dump(exclude_none=True))
            total += len(prs)
            sections.append(
                "### Pull requests\n\n"
                + "\n".join(f"- #{p['number']}: {p.get('title', '')}" for p in prs)
            )

        other = [
            name
            for name, value in context
            if value is not None and name not in ("issues", "pull_requests", "since", "min_items")
        ]
        if other:
            logger.debug("Context sources without a collector: %s", ", ".join(other))

        min_items = DEFAULT_MIN_ITEMS if context.min_items is None else context.min_items
        if total < min_items:
            return ContextBundle(
                item_count=total,
                below_threshold=True,
                reason=f"Collected {total} item(s), but minimum is {min_items}",
            )
        return ContextBundle(text="\n\n".join(sections), item_count=total)


# ── Stage ────────────────────────────────────────────────────────────────────


async def run_execute(
    agent: AgentDefinition,
    verdict: ValidationVerdict | None,
    store: ArtifactStore,
    executor: AgentExecutor,
    *,
    collector: ContextCollector | None = None,
    outputs_dir: Path | None = None,
    progress: ProgressReporter | None = None,
) -> ExecutionResult:
    """Execute one admitted agent and write ``execution.json``.

    Returns a ``skipped`` result without invoking the backend when the
    verdict says not to run or the context is below its threshold. Backend
    failures are recorded as ``failure`` results, not raised.
    """
    outputs_dir = outputs_dir or store.agent_dir(agent.slug) / "proposals"
    target = verdict.target_number if verdict else None

    def record(status: ExecutionStatus, **fields: Any) -> ExecutionResult:
        result = ExecutionResult(
            agent=agent.name,
            status=status,
            target_number=target,
            finished_at=datetime.now(timezone.utc),
            **fields,
        )
        store.write(agent.slug, EXECUTION_FILE, result)
        return result

    if verdict is None or not verdict.should_run:
        reason = verdict.skip_reason if verdict else "no verdict recorded"
        return record(ExecutionStatus.SKIPPED, skip_reason=reason)

    event = RepositoryEvent.from_payload(verdict.event_name or "", verdict.event_snapshot or {})
    state = ProgressState.initial(agent)

    async def report(stage: ProgressStage, status: ProgressStatus, error: str | None = None) -> None:
        nonlocal state
        state = state.mark(stage, status, error)
        if progress is not None:
            await progress.report(verdict, state)

    context = None
    if agent.context is not None and collector is not None:
        try:
            context = await collector.collect(agent, event)
        except httpx.HTTPError as exc:
            logger.error("Context collection for %s failed: %s", agent.name, exc)
            await report(ProgressStage.CONTEXT, ProgressStatus.FAILED, str(exc))
            return record(ExecutionStatus.FAILURE, error=f"Context collection failed: {exc}")
        if context.below_threshold:
            logger.info("Skipping %s: %s", agent.name, context.reason)
            state = state.mark(ProgressStage.CONTEXT, ProgressStatus.SKIPPED)
            await report(ProgressStage.AGENT, ProgressStatus.SKIPPED)
            return record(ExecutionStatus.SKIPPED, skip_reason=context.reason)
        state = state.mark(ProgressStage.CONTEXT, ProgressStatus.SUCCESS)

    prompt = build_prompt(agent, verdict.event_snapshot, context, outputs_dir)
    logger.info("Executing agent %s", agent.name)
    await report(ProgressStage.AGENT, ProgressStatus.RUNNING)
    try:
        output, metrics = await executor.execute(agent, prompt, outputs_dir)
    except ExecutionFailure as exc:
        logger.error("Agent %s failed: %s", agent.name, exc)
        await report(ProgressStage.AGENT, ProgressStatus.FAILED, str(exc))
        return record(ExecutionStatus.FAILURE, error=str(exc))

    mutations = collect_proposals(outputs_dir, [cap.kind for cap in agent.outputs])
    logger.info("Agent %s proposed %d mutation(s)", agent.name, len(mutations))
    await report(ProgressStage.AGENT, ProgressStatus.SUCCESS)
    return record(ExecutionStatus.SUCCESS, output=output, mutations=mutations, metrics=metrics)
