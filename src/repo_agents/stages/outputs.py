"""execute-outputs: validate proposed mutations and apply them.

Every proposal of one kind is checked against the agent's declared
:class:`~repo_agents.models.OutputCapability` before anything is applied:

- the kind must be declared;
- the number of proposals must not exceed ``max``;
- every file path a proposal touches must match ``allowed-paths``.

If any check fails nothing of that kind is applied. Accepted proposals go to
the handler registered for the kind; ``sign`` is passed through to it.
"""

from __future__ import annotations

import asyncio
import enum
import fnmatch
import logging
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import httpx
from pydantic import BaseModel, Field

from repo_agents.artifacts import ArtifactStore, outputs_file
from repo_agents.errors import OutputFailure
from repo_agents.github_client import GitHubClient
from repo_agents.models import AgentDefinition, OutputCapability, OutputKind
from repo_agents.stages.execute import ExecutionResult, ExecutionStatus, ProposedMutation

logger = logging.getLogger(__name__)

BRANCH_PATTERN = re.compile(r"^[A-Za-z0-9/_.-]+$")


# ── Records ──────────────────────────────────────────────────────────────────


class OutputStatus(str, enum.Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"


class OutputResult(BaseModel):
    agent: str
    kind: OutputKind
    status: OutputStatus
    applied: int = 0
    errors: list[str] = Field(default_factory=list)
    results: list[dict[str, Any]] = Field(default_factory=list)
    skip_reason: str | None = None


@dataclass
class MutationRequest:
    """One accepted proposal, handed to a handler."""

    agent: AgentDefinition
    mutation: ProposedMutation
    capability: OutputCapability
    target_number: int | None = None

    @property
    def data(self) -> dict[str, Any]:
        return self.mutation.data

    def require(self, key: str) -> Any:
        value = self.data.get(key)
        if value in (None, "", []):
            raise OutputFailure(f"{self.mutation.kind.value}: '{key}' is required")
        return value

    def issue_number(self) -> int:
        number = self.data.get("issue_number") or self.target_number
        if not number:
            raise OutputFailure(
                f"{self.mutation.kind.value}: no issue_number given and the event has no target"
            )
        return int(number)

    def signed(self, body: str) -> str:
        if not self.capability.sign:
            return body
        return f"{body}\n\n---\n_Generated by the **{self.agent.name}** agent._"


MutationHandler = Callable[[MutationRequest], Awaitable[dict[str, Any]]]


# ── Constraint enforcement ───────────────────────────────────────────────────


def mutation_paths(mutation: ProposedMutation) -> list[str]:
    """File paths a proposal would write."""
    paths = []
    if isinstance(mutation.data.get("path"), str):
        paths.append(mutation.data["path"])
    for entry in mutation.data.get("files") or []:
        if isinstance(entry, dict) and isinstance(entry.get("path"), str):
            paths.append(entry["path"])
    return paths


def path_allowed(path: str, patterns: tuple[str, ...]) -> bool:
    if path.startswith("./"):
        path = path[2:]
    return any(fnmatch.fnmatchcase(path, pattern) for pattern in patterns)


def check_constraints(
    capability: OutputCapability | None, mutations: list[ProposedMutation], kind: OutputKind
) -> list[str]:
    """Every constraint violation for *mutations* of *kind*."""
    if capability is None:
        return [f"{kind.value} is not declared in this agent's outputs"]

    errors = []
    if capability.max is not None and len(mutations) > capability.max:
        errors.append(
            f"{kind.value}: {len(mutations)} proposal(s) exceed the maximum of {capability.max}"
        )
    for mutation in mutations:
        for path in mutation_paths(mutation):
            if not capability.allowed_paths or not path_allowed(path, capability.allowed_paths):
                errors.append(f"{kind.value}: path '{path}' is not in allowed-paths")
    return errors


# ── Handler registry ─────────────────────────────────────────────────────────


class MutationHandlerRegistry:
    """Maps output kinds to handlers.

    Usage::

        registry = MutationHandlerRegistry(github, owner, repo)

        @registry.register(OutputKind.ADD_REACTION)
        async def add_reaction(request: MutationRequest) -> dict:
            ...
    """

    def __init__(self, github: GitHubClient | None = None, owner: str = "", repo: str = ""):
        self.github = github
        self.owner = owner
        self.repo = repo
        self._handlers: dict[OutputKind, MutationHandler] = {}
        if github is not None:
            self._register_builtin_handlers()

    def register(self, kind: OutputKind | str) -> Callable[[MutationHandler], MutationHandler]:
        def decorator(fn: MutationHandler) -> MutationHandler:
            self.register_fn(kind, fn)
            return fn

        return decorator

    def register_fn(self, kind: OutputKind | str, fn: MutationHandler) -> None:
        self._handlers[OutputKind(kind)] = fn
        logger.debug("Registered mutation handler: %s", OutputKind(kind).value)

    def get(self, kind: OutputKind | str) -> MutationHandler | None:
        return self._handlers.get(OutputKind(kind))

    def list_kinds(self) -> list[str]:
        return sorted(kind.value for kind in self._handlers)

    # ── Built-in handlers ────────────────────────────────────────────────

    def _register_builtin_handlers(self) -> None:
        self.register_fn(OutputKind.ADD_COMMENT, self._add_comment)
        self.register_fn(OutputKind.ADD_LABEL, self._add_label)
        self.register_fn(OutputKind.REMOVE_LABEL, self._remove_label)
        self.register_fn(OutputKind.CREATE_ISSUE, self._create_issue)
        self.register_fn(OutputKind.CLOSE_ISSUE, self._close_issue)
        self.register_fn(OutputKind.CLOSE_PR, self._close_pr)
        self.register_fn(OutputKind.CREATE_PR, self._create_pr)
        self.register_fn(OutputKind.UPDATE_FILE, self._update_file)

    @staticmethod
    def _labels(request: MutationRequest) -> list[str]:
        labels = request.data.get("labels")
        if isinstance(labels, str):
            labels = [labels]
        if not labels and request.data.get("label"):
            labels = [request.data["label"]]
        if not labels:
            raise OutputFailure(f"{request.mutation.kind.value}: 'labels' is required")
        return [str(label) for label in labels]

    async def _add_comment(self, request: MutationRequest) -> dict:
        body = request.signed(str(request.require("body")))
        comment = await self.github.comment_on_issue(
            self.owner, self.repo, request.issue_number(), body
        )
        return {"comment_id": comment.get("id"), "url": comment.get("html_url")}

    async def _add_label(self, request: MutationRequest) -> dict:
        labels = self._labels(request)
        number = request.issue_number()
        await self.github.add_labels(self.owner, self.repo, number, labels)
        return {"issue_number": number, "labels": labels}

    async def _remove_label(self, request: MutationRequest) -> dict:
        number = request.issue_number()
        removed = []
        for label in self._labels(request):
            if await self.github.remove_label(self.owner, self.repo, number, label):
                removed.append(label)
        return {"issue_number": number, "removed": removed}

    async def _create_issue(self, request: MutationRequest) -> dict:
        issue = await self.github.create_issue(
            self.owner,
            self.repo,
            title=str(request.require("title")),
            body=request.signed(str(request.data.get("body", ""))),
            labels=list(request.data.get("labels") or []),
            assignees=list(request.data.get("assignees") or []),
        )
        return {"issue_number": issue.get("number"), "url": issue.get("html_url")}

    async def _close_issue(self, request: MutationRequest) -> dict:
        number = request.issue_number()
        if request.data.get("comment"):
            await self.github.comment_on_issue(
                self.owner, self.repo, number, request.signed(str(request.data["comment"]))
            )
        await self.github.close_issue(
            self.owner, self.repo, number, state_reason=request.data.get("state_reason")
        )
        return {"issue_number": number, "state": "closed"}

    async def _close_pr(self, request: MutationRequest) -> dict:
        number = int(request.data.get("pr_number") or request.issue_number())
        merge = request.data.get("merge", False)
        if not isinstance(merge, bool):
            raise OutputFailure("close-pr: 'merge' must be a boolean")
        if merge:
            await self.github.merge_pull_request(self.owner, self.repo, number)
            return {"pr_number": number, "state": "merged"}
        await self.github.close_pull_request(self.owner, self.repo, number)
        return {"pr_number": number, "state": "closed"}

    # ── Content writers ──────────────────────────────────────────────────

    @staticmethod
    def _files(request: MutationRequest) -> list[dict[str, str]]:
        kind = request.mutation.kind.value
        files = request.require("files")
        if not isinstance(files, list):
            raise OutputFailure(f"{kind}: 'files' must be a list")
        for entry in files:
            if not (
                isinstance(entry, dict)
                and isinstance(entry.get("path"), str)
                and isinstance(entry.get("content"), str)
            ):
                raise OutputFailure(f"{kind}: each file needs a 'path' and a 'content' string")
        return files

    @staticmethod
    def _branch_name(request: MutationRequest, branch: str) -> str:
        if not BRANCH_PATTERN.match(branch):
            raise OutputFailure(
                f"{request.mutation.kind.value}: branch name '{branch}' contains invalid characters"
            )
        return branch

    async def _write_files(
        self, files: list[dict[str, str]], *, message: str, branch: str
    ) -> list[str]:
        """One commit per file on *branch*, creating or replacing each."""
        written = []
        for entry in files:
            path = entry["path"][2:] if entry["path"].startswith("./") else entry["path"]
            sha = await self.github.get_file_sha(self.owner, self.repo, path, branch)
            await self.github.put_file(
                self.owner, self.repo, path, entry["content"], message=message, branch=branch, sha=sha
            )
            written.append(path)
        return written

    async def _update_file(self, request: MutationRequest) -> dict:
        files = self._files(request)
        message = str(request.require("message"))
        branch = request.data.get("branch") or await self.github.get_default_branch(
            self.owner, self.repo
        )
        branch = self._branch_name(request, str(branch))
        paths = await self._write_files(files, message=message, branch=branch)
        return {"branch": branch, "paths": paths}

    async def _create_pr(self, request: MutationRequest) -> dict:
        """Open a PR from a fresh branch off *base* holding the proposed files.

        Nothing is written when a PR from the branch is already open. A stale
        branch of the same name without an open PR is replaced.
        """
        branch = self._branch_name(request, str(request.require("branch")))
        title = str(request.require("title"))
        body = request.signed(str(request.require("body")))
        files = self._files(request)

        existing = await self.github.list_pull_requests(
            self.owner, self.repo, state="open", head=f"{self.owner}:{branch}"
        )
        if existing:
            logger.info("PR already open for branch %s, skipping", branch)
            pr = existing[0]
            return {"branch": branch, "pr_number": pr.get("number"), "url": pr.get("html_url"), "existing": True}

        base = str(request.data.get("base") or await self.github.get_default_branch(self.owner, self.repo))
        base_sha = await self.github.get_branch_sha(self.owner, self.repo, base)
        if base_sha is None:
            raise OutputFailure(f"create-pr: base branch '{base}' does not exist")
        if await self.github.get_branch_sha(self.owner, self.repo, branch) is not None:
            await self.github.delete_branch(self.owner, self.repo, branch)
        await self.github.create_branch(self.owner, self.repo, branch, base_sha)

        paths = await self._write_files(files, message=title, branch=branch)
        pr = await self.github.create_pull_request(
            self.owner, self.repo, title, body, head=branch, base=base
        )
        logger.info("Opened PR #%s from %s", pr.get("number"), branch)
        return {"branch": branch, "pr_number": pr.get("number"), "url": pr.get("html_url"), "paths": paths}


# ── Stage ────────────────────────────────────────────────────────────────────


async def run_outputs(
    agent: AgentDefinition,
    kind: OutputKind | str,
    execution: ExecutionResult | None,
    store: ArtifactStore,
    registry: MutationHandlerRegistry,
) -> OutputResult:
    """Apply every proposal of *kind* from *execution*; writes ``outputs-<kind>.json``."""
    kind = OutputKind(kind)

    def record(status: OutputStatus, **fields: Any) -> OutputResult:
        result = OutputResult(agent=agent.name, kind=kind, status=status, **fields)
        store.write(agent.slug, outputs_file(kind.value), result)
        return result

    if execution is None or execution.status != ExecutionStatus.SUCCESS:
        return record(OutputStatus.SKIPPED, skip_reason="execution did not succeed")

    mutations = execution.mutations_of(kind)
    if not mutations:
        logger.info("No %s proposals from %s", kind.value, agent.name)
        return record(OutputStatus.SKIPPED, skip_reason=f"no {kind.value} proposals")

    capability = agent.output(kind)
    errors = check_constraints(capability, mutations, kind)
    if errors:
        for error in errors:
            logger.error("Rejected %s from %s: %s", kind.value, agent.name, error)
        return record(OutputStatus.FAILURE, errors=errors)

    handler = registry.get(kind)
    if handler is None:
        error = f"No handler registered for {kind.value}"
        logger.error(error)
        return record(OutputStatus.FAILURE, errors=[error])

    applied, results, failures = 0, [], []
    for mutation in mutations:
        request = MutationRequest(
            agent=agent,
            mutation=mutation,
            capability=capability,
            target_number=execution.target_number,
        )
        try:
            if asyncio.iscoroutinefunction(handler):
                results.append(await handler(request))
            else:
                results.append(handler(request))
            applied += 1
        except (OutputFailure, httpx.HTTPError) as exc:
            logger.error("%s (%s) failed: %s", kind.value, mutation.source, exc)
            failures.append(f"{mutation.source or kind.value}: {exc}")

    status = OutputStatus.FAILURE if failures else OutputStatus.SUCCESS
    logger.info("Applied %d/%d %s mutation(s) for %s", applied, len(mutations), kind.value, agent.name)
    return record(status, applied=applied, errors=failures, results=results)
