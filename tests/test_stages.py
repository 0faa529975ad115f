"""Tests for the runtime stages: route, validate, gate, execute and outputs."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import httpx
import pytest

from conftest import ISSUE_AGENT
from repo_agents.artifacts import EXECUTION_FILE, VERDICT_FILE, ArtifactStore, outputs_file
from repo_agents.config import Settings
from repo_agents.errors import ExecutionFailure, OutputFailure
from repo_agents.models import HANDLED_OUTPUTS, OutputKind, ValidationVerdict
from repo_agents.stages.execute import (
    ClaudeCodeExecutor,
    ContextBundle,
    ExecutionResult,
    ExecutionStatus,
    GitHubContextCollector,
    ProposedMutation,
    build_prompt,
    collect_proposals,
    run_execute,
)
from repo_agents.stages.outputs import (
    MutationHandlerRegistry,
    OutputStatus,
    check_constraints,
    path_allowed,
    run_outputs,
)
from repo_agents.stages.route import run_route
from repo_agents.stages.validate import read_gate, run_validate

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def store(tmp_path: Path) -> ArtifactStore:
    return ArtifactStore(tmp_path / "artifacts")


# ── Fakes ────────────────────────────────────────────────────────────────────


class FakeExecutor:
    """Writes canned proposal files, or raises, instead of running a backend."""

    def __init__(self, files: dict[str, Any] | None = None, error: str | None = None):
        self.files = files or {}
        self.error = error
        self.prompts: list[str] = []

    async def execute(self, agent, prompt: str, outputs_dir: Path):
        self.prompts.append(prompt)
        if self.error:
            raise ExecutionFailure(self.error)
        outputs_dir.mkdir(parents=True, exist_ok=True)
        for name, content in self.files.items():
            (outputs_dir / name).write_text(json.dumps(content))
        return "All done", {"num_turns": 3}


class FakeCollector:
    def __init__(self, bundle: ContextBundle | None = None, error: Exception | None = None):
        self.bundle = bundle or ContextBundle(text="### Issues\n\n- #1: One", item_count=1)
        self.error = error

    async def collect(self, agent, event) -> ContextBundle:
        if self.error:
            raise self.error
        return self.bundle


class FakeGitHub:
    """Records mutation calls made by the built-in handlers."""

    def __init__(self, issues: list[dict] | None = None, prs: list[dict] | None = None):
        self.calls: list[tuple] = []
        self.issues = issues or []
        self.prs = prs or []

    async def comment_on_issue(self, owner, repo, number, body):
        self.calls.append(("comment", number, body))
        return {"id": len(self.calls), "html_url": f"https://example.test/{number}"}

    async def add_labels(self, owner, repo, number, labels):
        self.calls.append(("add_labels", number, labels))

    async def remove_label(self, owner, repo, number, label):
        self.calls.append(("remove_label", number, label))
        return label != "absent"

    async def create_issue(self, owner, repo, title, body, labels=None, assignees=None):
        self.calls.append(("create_issue", title, body, labels, assignees))
        return {"number": 100, "html_url": "https://example.test/100"}

    async def close_issue(self, owner, repo, number, *, state_reason=None):
        self.calls.append(("close_issue", number, state_reason))
        return {"number": number, "state": "closed"}

    async def list_issues(self, owner, repo, **kwargs):
        self.calls.append(("list_issues", kwargs))
        return self.issues

    async def list_pull_requests(self, owner, repo, **kwargs):
        self.calls.append(("list_pull_requests", kwargs))
        return self.prs

    async def close_pull_request(self, owner, repo, number):
        self.calls.append(("close_pr", number))

    async def merge_pull_request(self, owner, repo, number):
        self.calls.append(("merge_pr", number))


class FakeRepository(FakeGitHub):
    """Adds branches and file contents for the content-writing handlers."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.branches = {"main": "sha-main"}
        self.files = {("main", "docs/existing.md"): "blob-1"}

    async def get_default_branch(self, owner, repo):
        return "main"

    async def get_branch_sha(self, owner, repo, branch):
        return self.branches.get(branch)

    async def create_branch(self, owner, repo, branch, sha):
        self.calls.append(("create_branch", branch, sha))
        self.branches[branch] = sha

    async def delete_branch(self, owner, repo, branch):
        self.calls.append(("delete_branch", branch))
        return self.branches.pop(branch, None) is not None

    async def get_file_sha(self, owner, repo, path, ref):
        return self.files.get((ref, path))

    async def put_file(self, owner, repo, path, content, *, message, branch, sha=None):
        self.calls.append(("put_file", branch, path, content, message, sha))
        return {"commit": {"sha": "c1"}}

    async def create_pull_request(self, owner, repo, title, body, head, base):
        self.calls.append(("create_pr", title, body, head, base))
        return {"number": 55, "html_url": "https://example.test/pull/55"}


def executed(agent_name: str, *mutations: ProposedMutation, status=ExecutionStatus.SUCCESS, target=42):
    return ExecutionResult(agent=agent_name, status=status, target_number=target, mutations=list(mutations))


# ── route-event ──────────────────────────────────────────────────────────────


class TestRouteStage:
    async def test_excludes_bad_files_and_routes_the_rest(self, agents_dir, write_agent, make_event):
        (agents_dir / "triage.md").write_text(ISSUE_AGENT)
        write_agent("broken.md", "name: Broken\non:\n  issues:\n    types: [opened]\nmax_open_prs: 0")

        result = await run_route(agents_dir, make_event("issues", "opened"))

        assert [e.name for e in result.entries] == ["Issue Triage"]
        assert [Path(p).name for p in result.excluded] == ["broken.md"]
        outputs = result.outputs()
        assert outputs["has-agents"] == "true"
        assert json.loads(outputs["matching-agents"])[0]["slug"] == "issue-triage"
        rows = json.loads(outputs["output-matrix"])
        assert [row["kind"] for row in rows] == ["add-label", "add-comment"]
        assert outputs["has-outputs"] == "true"

    async def test_no_match(self, agents_dir, make_event):
        (agents_dir / "triage.md").write_text(ISSUE_AGENT)
        result = await run_route(agents_dir, make_event("issues", "closed"))
        assert result.outputs()["has-agents"] == "false"
        assert json.loads(result.outputs()["output-matrix"]) == []

    async def test_missing_directory_routes_nothing(self, tmp_path, make_event):
        result = await run_route(tmp_path / "missing", make_event())
        assert result.entries == []


# ── agent-validation ─────────────────────────────────────────────────────────


class TestValidateStage:
    async def test_writes_admitted_verdict(self, agents_dir, store, platform, make_event):
        path = agents_dir / "triage.md"
        path.write_text(ISSUE_AGENT)

        verdict = await run_validate(
            Settings(), path, make_event(number=3), store, platform=platform, now=lambda: NOW
        )

        assert verdict.should_run
        saved = store.read("issue-triage", VERDICT_FILE, ValidationVerdict)
        assert saved.should_run
        assert saved.target_number == 3

    async def test_rate_limited_twice(self, agents_dir, store, platform, make_event):
        path = agents_dir / "triage.md"
        path.write_text(ISSUE_AGENT.replace("permissions:", "rate_limit_minutes: 30\npermissions:"))
        platform.last_runs["issue-triage"] = NOW - timedelta(minutes=10)

        verdict = await run_validate(Settings(), path, make_event(), store, platform=platform, now=lambda: NOW)

        assert verdict.rate_limited
        assert store.read("issue-triage", VERDICT_FILE, ValidationVerdict).rate_limited

    async def test_invalid_definition_skips(self, agents_dir, store, make_event):
        path = agents_dir / "broken.md"
        path.write_text("not an agent")

        verdict = await run_validate(Settings(), path, make_event(), store)

        assert not verdict.should_run
        assert verdict.failed_check == "definition"
        assert store.read("broken", VERDICT_FILE, ValidationVerdict) is not None

    async def test_explicit_authorization_setting(self, agents_dir, store, make_event):
        path = agents_dir / "triage.md"
        path.write_text(ISSUE_AGENT)
        verdict = await run_validate(
            Settings(require_explicit_authorization=True), path, make_event(), store
        )
        assert verdict.failed_check == "authorization"


class TestReadGate:
    def test_admitted(self, store):
        assert read_gate(store, "a", "admitted") == (False, "no verdict recorded")
        store.write("a", VERDICT_FILE, ValidationVerdict.skip("A", "rate_limit", "Too soon"))
        assert read_gate(store, "a", "admitted") == (False, "Too soon")
        store.write("a", VERDICT_FILE, ValidationVerdict(agent="A", should_run=True))
        assert read_gate(store, "a", "admitted") == (True, "")

    def test_executed(self, store):
        assert read_gate(store, "a", "executed")[0] is False
        store.write("a", EXECUTION_FILE, executed("A", status=ExecutionStatus.FAILURE))
        assert read_gate(store, "a", "executed") == (False, "execution failure")
        store.write("a", EXECUTION_FILE, executed("A"))
        assert read_gate(store, "a", "executed") == (True, "")

    def test_unreadable_artifact_is_missing(self, store):
        store.path("a", VERDICT_FILE).parent.mkdir(parents=True)
        store.path("a", VERDICT_FILE).write_text("{not json")
        assert read_gate(store, "a", "admitted") == (False, "no verdict recorded")

    def test_unknown_requirement(self, store):
        with pytest.raises(ValueError):
            read_gate(store, "a", "audited")


# ── agent-execution ──────────────────────────────────────────────────────────


class TestCollectProposals:
    def test_reads_declared_kinds_in_name_order(self, tmp_path):
        (tmp_path / "add-comment.json").write_text(json.dumps({"body": "one"}))
        (tmp_path / "add-comment-2.json").write_text(json.dumps([{"body": "two"}, {"body": "three"}]))
        (tmp_path / "add-label.json").write_text(json.dumps({"labels": ["bug"]}))
        (tmp_path / "merge-pr.json").write_text(json.dumps({"number": 1}))
        (tmp_path / "add-comment-x.json").write_text(json.dumps({"body": "ignored"}))

        mutations = collect_proposals(tmp_path, [OutputKind.ADD_COMMENT, OutputKind.ADD_LABEL])

        assert [(m.kind.value, m.source) for m in mutations] == [
            ("add-comment", "add-comment-2.json"),
            ("add-comment", "add-comment-2.json"),
            ("add-comment", "add-comment.json"),
            ("add-label", "add-label.json"),
        ]

    def test_unreadable_files_ignored(self, tmp_path):
        (tmp_path / "add-comment.json").write_text("{oops")
        (tmp_path / "add-comment-1.json").write_text(json.dumps(["not an object"]))
        assert collect_proposals(tmp_path, [OutputKind.ADD_COMMENT]) == []

    def test_missing_directory(self, tmp_path):
        assert collect_proposals(tmp_path / "none", [OutputKind.ADD_COMMENT]) == []


class TestBuildPrompt:
    def test_sections(self, make_agent, tmp_path):
        agent = make_agent(
            "name: A\non:\n  issues:\n    types: [opened]\noutputs:\n  add-comment:\n    max: 1",
            body="Be helpful.",
        )
        prompt = build_prompt(
            agent, {"issue": {"number": 1}}, ContextBundle(text="ctx-text", item_count=1), tmp_path
        )
        assert "## Triggering event" in prompt
        assert '"number": 1' in prompt
        assert "ctx-text" in prompt
        assert "`add-comment` (at most 1)" in prompt
        assert str(tmp_path) in prompt
        assert prompt.rstrip().endswith("Be helpful.")


class TestExecuteStage:
    async def test_success_records_mutations(self, make_agent, store):
        agent = make_agent(ISSUE_AGENT.split("---")[1])
        executor = FakeExecutor({"add-label.json": {"labels": ["bug"]}})
        verdict = ValidationVerdict(agent=agent.name, should_run=True, target_number=42, event_snapshot={})

        result = await run_execute(agent, verdict, store, executor)

        assert result.status == ExecutionStatus.SUCCESS
        assert result.output == "All done"
        assert result.metrics == {"num_turns": 3}
        assert result.target_number == 42
        assert [m.kind for m in result.mutations] == [OutputKind.ADD_LABEL]
        assert store.read(agent.slug, EXECUTION_FILE, ExecutionResult).status == ExecutionStatus.SUCCESS

    async def test_skip_verdict_never_executes(self, make_agent, store):
        agent = make_agent(ISSUE_AGENT.split("---")[1])
        executor = FakeExecutor()

        result = await run_execute(agent, ValidationVerdict.skip(agent.name, "rate_limit", "Too soon"), store, executor)

        assert result.status == ExecutionStatus.SKIPPED
        assert result.skip_reason == "Too soon"
        assert executor.prompts == []

    async def test_missing_verdict(self, make_agent, store):
        agent = make_agent(ISSUE_AGENT.split("---")[1])
        result = await run_execute(agent, None, store, FakeExecutor())
        assert result.skip_reason == "no verdict recorded"

    async def test_backend_failure_is_recorded(self, make_agent, store):
        agent = make_agent(ISSUE_AGENT.split("---")[1])
        verdict = ValidationVerdict(agent=agent.name, should_run=True)

        result = await run_execute(agent, verdict, store, FakeExecutor(error="exit 1"))

        assert result.status == ExecutionStatus.FAILURE
        assert result.error == "exit 1"

    async def test_context_below_threshold_skips(self, make_agent, store):
        agent = make_agent("name: A\non:\n  issues:\n    types: [opened]\ncontext:\n  issues: {}\n  min_items: 5")
        executor = FakeExecutor()
        collector = FakeCollector(ContextBundle(item_count=2, below_threshold=True, reason="Collected 2 item(s), but minimum is 5"))

        result = await run_execute(
            agent, ValidationVerdict(agent="A", should_run=True), store, executor, collector=collector
        )

        assert result.status == ExecutionStatus.SKIPPED
        assert "minimum is 5" in result.skip_reason
        assert executor.prompts == []

    async def test_context_included_in_prompt(self, make_agent, store):
        agent = make_agent("name: A\non:\n  issues:\n    types: [opened]\ncontext:\n  issues: {}")
        executor = FakeExecutor()
        await run_execute(
            agent, ValidationVerdict(agent="A", should_run=True), store, executor, collector=FakeCollector()
        )
        assert "- #1: One" in executor.prompts[0]

    async def test_context_collection_error(self, make_agent, store):
        agent = make_agent("name: A\non:\n  issues:\n    types: [opened]\ncontext:\n  issues: {}")
        collector = FakeCollector(error=httpx.ConnectError("down"))
        result = await run_execute(
            agent, ValidationVerdict(agent="A", should_run=True), store, FakeExecutor(), collector=collector
        )
        assert result.status == ExecutionStatus.FAILURE
        assert "Context collection failed" in result.error


class TestGitHubContextCollector:
    async def test_threshold_defaults_to_one(self, make_agent, make_event):
        agent = make_agent("name: A\non:\n  issues:\n    types: [opened]\ncontext:\n  issues: {}")
        bundle = await GitHubContextCollector(FakeGitHub(), "acme", "widgets").collect(agent, make_event())
        assert bundle.below_threshold
        assert bundle.item_count == 0

    async def test_collects_issues_and_prs(self, make_agent, make_event):
        agent = make_agent(
            "name: A\non:\n  issues:\n    types: [opened]\ncontext:\n"
            "  issues:\n    labels: [bug]\n    limit: 10\n  pull_requests:\n    labels: [ready]\n"
            "  since: '2026-01-01T00:00:00Z'\n  min_items: 2"
        )
        github = FakeGitHub(
            issues=[{"number": 1, "title": "Crash"}],
            prs=[
                {"number": 2, "title": "Fix", "labels": [{"name": "ready"}]},
                {"number": 3, "title": "WIP", "labels": []},
            ],
        )

        bundle = await GitHubContextCollector(github, "acme", "widgets").collect(agent, make_event())

        assert not bundle.below_threshold
        assert bundle.item_count == 2
        assert "- #1: Crash" in bundle.text
        assert "- #2: Fix" in bundle.text
        assert "#3" not in bundle.text
        list_issues = github.calls[0][1]
        assert list_issues["labels"] == "bug"
        assert list_issues["per_page"] == 10
        assert list_issues["since"] == "2026-01-01T00:00:00Z"


class TestClaudeCodeExecutor:
    def test_args_without_outputs_are_read_only(self, make_agent):
        agent = make_agent("name: A\non:\n  issues:\n    types: [opened]\nclaude:\n  model: claude-sonnet-4-5")
        args = ClaudeCodeExecutor().args(agent)
        assert args == [
            "claude", "--print", "--output-format", "json",
            "--allowedTools", "Read,Glob,Grep",
            "--model", "claude-sonnet-4-5",
        ]

    def test_args_with_outputs_can_write_proposals(self, make_agent, tmp_path):
        agent = make_agent("name: A\non:\n  issues:\n    types: [opened]\noutputs:\n  add-comment: true")
        outputs_dir = tmp_path / "artifacts" / "a" / "proposals"
        args = ClaudeCodeExecutor(cwd=tmp_path / "repo").args(agent, outputs_dir)
        assert args == [
            "claude", "--print", "--output-format", "json",
            "--allowedTools", "Write,Read,Glob,Grep",
            "--add-dir", str(outputs_dir.resolve()),
        ]

    def test_env_carries_max_tokens(self, make_agent, monkeypatch):
        monkeypatch.delenv("CLAUDE_CODE_MAX_OUTPUT_TOKENS", raising=False)
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-test")
        agent = make_agent("name: A\non:\n  issues:\n    types: [opened]\nclaude:\n  max_tokens: 4096")
        env = ClaudeCodeExecutor().env(agent)
        assert env["CLAUDE_CODE_MAX_OUTPUT_TOKENS"] == "4096"
        assert env["ANTHROPIC_API_KEY"] == "sk-test"
        plain = make_agent("name: B\non:\n  issues:\n    types: [opened]")
        assert "CLAUDE_CODE_MAX_OUTPUT_TOKENS" not in ClaudeCodeExecutor().env(plain)

    async def test_backend_receives_flags(self, make_agent, tmp_path):
        script = tmp_path / "fake-claude"
        script.write_text(
            "#!/bin/sh\n"
            'printf \'{"result": "%s", "num_turns": 1}\' "$*"\n'
        )
        script.chmod(0o755)
        agent = make_agent("name: A\non:\n  issues:\n    types: [opened]\noutputs:\n  add-label: true")
        outputs_dir = tmp_path / "proposals"

        output, metrics = await ClaudeCodeExecutor(str(script), cwd=tmp_path).execute(
            agent, "prompt", outputs_dir
        )

        assert "--allowedTools Write,Read,Glob,Grep" in output
        assert f"--add-dir {outputs_dir.resolve()}" in output
        assert metrics == {"num_turns": 1}
        assert outputs_dir.is_dir()

    async def test_missing_binary_is_execution_failure(self, make_agent, tmp_path):
        agent = make_agent("name: A\non:\n  issues:\n    types: [opened]")
        executor = ClaudeCodeExecutor("repo-agents-no-such-binary", cwd=tmp_path)
        with pytest.raises(ExecutionFailure, match="Could not start"):
            await executor.execute(agent, "prompt", tmp_path / "out")


# ── execute-outputs ──────────────────────────────────────────────────────────


class TestConstraints:
    def test_path_allowed(self):
        assert path_allowed("docs/guide/intro.md", ("docs/**",))
        assert path_allowed("./docs/a.md", ("docs/**",))
        assert path_allowed(".github/labels.yml", (".github/*.yml",))
        assert not path_allowed("src/app.py", ("docs/**",))

    def test_undeclared_kind(self):
        errors = check_constraints(None, [ProposedMutation(kind=OutputKind.MERGE_PR)], OutputKind.MERGE_PR)
        assert errors == ["merge-pr is not declared in this agent's outputs"]


class TestOutputsStage:
    @pytest.fixture
    def agent(self, make_agent):
        return make_agent(
            "name: Writer\non:\n  issues:\n    types: [opened]\n"
            "permissions:\n  contents: write\n  issues: write\n"
            "allowed-paths: ['docs/**']\n"
            "outputs:\n  add-comment:\n    max: 2\n    sign: true\n  add-label: true\n"
            "  update-file: true\n  create-issue: true"
        )

    async def test_applies_comments_with_signature(self, agent, store):
        github = FakeGitHub()
        registry = MutationHandlerRegistry(github, "acme", "widgets")
        execution = executed(agent.name, ProposedMutation(kind=OutputKind.ADD_COMMENT, data={"body": "Hi"}))

        result = await run_outputs(agent, "add-comment", execution, store, registry)

        assert result.status == OutputStatus.SUCCESS
        assert result.applied == 1
        _, number, body = github.calls[0]
        assert number == 42
        assert body.startswith("Hi\n\n---\n")
        assert "**Writer**" in body
        saved = json.loads(store.path(agent.slug, outputs_file("add-comment")).read_text())
        assert saved["status"] == "success"

    async def test_max_exceeded_rejects_all(self, agent, store):
        github = FakeGitHub()
        registry = MutationHandlerRegistry(github, "acme", "widgets")
        comments = [ProposedMutation(kind=OutputKind.ADD_COMMENT, data={"body": str(i)}) for i in range(3)]

        result = await run_outputs(agent, OutputKind.ADD_COMMENT, executed(agent.name, *comments), store, registry)

        assert result.status == OutputStatus.FAILURE
        assert result.applied == 0
        assert "exceed the maximum of 2" in result.errors[0]
        assert github.calls == []

    async def test_disallowed_path_rejects_kind(self, agent, store):
        applied = []
        registry = MutationHandlerRegistry()

        @registry.register(OutputKind.UPDATE_FILE)
        async def update_file(request):
            applied.append(request.data["path"])
            return {"path": request.data["path"]}

        bad = executed(
            agent.name,
            ProposedMutation(kind=OutputKind.UPDATE_FILE, data={"path": "docs/ok.md"}),
            ProposedMutation(kind=OutputKind.UPDATE_FILE, data={"files": [{"path": "src/app.py"}]}),
        )
        result = await run_outputs(agent, "update-file", bad, store, registry)
        assert result.status == OutputStatus.FAILURE
        assert "src/app.py" in result.errors[0]
        assert applied == []

        good = executed(agent.name, ProposedMutation(kind=OutputKind.UPDATE_FILE, data={"path": "./docs/ok.md"}))
        result = await run_outputs(agent, "update-file", good, store, registry)
        assert result.status == OutputStatus.SUCCESS
        assert applied == ["./docs/ok.md"]

    async def test_undeclared_kind_rejected(self, agent, store):
        registry = MutationHandlerRegistry(FakeGitHub(), "acme", "widgets")
        execution = executed(agent.name, ProposedMutation(kind=OutputKind.CLOSE_ISSUE))
        result = await run_outputs(agent, "close-issue", execution, store, registry)
        assert result.status == OutputStatus.FAILURE
        assert "not declared" in result.errors[0]

    async def test_missing_handler(self, agent, store):
        execution = executed(agent.name, ProposedMutation(kind=OutputKind.ADD_LABEL, data={"labels": ["x"]}))
        result = await run_outputs(agent, "add-label", execution, store, MutationHandlerRegistry())
        assert result.status == OutputStatus.FAILURE
        assert result.errors == ["No handler registered for add-label"]

    async def test_one_bad_proposal_does_not_stop_others(self, agent, store):
        github = FakeGitHub()
        registry = MutationHandlerRegistry(github, "acme", "widgets")
        execution = executed(
            agent.name,
            ProposedMutation(kind=OutputKind.ADD_COMMENT, data={}, source="add-comment.json"),
            ProposedMutation(kind=OutputKind.ADD_COMMENT, data={"body": "ok", "issue_number": 7}),
        )

        result = await run_outputs(agent, "add-comment", execution, store, registry)

        assert result.status == OutputStatus.FAILURE
        assert result.applied == 1
        assert "'body' is required" in result.errors[0]
        assert github.calls[0][1] == 7

    async def test_skipped_when_execution_failed(self, agent, store):
        registry = MutationHandlerRegistry(FakeGitHub(), "acme", "widgets")
        result = await run_outputs(
            agent, "add-label", executed(agent.name, status=ExecutionStatus.FAILURE), store, registry
        )
        assert result.status == OutputStatus.SKIPPED

    async def test_skipped_without_proposals(self, agent, store):
        registry = MutationHandlerRegistry(FakeGitHub(), "acme", "widgets")
        result = await run_outputs(agent, "add-label", executed(agent.name), store, registry)
        assert result.status == OutputStatus.SKIPPED
        assert result.skip_reason == "no add-label proposals"

    async def test_builtin_label_and_issue_handlers(self, agent, store):
        github = FakeGitHub()
        registry = MutationHandlerRegistry(github, "acme", "widgets")
        assert registry.list_kinds() == sorted(kind.value for kind in HANDLED_OUTPUTS)

        await run_outputs(
            agent,
            "add-label",
            executed(agent.name, ProposedMutation(kind=OutputKind.ADD_LABEL, data={"label": "bug"})),
            store,
            registry,
        )
        await run_outputs(
            agent,
            "create-issue",
            executed(
                agent.name,
                ProposedMutation(kind=OutputKind.CREATE_ISSUE, data={"title": "T", "labels": ["x"]}),
            ),
            store,
            registry,
        )

        assert github.calls[0] == ("add_labels", 42, ["bug"])
        assert github.calls[1] == ("create_issue", "T", "", ["x"], [])

    async def test_no_target_number(self, agent, store):
        registry = MutationHandlerRegistry(FakeGitHub(), "acme", "widgets")
        execution = executed(
            agent.name, ProposedMutation(kind=OutputKind.ADD_LABEL, data={"labels": ["x"]}), target=None
        )
        result = await run_outputs(agent, "add-label", execution, store, registry)
        assert result.status == OutputStatus.FAILURE
        assert "no issue_number" in result.errors[0]

    def test_output_failure_is_runtime_error(self):
        assert issubclass(OutputFailure, RuntimeError)


class TestContentWriters:
    @pytest.fixture
    def agent(self, make_agent):
        return make_agent(
            "name: Docs Bot\non:\n  issues:\n    types: [opened]\n"
            "permissions:\n  contents: write\n  pull_requests: write\n"
            "allowed-paths: ['docs/**']\n"
            "outputs:\n  update-file: true\n  create-pr:\n    sign: true\n  close-pr: true"
        )

    async def test_update_file_commits_each_file(self, agent, store):
        github = FakeRepository()
        registry = MutationHandlerRegistry(github, "acme", "widgets")
        proposal = {
            "message": "Refresh docs",
            "files": [
                {"path": "docs/existing.md", "content": "new"},
                {"path": "./docs/added.md", "content": "hello"},
            ],
        }
        execution = executed(agent.name, ProposedMutation(kind=OutputKind.UPDATE_FILE, data=proposal))

        result = await run_outputs(agent, "update-file", execution, store, registry)

        assert result.status == OutputStatus.SUCCESS
        assert result.results == [{"branch": "main", "paths": ["docs/existing.md", "docs/added.md"]}]
        assert github.calls == [
            ("put_file", "main", "docs/existing.md", "new", "Refresh docs", "blob-1"),
            ("put_file", "main", "docs/added.md", "hello", "Refresh docs", None),
        ]

    async def test_update_file_requires_message(self, agent, store):
        registry = MutationHandlerRegistry(FakeRepository(), "acme", "widgets")
        proposal = {"files": [{"path": "docs/a.md", "content": "x"}]}
        execution = executed(agent.name, ProposedMutation(kind=OutputKind.UPDATE_FILE, data=proposal))

        result = await run_outputs(agent, "update-file", execution, store, registry)

        assert result.status == OutputStatus.FAILURE
        assert "'message' is required" in result.errors[0]

    async def test_create_pr_branches_writes_and_opens(self, agent, store):
        github = FakeRepository()
        github.branches["docs/refresh"] = "sha-stale"
        registry = MutationHandlerRegistry(github, "acme", "widgets")
        proposal = {
            "branch": "docs/refresh",
            "title": "Refresh docs",
            "body": "Updated the guide.",
            "files": [{"path": "docs/guide.md", "content": "# Guide"}],
        }
        execution = executed(agent.name, ProposedMutation(kind=OutputKind.CREATE_PR, data=proposal))

        result = await run_outputs(agent, "create-pr", execution, store, registry)

        assert result.status == OutputStatus.SUCCESS
        assert result.results[0]["pr_number"] == 55
        names = [call[0] for call in github.calls]
        assert names == ["list_pull_requests", "delete_branch", "create_branch", "put_file", "create_pr"]
        assert github.calls[0][1]["head"] == "acme:docs/refresh"
        assert github.calls[2] == ("create_branch", "docs/refresh", "sha-main")
        _, title, body, head, base = github.calls[-1]
        assert (title, head, base) == ("Refresh docs", "docs/refresh", "main")
        assert body.endswith("_Generated by the **Docs Bot** agent._")

    async def test_create_pr_skips_when_already_open(self, agent, store):
        github = FakeRepository(prs=[{"number": 9, "html_url": "https://example.test/pull/9"}])
        registry = MutationHandlerRegistry(github, "acme", "widgets")
        proposal = {
            "branch": "docs/refresh",
            "title": "T",
            "body": "B",
            "files": [{"path": "docs/a.md", "content": "x"}],
        }
        execution = executed(agent.name, ProposedMutation(kind=OutputKind.CREATE_PR, data=proposal))

        result = await run_outputs(agent, "create-pr", execution, store, registry)

        assert result.status == OutputStatus.SUCCESS
        assert result.results[0]["existing"] is True
        assert [call[0] for call in github.calls] == ["list_pull_requests"]

    @pytest.mark.parametrize("branch", ["feature branch", "fix;rm", "a~1"])
    async def test_create_pr_rejects_bad_branch(self, agent, store, branch):
        github = FakeRepository()
        registry = MutationHandlerRegistry(github, "acme", "widgets")
        proposal = {"branch": branch, "title": "T", "body": "B", "files": [{"path": "docs/a.md", "content": "x"}]}
        execution = executed(agent.name, ProposedMutation(kind=OutputKind.CREATE_PR, data=proposal))

        result = await run_outputs(agent, "create-pr", execution, store, registry)

        assert result.status == OutputStatus.FAILURE
        assert "invalid characters" in result.errors[0]
        assert github.calls == []

    async def test_create_pr_path_outside_allowed_paths(self, agent, store):
        github = FakeRepository()
        registry = MutationHandlerRegistry(github, "acme", "widgets")
        proposal = {"branch": "b", "title": "T", "body": "B", "files": [{"path": "src/app.py", "content": "x"}]}
        execution = executed(agent.name, ProposedMutation(kind=OutputKind.CREATE_PR, data=proposal))

        result = await run_outputs(agent, "create-pr", execution, store, registry)

        assert result.status == OutputStatus.FAILURE
        assert result.errors == ["create-pr: path 'src/app.py' is not in allowed-paths"]
        assert github.calls == []

    async def test_close_pr_and_merge(self, agent, store):
        github = FakeRepository()
        registry = MutationHandlerRegistry(github, "acme", "widgets")
        execution = executed(
            agent.name,
            ProposedMutation(kind=OutputKind.CLOSE_PR, data={}),
            ProposedMutation(kind=OutputKind.CLOSE_PR, data={"pr_number": 8, "merge": True}),
            ProposedMutation(kind=OutputKind.CLOSE_PR, data={"pr_number": 9, "merge": "yes"}),
        )

        result = await run_outputs(agent, "close-pr", execution, store, registry)

        assert github.calls == [("close_pr", 42), ("merge_pr", 8)]
        assert result.applied == 2
        assert "'merge' must be a boolean" in result.errors[0]
