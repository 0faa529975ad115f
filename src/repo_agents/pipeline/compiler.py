"""Pipeline Compiler — turns a validated definition set into a PipelineGraph.

Compilation is all-or-nothing: every definition must pass the semantic pass,
names and their slugs must be unique, and the set must not be empty.
Otherwise :class:`~repo_agents.errors.CompileError` lists every problem.

The emitted graph always has the same six stages::

    global-preflight → route-event → agent-validation → agent-execution
                                   ↘                  ↘ execute-outputs
                                     audit-report (after all of the above)

Per-agent stages fan out over the JSON rows ``route-event`` emits, so the
graph itself does not change when the triggering event changes.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from pathlib import Path

from repo_agents.config import Settings
from repo_agents.discovery import discover_agents
from repo_agents.errors import CompileError
from repo_agents.models import (
    AgentDefinition,
    Diagnostic,
    DiagnosticKind,
    MatrixEntry,
    PermissionLevel,
    TriggerFamily,
)
from repo_agents.parser import validate_agent
from repo_agents.pipeline.models import (
    JobSpec,
    MatrixDimension,
    MatrixSpec,
    PipelineGraph,
    StageName,
    StepSpec,
)
from repo_agents.pipeline.routing import RoutingTable, aggregate

logger = logging.getLogger(__name__)

#: Permissions the pipeline itself needs regardless of agents.
BASELINE_PERMISSIONS = {
    "actions": PermissionLevel.WRITE,
    "contents": PermissionLevel.READ,
    "issues": PermissionLevel.WRITE,
}

#: PermissionSet field → workflow permission key.
PERMISSION_KEYS = {
    "contents": "contents",
    "issues": "issues",
    "pull_requests": "pull-requests",
    "discussions": "discussions",
}

CHECKOUT_ACTION = "actions/checkout@v4"
SETUP_PYTHON_ACTION = "actions/setup-python@v5"
UPLOAD_ACTION = "actions/upload-artifact@v4"
DOWNLOAD_ACTION = "actions/download-artifact@v4"

AGENT_ROWS = "needs.route-event.outputs.matching-agents"
OUTPUT_ROWS = "needs.route-event.outputs.output-matrix"
HAS_AGENTS = "needs.route-event.outputs.has-agents == 'true'"
HAS_OUTPUTS = "needs.route-event.outputs.has-outputs == 'true'"


def expr(expression: str) -> str:
    """Wrap *expression* as a workflow expression."""
    return "${{ " + expression + " }}"


# ── Set-level checks ─────────────────────────────────────────────────────────


def check_definitions(definitions: Sequence[AgentDefinition]) -> list[tuple[str, Diagnostic]]:
    """Every problem that prevents compiling *definitions*, as (path, diagnostic)."""
    problems: list[tuple[str, Diagnostic]] = []

    for agent in definitions:
        problems.extend((agent.path, diag) for diag in validate_agent(agent) if diag.is_error)

    by_name: dict[str, AgentDefinition] = {}
    by_slug: dict[str, AgentDefinition] = {}
    for agent in definitions:
        first = by_name.get(agent.name)
        if first is not None:
            problems.append(
                (
                    agent.path,
                    Diagnostic(
                        field="name",
                        message=f"Duplicate agent name '{agent.name}' (also defined in {first.path})",
                        kind=DiagnosticKind.SEMANTIC,
                    ),
                )
            )
            continue
        by_name[agent.name] = agent

        slug = agent.slug
        if not slug:
            problems.append(
                (
                    agent.path,
                    Diagnostic(
                        field="name",
                        message=f"Agent name '{agent.name}' has no alphanumeric characters",
                        kind=DiagnosticKind.SEMANTIC,
                    ),
                )
            )
            continue
        other = by_slug.get(slug)
        if other is not None:
            problems.append(
                (
                    agent.path,
                    Diagnostic(
                        field="name",
                        message=(
                            f"Agent name '{agent.name}' produces identifier '{slug}', "
                            f"already used by '{other.name}' in {other.path}"
                        ),
                        kind=DiagnosticKind.SEMANTIC,
                    ),
                )
            )
            continue
        by_slug[slug] = agent

    return problems


# ── Workflow-level sections ──────────────────────────────────────────────────


def build_triggers(definitions: Sequence[AgentDefinition], table: RoutingTable) -> dict:
    """The emitted ``on:`` block: the routing union plus pipeline additions."""
    triggers: dict = {}

    issue_types = set(table.issues)
    if any(agent.pre_flight.check_blocking_issues for agent in definitions):
        # Closing a blocker re-offers the issues it was blocking
        issue_types.add("closed")
    if issue_types:
        triggers["issues"] = {"types": sorted(issue_types)}
    if table.pull_request:
        triggers["pull_request"] = {"types": list(table.pull_request)}
    if table.discussion:
        triggers["discussion"] = {"types": list(table.discussion)}
    if table.schedule:
        triggers["schedule"] = [{"cron": cron} for cron in table.schedule]
    if table.repository_dispatch:
        triggers["repository_dispatch"] = {"types": list(table.repository_dispatch)}

    inputs: dict = {}
    for agent in definitions:
        if agent.triggers.workflow_dispatch is None:
            continue
        for name, spec in agent.triggers.workflow_dispatch.inputs.items():
            inputs.setdefault(name, spec.model_dump(exclude_none=True))
    inputs["agent"] = {
        "description": "Specific agent to run (leave empty to auto-route)",
        "required": False,
        "type": "string",
    }
    triggers["workflow_dispatch"] = {"inputs": inputs}
    return triggers


def build_permissions(table: RoutingTable) -> dict[str, str]:
    """Per-resource max of the agents' needs and the pipeline baseline."""
    levels = dict(BASELINE_PERMISSIONS)
    for resource, level in table.permissions.levels().items():
        key = PERMISSION_KEYS[resource]
        levels[key] = PermissionLevel.highest(levels.get(key, PermissionLevel.NONE), level)
    return {key: level.value for key, level in levels.items() if level != PermissionLevel.NONE}


def build_concurrency() -> dict[str, str]:
    """One run per event subject; bot edits and labels never cancel a run."""
    subject = (
        "github.event.issue.number || github.event.pull_request.number"
        " || github.event.discussion.number || github.run_id"
    )
    return {
        "group": f"agents-{expr('github.event_name')}-{expr(subject)}",
        "cancel-in-progress": expr(
            "!(endsWith(github.actor, '[bot]') && "
            "(github.event.action == 'edited' || github.event.action == 'labeled'))"
        ),
    }


# ── Compiler ─────────────────────────────────────────────────────────────────


class PipelineCompiler:
    """Compiles agent definitions into the six-stage :class:`PipelineGraph`."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or Settings()

    def compile(self, definitions: Sequence[AgentDefinition]) -> PipelineGraph:
        """Compile *definitions*.

        Raises:
            CompileError: If the set is empty or any definition is invalid.
        """
        definitions = list(definitions)
        if not definitions:
            raise CompileError("No agent definitions to compile")

        problems = check_definitions(definitions)
        if problems:
            raise CompileError(
                f"{len(problems)} problem(s) in agent definitions", problems=problems
            )

        table = aggregate(definitions)
        entries = [MatrixEntry.from_definition(agent) for agent in definitions]
        graph = PipelineGraph(
            name=self.settings.workflow_name,
            triggers=build_triggers(definitions, table),
            permissions=build_permissions(table),
            concurrency=build_concurrency(),
            routing=table,
            entries=entries,
            jobs=self._jobs(definitions),
        )
        logger.debug(
            "Compiled %d agent(s) into %d stage(s)", len(entries), len(graph.jobs)
        )
        return graph

    def compile_directory(self, agents_dir: str | Path) -> PipelineGraph:
        """Discover, parse and compile every definition under *agents_dir*.

        Any file with an error diagnostic fails the whole compile.
        """
        result = discover_agents(agents_dir)
        if result.error is not None:
            raise CompileError(str(result.error))

        problems = [
            (path, diag) for path, diags in result.failures.items() for diag in diags
        ]
        if problems:
            raise CompileError(
                f"{len(problems)} problem(s) in agent definitions", problems=problems
            )
        if not result.results:
            raise CompileError(f"No agent definitions found in {agents_dir}")
        return self.compile(result.definitions)

    # ── Jobs ─────────────────────────────────────────────────────────────

    def _jobs(self, definitions: list[AgentDefinition]) -> list[JobSpec]:
        execution_minutes = max(agent.timeout.execution for agent in definitions)
        total_minutes = max(agent.timeout.total or 0 for agent in definitions)
        return [
            self._preflight_job(),
            self._route_job(),
            self._validation_job(),
            self._execution_job(execution_minutes, total_minutes),
            self._outputs_job(),
            self._audit_job(),
        ]

    def _cli(self, *args: str) -> str:
        return " ".join([self.settings.cli_command, *args])

    def _setup_steps(self, checkout: bool = True) -> list[StepSpec]:
        steps = []
        if checkout:
            steps.append(StepSpec(name="Checkout repository", uses=CHECKOUT_ACTION))
        steps.append(
            StepSpec(
                name="Set up Python",
                uses=SETUP_PYTHON_ACTION,
                with_={"python-version": self.settings.python_version},
            )
        )
        steps.append(
            StepSpec(name="Install repo-agents", run=f"pip install {self.settings.package_spec}")
        )
        return steps

    def _artifact_dir(self, slug_expr: str) -> str:
        return f"{self.settings.artifacts_dir}/{expr(slug_expr)}"

    def _download(self, name: str, slug_expr: str, *, pattern: bool = False) -> StepSpec:
        with_ = {"path": self._artifact_dir(slug_expr)}
        if pattern:
            with_.update({"pattern": name, "merge-multiple": True})
        else:
            with_["name"] = name
        return StepSpec(
            name=f"Download {name.split('--')[0]} artifact",
            uses=DOWNLOAD_ACTION,
            with_=with_,
            continue_on_error=True,
        )

    def _upload(self, name: str, path: str, condition: str | None = None, **extra) -> StepSpec:
        with_ = {"name": name, "path": path, "if-no-files-found": "ignore", **extra}
        return StepSpec(
            name=f"Upload {name.split('--')[0]} artifact",
            uses=UPLOAD_ACTION,
            with_=with_,
            condition=condition,
        )

    def _gate_step(self, slug_expr: str, require: str) -> StepSpec:
        return StepSpec(
            name="Check verdict",
            id="gate",
            run=self._cli("run", "gate", "--agent-slug", f'"{expr(slug_expr)}"', "--require", require),
        )

    @staticmethod
    def _platform_env(*extra: str, after_preflight: bool = True) -> dict[str, str]:
        env = {
            "GITHUB_TOKEN": expr("secrets.GITHUB_TOKEN"),
            "FALLBACK_TOKEN": expr("secrets.FALLBACK_TOKEN"),
            "GH_APP_ID": expr("secrets.GH_APP_ID"),
            "GH_APP_PRIVATE_KEY": expr("secrets.GH_APP_PRIVATE_KEY"),
        }
        if after_preflight:
            # Later jobs use the identity preflight settled on
            env["REPO_AGENTS_TOKEN_SOURCE"] = expr("needs.global-preflight.outputs.token-source")
        for name in extra:
            env[name] = expr(f"secrets.{name}")
        return env

    def _preflight_job(self) -> JobSpec:
        return JobSpec(
            stage=StageName.GLOBAL_PREFLIGHT,
            name="Global pre-flight",
            outputs={
                "automation-identity": expr("steps.preflight.outputs.automation-identity"),
                "git-user": expr("steps.preflight.outputs.git-user"),
                "git-email": expr("steps.preflight.outputs.git-email"),
                "token-source": expr("steps.preflight.outputs.token-source"),
            },
            steps=[
                *self._setup_steps(checkout=False),
                StepSpec(
                    name="Verify credentials",
                    id="preflight",
                    run=self._cli("run", "preflight"),
                    env=self._platform_env(
                        "ANTHROPIC_API_KEY", "CLAUDE_CODE_OAUTH_TOKEN", after_preflight=False
                    ),
                ),
            ],
        )

    def _route_job(self) -> JobSpec:
        return JobSpec(
            stage=StageName.ROUTE_EVENT,
            name="Route event",
            needs=[StageName.GLOBAL_PREFLIGHT],
            outputs={
                "matching-agents": expr("steps.route.outputs.matching-agents"),
                "output-matrix": expr("steps.route.outputs.output-matrix"),
                "has-agents": expr("steps.route.outputs.has-agents"),
                "has-outputs": expr("steps.route.outputs.has-outputs"),
            },
            steps=[
                *self._setup_steps(),
                StepSpec(
                    name="Match agents",
                    id="route",
                    run=self._cli("run", "route"),
                    env={
                        **self._platform_env(),
                        "REPO_AGENTS_DISPATCH_AGENT": expr("inputs.agent"),
                    },
                ),
            ],
        )

    def _validation_job(self) -> JobSpec:
        slug = "matrix.agent.slug"
        return JobSpec(
            stage=StageName.AGENT_VALIDATION,
            name=f"Validate {expr('matrix.agent.name')}",
            needs=[StageName.GLOBAL_PREFLIGHT, StageName.ROUTE_EVENT],
            condition=HAS_AGENTS,
            matrix=MatrixSpec(dimension=MatrixDimension.AGENT, source=expr(f"fromJSON({AGENT_ROWS})")),
            steps=[
                *self._setup_steps(),
                StepSpec(
                    name="Run admission checks",
                    id="validate",
                    run=self._cli(
                        "run",
                        "validate",
                        "--agent",
                        f'"{expr("matrix.agent.path")}"',
                        "--automation-identity",
                        f'"{expr("needs.global-preflight.outputs.automation-identity")}"',
                    ),
                    env=self._platform_env(),
                ),
                self._upload(f"verdict--{expr(slug)}", f"{self._artifact_dir(slug)}/verdict.json"),
                self._upload(
                    f"run-marker--{expr(slug)}",
                    f"{self._artifact_dir(slug)}/verdict.json",
                    condition="steps.validate.outputs.should-run == 'true'",
                    **{"retention-days": 1},
                ),
            ],
        )

    def _execution_job(self, execution_minutes: int, total_minutes: int) -> JobSpec:
        slug = "matrix.agent.slug"
        admitted = "steps.gate.outputs.should-run == 'true'"
        return JobSpec(
            stage=StageName.AGENT_EXECUTION,
            name=f"Run {expr('matrix.agent.name')}",
            needs=[StageName.GLOBAL_PREFLIGHT, StageName.ROUTE_EVENT, StageName.AGENT_VALIDATION],
            condition=f"always() && needs.global-preflight.result == 'success' && {HAS_AGENTS}",
            matrix=MatrixSpec(dimension=MatrixDimension.AGENT, source=expr(f"fromJSON({AGENT_ROWS})")),
            timeout_minutes=total_minutes,
            steps=[
                *self._setup_steps(),
                self._download(f"verdict--{expr(slug)}", slug),
                self._gate_step(slug, "admitted"),
                StepSpec(
                    name="Install Claude Code",
                    run="npm install -g @anthropic-ai/claude-code",
                    condition=admitted,
                ),
                StepSpec(
                    name="Execute agent",
                    id="execute",
                    run=self._cli("run", "execute", "--agent", f'"{expr("matrix.agent.path")}"'),
                    env={
                        **self._platform_env("ANTHROPIC_API_KEY", "CLAUDE_CODE_OAUTH_TOKEN"),
                        "GIT_AUTHOR_NAME": expr("needs.global-preflight.outputs.git-user"),
                        "GIT_AUTHOR_EMAIL": expr("needs.global-preflight.outputs.git-email"),
                    },
                    condition=admitted,
                    timeout_minutes=execution_minutes,
                ),
                self._upload(
                    f"execution--{expr(slug)}",
                    f"{self._artifact_dir(slug)}/execution.json",
                    condition=f"always() && {admitted}",
                ),
            ],
        )

    def _outputs_job(self) -> JobSpec:
        slug = "matrix.slug"
        return JobSpec(
            stage=StageName.EXECUTE_OUTPUTS,
            name=f"{expr('matrix.kind')} for {expr('matrix.agent')}",
            needs=[StageName.GLOBAL_PREFLIGHT, StageName.ROUTE_EVENT, StageName.AGENT_EXECUTION],
            condition=f"always() && {HAS_OUTPUTS}",
            matrix=MatrixSpec(
                dimension=MatrixDimension.AGENT_OUTPUT, source=expr(f"fromJSON({OUTPUT_ROWS})")
            ),
            steps=[
                *self._setup_steps(),
                self._download(f"execution--{expr(slug)}", slug),
                self._gate_step(slug, "executed"),
                StepSpec(
                    name="Apply output",
                    run=self._cli(
                        "run",
                        "outputs",
                        "--agent",
                        f'"{expr("matrix.path")}"',
                        "--kind",
                        expr("matrix.kind"),
                    ),
                    env=self._platform_env(),
                    condition="steps.gate.outputs.should-run == 'true'",
                ),
                self._upload(
                    f"outputs--{expr(slug)}--{expr('matrix.kind')}",
                    f"{self._artifact_dir(slug)}/outputs-{expr('matrix.kind')}.json",
                    condition="always()",
                ),
            ],
        )

    def _audit_job(self) -> JobSpec:
        slug = "matrix.agent.slug"
        return JobSpec(
            stage=StageName.AUDIT_REPORT,
            name=f"Audit {expr('matrix.agent.name')}",
            needs=[
                StageName.GLOBAL_PREFLIGHT,
                StageName.ROUTE_EVENT,
                StageName.AGENT_VALIDATION,
                StageName.AGENT_EXECUTION,
                StageName.EXECUTE_OUTPUTS,
            ],
            condition=f"always() && {HAS_AGENTS}",
            matrix=MatrixSpec(dimension=MatrixDimension.AGENT, source=expr(f"fromJSON({AGENT_ROWS})")),
            steps=[
                *self._setup_steps(),
                self._download(f"verdict--{expr(slug)}", slug),
                self._download(f"execution--{expr(slug)}", slug),
                self._download(f"outputs--{expr(slug)}--*", slug, pattern=True),
                self._gate_step(slug, "admitted"),
                StepSpec(
                    name="Write audit record",
                    run=self._cli("run", "audit", "--agent", f'"{expr("matrix.agent.path")}"'),
                    env=self._platform_env(),
                    condition="steps.gate.outputs.should-run == 'true'",
                    continue_on_error=True,
                ),
            ],
        )


def compile_pipeline(
    definitions: Sequence[AgentDefinition], settings: Settings | None = None
) -> PipelineGraph:
    """Compile *definitions* with default or given settings."""
    return PipelineCompiler(settings).compile(definitions)
