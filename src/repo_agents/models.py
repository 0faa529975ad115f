"""Core data models for repo-agents.

Two layers live here:

- The **front-matter schema** (``AgentFrontmatter`` and its parts) mirrors the
  YAML an author writes. It is only used by the parser's schema phase.
- The **domain records** (``AgentDefinition``, ``MatrixEntry``,
  ``ValidationVerdict``, ``RepositoryEvent``) are what the compiler, router
  and admission gate consume.
"""

from __future__ import annotations

import enum
import json
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


# ── Diagnostics ──────────────────────────────────────────────────────────────


class Severity(str, enum.Enum):
    ERROR = "error"
    WARNING = "warning"


class DiagnosticKind(str, enum.Enum):
    """Which phase produced a diagnostic."""

    STRUCTURAL = "structural"
    SCHEMA = "schema"
    SEMANTIC = "semantic"
    DISCOVERY = "discovery"


class Diagnostic(BaseModel):
    """A field-scoped problem found while reading an agent definition."""

    field: str
    message: str
    severity: Severity = Severity.ERROR
    kind: DiagnosticKind = DiagnosticKind.SCHEMA

    @property
    def is_error(self) -> bool:
        return self.severity == Severity.ERROR

    def __str__(self) -> str:
        return f"{self.field}: {self.message}"


# ── Enums ────────────────────────────────────────────────────────────────────


class PermissionLevel(str, enum.Enum):
    """Access level for one platform resource. Ordered none < read < write."""

    NONE = "none"
    READ = "read"
    WRITE = "write"

    @property
    def rank(self) -> int:
        return _PERMISSION_RANK[self]

    @classmethod
    def highest(cls, *levels: PermissionLevel) -> PermissionLevel:
        """Return the strongest of *levels* (``NONE`` for no levels)."""
        return max(levels, key=lambda lvl: lvl.rank, default=cls.NONE)


_PERMISSION_RANK = {
    PermissionLevel.NONE: 0,
    PermissionLevel.READ: 1,
    PermissionLevel.WRITE: 2,
}


class TriggerFamily(str, enum.Enum):
    """Platform event families an agent can react to.

    Values are the platform's event names so an incoming event maps directly.
    """

    ISSUES = "issues"
    PULL_REQUEST = "pull_request"
    DISCUSSION = "discussion"
    SCHEDULE = "schedule"
    WORKFLOW_DISPATCH = "workflow_dispatch"
    REPOSITORY_DISPATCH = "repository_dispatch"


#: Families whose filter is a list of action types.
ACTION_FAMILIES = (TriggerFamily.ISSUES, TriggerFamily.PULL_REQUEST, TriggerFamily.DISCUSSION)


class OutputKind(str, enum.Enum):
    """Platform mutations an agent may declare."""

    ADD_COMMENT = "add-comment"
    ADD_LABEL = "add-label"
    REMOVE_LABEL = "remove-label"
    CREATE_ISSUE = "create-issue"
    CREATE_DISCUSSION = "create-discussion"
    CREATE_PR = "create-pr"
    UPDATE_FILE = "update-file"
    CLOSE_ISSUE = "close-issue"
    CLOSE_PR = "close-pr"
    ASSIGN_ISSUE = "assign-issue"
    REQUEST_REVIEW = "request-review"
    MERGE_PR = "merge-pr"
    APPROVE_PR = "approve-pr"
    CREATE_RELEASE = "create-release"
    DELETE_BRANCH = "delete-branch"
    LOCK_CONVERSATION = "lock-conversation"
    PIN_ISSUE = "pin-issue"
    CONVERT_TO_DISCUSSION = "convert-to-discussion"
    EDIT_ISSUE = "edit-issue"
    REOPEN_ISSUE = "reopen-issue"
    SET_MILESTONE = "set-milestone"
    TRIGGER_WORKFLOW = "trigger-workflow"
    ADD_REACTION = "add-reaction"
    CREATE_BRANCH = "create-branch"


#: Outputs that write repository contents.
CONTENT_WRITING_OUTPUTS = (OutputKind.CREATE_PR, OutputKind.UPDATE_FILE)

#: Outputs the built-in mutation handlers apply.
HANDLED_OUTPUTS = (
    OutputKind.ADD_COMMENT,
    OutputKind.ADD_LABEL,
    OutputKind.REMOVE_LABEL,
    OutputKind.CREATE_ISSUE,
    OutputKind.CLOSE_ISSUE,
    OutputKind.CLOSE_PR,
    OutputKind.CREATE_PR,
    OutputKind.UPDATE_FILE,
)


# ── Front-matter schema (what authors write) ─────────────────────────────────


class TypesFilter(BaseModel):
    types: list[str] = Field(default_factory=list)


class ScheduleEntry(BaseModel):
    cron: str = Field(min_length=1)


class WorkflowInput(BaseModel):
    description: str
    required: bool = False
    default: str | None = None
    type: Literal["string", "boolean", "choice"] | None = None
    options: list[str] | None = None


class WorkflowDispatchTrigger(BaseModel):
    inputs: dict[str, WorkflowInput] = Field(default_factory=dict)


class TriggerConfig(BaseModel):
    """The ``on:`` block. Each present key is one trigger family."""

    issues: TypesFilter | None = None
    pull_request: TypesFilter | None = None
    discussion: TypesFilter | None = None
    schedule: list[ScheduleEntry] | None = None
    workflow_dispatch: WorkflowDispatchTrigger | None = None
    repository_dispatch: TypesFilter | None = None

    @model_validator(mode="before")
    @classmethod
    def _normalize_dispatch(cls, data: Any) -> Any:
        # `workflow_dispatch:` with no body, or `workflow_dispatch: true`, enables it
        if isinstance(data, dict) and "workflow_dispatch" in data:
            data = dict(data)
            value = data["workflow_dispatch"]
            if value is None or value is True:
                data["workflow_dispatch"] = {}
            elif value is False:
                data.pop("workflow_dispatch")
        return data

    def families(self) -> list[TriggerFamily]:
        """Trigger families declared by this block, in a stable order."""
        return [family for family in TriggerFamily if getattr(self, family.value) is not None]

    def action_types(self, family: TriggerFamily) -> list[str]:
        block = getattr(self, family.value, None)
        if isinstance(block, TypesFilter):
            return list(block.types)
        return []

    @property
    def crons(self) -> list[str]:
        return [entry.cron for entry in self.schedule or []]

    @property
    def dispatch_types(self) -> list[str]:
        return self.action_types(TriggerFamily.REPOSITORY_DISPATCH)

    @property
    def manual_dispatch(self) -> bool:
        return self.workflow_dispatch is not None


class PermissionSet(BaseModel):
    """Per-resource access levels requested by one agent."""

    contents: PermissionLevel = PermissionLevel.NONE
    issues: PermissionLevel = PermissionLevel.NONE
    pull_requests: PermissionLevel = PermissionLevel.NONE
    discussions: PermissionLevel = PermissionLevel.NONE

    def levels(self) -> dict[str, PermissionLevel]:
        return {name: getattr(self, name) for name in PermissionSet.model_fields}


class ClaudeConfig(BaseModel):
    """Backend settings; unknown keys are rejected rather than ignored."""

    model_config = ConfigDict(extra="forbid")

    model: str | None = None
    max_tokens: int | None = Field(default=None, ge=1)


class OutputConstraints(BaseModel):
    """Settings block for one output kind.

    ``max`` and ``sign`` are the well-known knobs; any other key is kept in
    ``extra`` untouched so handlers can read kind-specific settings.
    """

    max: int | None = Field(default=None, ge=1)
    sign: bool = False
    extra: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _collect_extra(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        known = {"max", "sign", "extra"}
        extra = dict(data.get("extra") or {})
        extra.update({k: v for k, v in data.items() if k not in known})
        result = {k: v for k, v in data.items() if k in known}
        result["extra"] = extra
        return result


class PreFlightConfig(BaseModel):
    check_blocking_issues: bool = False
    max_estimate: int | None = Field(default=None, ge=1)


class AuditConfig(BaseModel):
    create_issues: bool = True
    labels: list[str] = Field(default_factory=list)
    assignees: list[str] = Field(default_factory=list)


class TimeoutConfig(BaseModel):
    """Job timeouts in minutes."""

    execution: int = Field(default=30, ge=1)
    total: int | None = Field(default=None, ge=1)
    context_collection: int = Field(default=5, ge=1)

    @model_validator(mode="after")
    def _derive_total(self) -> TimeoutConfig:
        if self.total is None:
            self.total = self.execution + 15
        return self


class ContextSourceConfig(BaseModel):
    """Filters for one data source; only ``limit`` is checked here."""

    model_config = ConfigDict(extra="allow")

    limit: int | None = Field(default=None, ge=1, le=1000)


class ContextConfig(BaseModel):
    """Data-collection config, handed to the context collaborator as-is."""

    model_config = ConfigDict(extra="allow")

    issues: ContextSourceConfig | None = None
    pull_requests: ContextSourceConfig | None = None
    discussions: ContextSourceConfig | None = None
    commits: ContextSourceConfig | None = None
    releases: ContextSourceConfig | None = None
    workflow_runs: ContextSourceConfig | None = None
    security_alerts: ContextSourceConfig | None = None
    dependabot_prs: ContextSourceConfig | None = None
    code_scanning_alerts: ContextSourceConfig | None = None
    deployments: ContextSourceConfig | None = None
    milestones: ContextSourceConfig | None = None
    contributors: ContextSourceConfig | None = None
    comments: ContextSourceConfig | None = None
    repository_traffic: ContextSourceConfig | None = None
    branches: ContextSourceConfig | None = None
    check_runs: ContextSourceConfig | None = None
    stars: bool | None = None
    forks: bool | None = None
    since: str | None = None
    min_items: int | None = Field(default=None, ge=0)


class AgentFrontmatter(BaseModel):
    """Schema for the YAML front-matter of an agent file.

    Hyphenated keys (``allowed-users``) are accepted through aliases, so
    diagnostics point at the key the author actually wrote.
    """

    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(min_length=1)
    on: TriggerConfig
    permissions: PermissionSet = Field(default_factory=PermissionSet)
    provider: Literal["claude-code"] = "claude-code"
    claude: ClaudeConfig = Field(default_factory=ClaudeConfig)
    outputs: dict[OutputKind, OutputConstraints] = Field(default_factory=dict)
    allowed_actors: list[str] = Field(default_factory=list, alias="allowed-actors")
    allowed_users: list[str] = Field(default_factory=list, alias="allowed-users")
    allowed_teams: list[str] = Field(default_factory=list, alias="allowed-teams")
    allowed_paths: list[str] = Field(default_factory=list, alias="allowed-paths")
    trigger_labels: list[str] = Field(default_factory=list)
    skip_labels: list[str] = Field(default_factory=list)
    allow_bot_triggers: bool = False
    max_open_prs: int | None = Field(default=None, ge=1)
    rate_limit_minutes: int = Field(default=5, ge=0)
    pre_flight: PreFlightConfig = Field(default_factory=PreFlightConfig)
    audit: AuditConfig = Field(default_factory=AuditConfig)
    context: ContextConfig | None = None
    progress_comment: bool | None = None
    timeout: TimeoutConfig = Field(default_factory=TimeoutConfig)

    @field_validator("outputs", mode="before")
    @classmethod
    def _expand_output_flags(cls, v: Any) -> Any:
        # `add-comment: true` declares the output with defaults, `false` omits it
        if not isinstance(v, dict):
            return v
        expanded = {}
        for kind, value in v.items():
            if value is False:
                continue
            expanded[kind] = {} if value is True or value is None else value
        return expanded

    @field_validator("timeout", mode="before")
    @classmethod
    def _timeout_minutes(cls, v: Any) -> Any:
        if isinstance(v, int) and not isinstance(v, bool):
            return {"execution": v}
        return v


# ── Domain records ───────────────────────────────────────────────────────────


_SLUG_RE = re.compile(r"[^a-z0-9]+")


def slugify(name: str) -> str:
    """Derive a stable identifier from a human-readable agent name.

    Lowercases, collapses every run of non-alphanumerics into ``-`` and trims
    separators from both ends: ``"Issue Triage!"`` → ``"issue-triage"``.
    """
    return _SLUG_RE.sub("-", name.lower()).strip("-")


class OutputCapability(BaseModel):
    """One declared, constrained permission to perform a platform mutation."""

    model_config = ConfigDict(frozen=True)

    kind: OutputKind
    max: int | None = None
    sign: bool = False
    allowed_paths: tuple[str, ...] = ()
    extra: dict[str, Any] = Field(default_factory=dict)


class AuthorizationRule(BaseModel):
    """Who may trigger an agent, and which labels gate it.

    Entries within one category are OR-combined.
    """

    model_config = ConfigDict(frozen=True)

    allowed_users: tuple[str, ...] = ()
    allowed_teams: tuple[str, ...] = ()
    allowed_actors: tuple[str, ...] = ()
    trigger_labels: tuple[str, ...] = ()
    skip_labels: tuple[str, ...] = ()
    allow_bot_triggers: bool = False

    @property
    def has_allow_lists(self) -> bool:
        return bool(self.allowed_users or self.allowed_teams or self.allowed_actors)


class RateLimitPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    interval_minutes: int = 5


class PreFlightPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    check_blocking_issues: bool = False
    max_estimate: int | None = None


class AuditPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    create_issues: bool = True
    labels: tuple[str, ...] = ()
    assignees: tuple[str, ...] = ()


class AgentDefinition(BaseModel):
    """A parsed, schema-valid agent. Immutable; re-created on every pass."""

    model_config = ConfigDict(frozen=True)

    name: str
    path: str = ""
    triggers: TriggerConfig
    permissions: PermissionSet = Field(default_factory=PermissionSet)
    provider: str = "claude-code"
    claude: ClaudeConfig = Field(default_factory=ClaudeConfig)
    outputs: tuple[OutputCapability, ...] = ()
    allowed_paths: tuple[str, ...] = ()
    authorization: AuthorizationRule = Field(default_factory=AuthorizationRule)
    max_open_prs: int | None = None
    rate_limit: RateLimitPolicy = Field(default_factory=RateLimitPolicy)
    pre_flight: PreFlightPolicy = Field(default_factory=PreFlightPolicy)
    audit: AuditPolicy = Field(default_factory=AuditPolicy)
    context: ContextConfig | None = None
    progress_comment: bool | None = None
    timeout: TimeoutConfig = Field(default_factory=TimeoutConfig)
    instructions: str = ""

    @classmethod
    def from_frontmatter(cls, fm: AgentFrontmatter, instructions: str, path: str = "") -> AgentDefinition:
        allowed_paths = tuple(fm.allowed_paths)
        return cls(
            name=fm.name,
            path=path,
            triggers=fm.on,
            permissions=fm.permissions,
            provider=fm.provider,
            claude=fm.claude,
            outputs=tuple(
                OutputCapability(
                    kind=kind,
                    max=constraints.max,
                    sign=constraints.sign,
                    allowed_paths=allowed_paths,
                    extra=constraints.extra,
                )
                for kind, constraints in fm.outputs.items()
            ),
            allowed_paths=allowed_paths,
            authorization=AuthorizationRule(
                allowed_users=tuple(fm.allowed_users),
                allowed_teams=tuple(fm.allowed_teams),
                allowed_actors=tuple(fm.allowed_actors),
                trigger_labels=tuple(fm.trigger_labels),
                skip_labels=tuple(fm.skip_labels),
                allow_bot_triggers=fm.allow_bot_triggers,
            ),
            max_open_prs=fm.max_open_prs,
            rate_limit=RateLimitPolicy(interval_minutes=fm.rate_limit_minutes),
            pre_flight=PreFlightPolicy(
                check_blocking_issues=fm.pre_flight.check_blocking_issues,
                max_estimate=fm.pre_flight.max_estimate,
            ),
            audit=AuditPolicy(
                create_issues=fm.audit.create_issues,
                labels=tuple(fm.audit.labels),
                assignees=tuple(fm.audit.assignees),
            ),
            context=fm.context,
            progress_comment=fm.progress_comment,
            timeout=fm.timeout,
            instructions=instructions,
        )

    @property
    def slug(self) -> str:
        return slugify(self.name)

    @property
    def output_kinds(self) -> list[str]:
        return [cap.kind.value for cap in self.outputs]

    def output(self, kind: OutputKind | str) -> OutputCapability | None:
        kind = OutputKind(kind)
        for cap in self.outputs:
            if cap.kind == kind:
                return cap
        return None

    @property
    def use_progress_comment(self) -> bool:
        """Explicit setting wins; otherwise on for issue and PR agents."""
        if self.progress_comment is not None:
            return self.progress_comment
        return self.triggers.issues is not None or self.triggers.pull_request is not None


# ── Matrix entries (per-agent pipeline records) ──────────────────────────────


class MatrixConfig(BaseModel):
    has_context: bool = False
    has_outputs: bool = False
    output_types: list[str] = Field(default_factory=list)
    use_progress_comment: bool = False
    rate_limit_minutes: int = 5
    max_open_prs: int | None = None
    trigger_labels: list[str] = Field(default_factory=list)
    skip_labels: list[str] = Field(default_factory=list)
    allowed_users: list[str] = Field(default_factory=list)
    allowed_actors: list[str] = Field(default_factory=list)
    allowed_teams: list[str] = Field(default_factory=list)
    allow_bot_triggers: bool = False
    check_blocking_issues: bool = False
    max_estimate: int | None = None
    timeout: TimeoutConfig = Field(default_factory=TimeoutConfig)
    create_audit_issues: bool = True


class MatrixTriggers(BaseModel):
    issues: list[str] = Field(default_factory=list)
    pull_request: list[str] = Field(default_factory=list)
    discussion: list[str] = Field(default_factory=list)
    schedule: list[str] = Field(default_factory=list)
    repository_dispatch: list[str] = Field(default_factory=list)
    workflow_dispatch: bool = False

    def action_types(self, family: TriggerFamily) -> list[str]:
        return getattr(self, family.value, [])


class MatrixEntry(BaseModel):
    """The per-agent record fanned out to the matrix stages of a pipeline run."""

    name: str
    slug: str
    path: str
    config: MatrixConfig
    triggers: MatrixTriggers

    @classmethod
    def from_definition(cls, agent: AgentDefinition) -> MatrixEntry:
        auth = agent.authorization
        on = agent.triggers
        return cls(
            name=agent.name,
            slug=agent.slug,
            path=agent.path,
            config=MatrixConfig(
                has_context=agent.context is not None,
                has_outputs=bool(agent.outputs),
                output_types=agent.output_kinds,
                use_progress_comment=agent.use_progress_comment,
                rate_limit_minutes=agent.rate_limit.interval_minutes,
                max_open_prs=agent.max_open_prs,
                trigger_labels=list(auth.trigger_labels),
                skip_labels=list(auth.skip_labels),
                allowed_users=list(auth.allowed_users),
                allowed_actors=list(auth.allowed_actors),
                allowed_teams=list(auth.allowed_teams),
                allow_bot_triggers=auth.allow_bot_triggers,
                check_blocking_issues=agent.pre_flight.check_blocking_issues,
                max_estimate=agent.pre_flight.max_estimate,
                timeout=agent.timeout,
                create_audit_issues=agent.audit.create_issues,
            ),
            triggers=MatrixTriggers(
                issues=on.action_types(TriggerFamily.ISSUES),
                pull_request=on.action_types(TriggerFamily.PULL_REQUEST),
                discussion=on.action_types(TriggerFamily.DISCUSSION),
                schedule=on.crons,
                repository_dispatch=on.dispatch_types,
                workflow_dispatch=on.manual_dispatch,
            ),
        )


# ── Events ───────────────────────────────────────────────────────────────────


class RepositoryEvent(BaseModel):
    """One triggering platform event, as seen by the router and the gate."""

    event_name: str = Field(description="Platform event name, e.g. 'issues', 'schedule'")
    action: str | None = Field(default=None, description="Event action, e.g. 'opened'")
    actor: str = Field(default="", description="Login of the account that caused the event")
    payload: dict[str, Any] = Field(default_factory=dict)
    dispatch_agent: str | None = Field(
        default=None, description="Agent explicitly named by a manual dispatch"
    )

    @classmethod
    def from_payload(
        cls,
        event_name: str,
        payload: dict[str, Any],
        *,
        actor: str | None = None,
        dispatch_agent: str | None = None,
    ) -> RepositoryEvent:
        """Build an event from a raw webhook payload.

        For repository dispatch the payload's ``action`` is the dispatch type.
        """
        sender = (payload.get("sender") or {}).get("login", "")
        return cls(
            event_name=event_name,
            action=payload.get("action"),
            actor=actor or sender,
            payload=payload,
            dispatch_agent=dispatch_agent or None,
        )

    @classmethod
    def from_file(
        cls,
        event_name: str,
        event_path: str | Path,
        *,
        actor: str | None = None,
        dispatch_agent: str | None = None,
    ) -> RepositoryEvent:
        payload = json.loads(Path(event_path).read_text(encoding="utf-8"))
        return cls.from_payload(event_name, payload, actor=actor, dispatch_agent=dispatch_agent)

    @property
    def family(self) -> TriggerFamily | None:
        try:
            return TriggerFamily(self.event_name)
        except ValueError:
            return None

    @property
    def full_type(self) -> str:
        """e.g. 'issues.opened', 'schedule'."""
        if self.action:
            return f"{self.event_name}.{self.action}"
        return self.event_name

    @property
    def schedule(self) -> str | None:
        """Cron string of a schedule event."""
        return self.payload.get("schedule")

    @property
    def issue(self) -> dict | None:
        return self.payload.get("issue")

    @property
    def pull_request(self) -> dict | None:
        return self.payload.get("pull_request")

    @property
    def discussion(self) -> dict | None:
        return self.payload.get("discussion")

    @property
    def subject(self) -> dict | None:
        """The issue, PR or discussion the event is about, if any."""
        return self.issue or self.pull_request or self.discussion

    @property
    def subject_number(self) -> int | None:
        subject = self.subject
        return subject.get("number") if subject else None

    @property
    def has_labels(self) -> bool:
        """Whether this event's family carries labels at all."""
        return self.subject is not None and self.family in ACTION_FAMILIES

    @property
    def labels(self) -> list[str]:
        subject = self.subject or {}
        return [lbl.get("name", "") for lbl in subject.get("labels") or []]

    @property
    def repository(self) -> str | None:
        return (self.payload.get("repository") or {}).get("full_name")


# ── Validation verdict ───────────────────────────────────────────────────────


class ValidationVerdict(BaseModel):
    """Admit/skip decision for one (agent, event) pair."""

    agent: str
    should_run: bool
    skip_reason: str | None = None
    failed_check: str | None = None
    bot_triggered: bool = False
    rate_limited: bool = False
    pr_limited: bool = False
    blocked_by_issues: bool = False
    target_number: int | None = None
    event_name: str | None = None
    event_snapshot: dict[str, Any] | None = Field(
        default=None, description="Event payload exactly as inspected at validation time"
    )
    progress_comment_id: int | None = None
    checked_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def admit(cls, agent: str, event: RepositoryEvent) -> ValidationVerdict:
        return cls(
            agent=agent,
            should_run=True,
            target_number=event.subject_number,
            event_name=event.event_name,
            event_snapshot=json.loads(json.dumps(event.payload)),
        )

    @classmethod
    def skip(cls, agent: str, check: str, reason: str, **flags: bool) -> ValidationVerdict:
        return cls(agent=agent, should_run=False, skip_reason=reason, failed_check=check, **flags)
