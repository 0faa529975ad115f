"""Pipeline graph models — the compiled, serializable job structure.

Key exports:
    Graph models: PipelineGraph, JobSpec, StepSpec, MatrixSpec
    Enums: StageName, MatrixDimension
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from repo_agents.models import MatrixEntry
from repo_agents.pipeline.routing import RoutingTable


# ── Enums ────────────────────────────────────────────────────────────────────


class StageName(str, Enum):
    """The six fixed stages, in dependency order."""

    GLOBAL_PREFLIGHT = "global-preflight"
    ROUTE_EVENT = "route-event"
    AGENT_VALIDATION = "agent-validation"
    AGENT_EXECUTION = "agent-execution"
    EXECUTE_OUTPUTS = "execute-outputs"
    AUDIT_REPORT = "audit-report"


class MatrixDimension(str, Enum):
    """What one matrix row represents."""

    AGENT = "agent"
    AGENT_OUTPUT = "agent-output"


# ── Graph models ─────────────────────────────────────────────────────────────


class MatrixSpec(BaseModel):
    """Fan-out of a stage over rows produced by an upstream stage."""

    dimension: MatrixDimension
    source: str = Field(description="Expression yielding the JSON row list")
    fail_fast: bool = False


class StepSpec(BaseModel):
    name: str
    id: str | None = None
    uses: str | None = None
    run: str | None = None
    with_: dict[str, Any] = Field(default_factory=dict)
    env: dict[str, str] = Field(default_factory=dict)
    condition: str | None = None
    continue_on_error: bool = False
    timeout_minutes: int | None = None


class JobSpec(BaseModel):
    """One stage of the compiled graph."""

    stage: StageName
    name: str
    needs: list[StageName] = Field(default_factory=list)
    condition: str | None = Field(default=None, description="Job-level run predicate")
    matrix: MatrixSpec | None = None
    outputs: dict[str, str] = Field(default_factory=dict)
    steps: list[StepSpec] = Field(default_factory=list)
    timeout_minutes: int | None = None

    @property
    def id(self) -> str:
        return self.stage.value


class PipelineGraph(BaseModel):
    """The compiled artifact: triggers, permissions, entries and jobs."""

    name: str
    triggers: dict[str, Any]
    permissions: dict[str, str]
    concurrency: dict[str, str] | None = None
    routing: RoutingTable
    entries: list[MatrixEntry]
    jobs: list[JobSpec]

    def job(self, stage: StageName | str) -> JobSpec:
        stage = StageName(stage)
        for job in self.jobs:
            if job.stage == stage:
                return job
        raise KeyError(stage.value)

    @property
    def stage_names(self) -> list[str]:
        return [job.id for job in self.jobs]

    def entry(self, name: str) -> MatrixEntry | None:
        for entry in self.entries:
            if entry.name == name:
                return entry
        return None
