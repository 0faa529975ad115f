"""Serialize a PipelineGraph as a GitHub Actions workflow document."""

from __future__ import annotations

import logging
from pathlib import Path

import yaml

from repo_agents.pipeline.models import JobSpec, MatrixDimension, PipelineGraph, StepSpec

logger = logging.getLogger(__name__)

HEADER = (
    "# Generated by repo-agents. Do not edit by hand.\n"
    "# Regenerate with: repo-agents compile\n"
)


def _step(step: StepSpec) -> dict:
    out: dict = {"name": step.name}
    if step.id:
        out["id"] = step.id
    if step.condition:
        out["if"] = step.condition
    if step.uses:
        out["uses"] = step.uses
    if step.with_:
        out["with"] = dict(step.with_)
    if step.run:
        out["run"] = step.run
    if step.env:
        out["env"] = dict(step.env)
    if step.continue_on_error:
        out["continue-on-error"] = True
    if step.timeout_minutes:
        out["timeout-minutes"] = step.timeout_minutes
    return out


def _job(job: JobSpec, runner: str) -> dict:
    out: dict = {"name": job.name, "runs-on": runner}
    if job.needs:
        out["needs"] = [stage.value for stage in job.needs]
    if job.condition:
        out["if"] = job.condition
    if job.matrix:
        key = "agent" if job.matrix.dimension == MatrixDimension.AGENT else "include"
        out["strategy"] = {"fail-fast": job.matrix.fail_fast, "matrix": {key: job.matrix.source}}
    if job.timeout_minutes:
        out["timeout-minutes"] = job.timeout_minutes
    if job.outputs:
        out["outputs"] = dict(job.outputs)
    out["steps"] = [_step(step) for step in job.steps]
    return out


def render(graph: PipelineGraph, *, runner: str = "ubuntu-latest") -> dict:
    """Build the workflow document as plain data."""
    document: dict = {"name": graph.name, "on": graph.triggers}
    if graph.concurrency:
        document["concurrency"] = dict(graph.concurrency)
    document["permissions"] = dict(graph.permissions)
    document["jobs"] = {job.id: _job(job, runner) for job in graph.jobs}
    return document


def dump(graph: PipelineGraph, *, runner: str = "ubuntu-latest") -> str:
    body = yaml.safe_dump(
        render(graph, runner=runner), sort_keys=False, default_flow_style=False, width=1000
    )
    return HEADER + body


def write_workflow(graph: PipelineGraph, path: str | Path, *, runner: str = "ubuntu-latest") -> Path:
    """Write the workflow file, creating parent directories."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dump(graph, runner=runner), encoding="utf-8")
    logger.info("Wrote workflow %s (%d jobs)", path, len(graph.jobs))
    return path
