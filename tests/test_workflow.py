"""Tests for workflow document serialization."""

from __future__ import annotations

import pytest
import yaml

from conftest import ISSUE_AGENT
from repo_agents.config import Settings
from repo_agents.pipeline import PipelineCompiler, dump, render, write_workflow
from repo_agents.pipeline.workflow import HEADER


@pytest.fixture
def graph(make_agent):
    return PipelineCompiler(Settings(workflow_name="Repo Agents")).compile(
        [
            make_agent(ISSUE_AGENT.split("---")[1]),
            make_agent("name: Nightly\non:\n  schedule:\n    - cron: '0 3 * * *'", path="nightly.md"),
        ]
    )


class TestRender:
    def test_top_level_keys(self, graph):
        document = render(graph)
        assert list(document) == ["name", "on", "concurrency", "permissions", "jobs"]
        assert document["name"] == "Repo Agents"
        assert "workflow_dispatch" in document["on"]
        assert document["on"]["schedule"] == [{"cron": "0 3 * * *"}]

    def test_jobs_in_stage_order(self, graph):
        assert list(render(graph)["jobs"]) == [
            "global-preflight",
            "route-event",
            "agent-validation",
            "agent-execution",
            "execute-outputs",
            "audit-report",
        ]

    def test_matrix_keys(self, graph):
        jobs = render(graph)["jobs"]
        assert list(jobs["agent-validation"]["strategy"]["matrix"]) == ["agent"]
        assert list(jobs["execute-outputs"]["strategy"]["matrix"]) == ["include"]
        assert jobs["agent-execution"]["strategy"]["fail-fast"] is False
        assert "strategy" not in jobs["route-event"]

    def test_runner(self, graph):
        jobs = render(graph, runner="self-hosted")["jobs"]
        assert {job["runs-on"] for job in jobs.values()} == {"self-hosted"}

    def test_needs_and_steps(self, graph):
        jobs = render(graph)["jobs"]
        assert jobs["route-event"]["needs"] == ["global-preflight"]
        assert "needs" not in jobs["global-preflight"]
        for job in jobs.values():
            assert job["steps"]
            assert all("name" in step for step in job["steps"])


class TestDump:
    def test_header_and_round_trip(self, graph):
        text = dump(graph)
        assert text.startswith(HEADER)
        loaded = yaml.safe_load(text)
        # "on" must stay a string key, not YAML 1.1's boolean True
        assert "on" in loaded
        assert True not in loaded
        assert loaded == render(graph)

    def test_write_workflow_creates_parents(self, graph, tmp_path):
        path = write_workflow(graph, tmp_path / ".github" / "workflows" / "agents.yml")
        assert path.read_text() == dump(graph)
