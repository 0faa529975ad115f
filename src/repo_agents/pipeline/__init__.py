"""Compiled pipeline — aggregation, graph models, compiler and serialization.

Key exports:
    PipelineCompiler, compile_pipeline — definitions → PipelineGraph
    RoutingTable, aggregate — trigger union and permission max
    PipelineGraph, JobSpec, StepSpec, MatrixSpec — graph models
    render, dump, write_workflow — workflow document output
"""

from repo_agents.pipeline.compiler import (
    BASELINE_PERMISSIONS,
    PipelineCompiler,
    build_concurrency,
    build_permissions,
    build_triggers,
    check_definitions,
    compile_pipeline,
)
from repo_agents.pipeline.models import (
    JobSpec,
    MatrixDimension,
    MatrixSpec,
    PipelineGraph,
    StageName,
    StepSpec,
)
from repo_agents.pipeline.routing import RoutingTable, aggregate
from repo_agents.pipeline.workflow import dump, render, write_workflow

__all__ = [
    # Compiler
    "PipelineCompiler",
    "compile_pipeline",
    "check_definitions",
    "build_triggers",
    "build_permissions",
    "build_concurrency",
    "BASELINE_PERMISSIONS",
    # Aggregation
    "RoutingTable",
    "aggregate",
    # Graph models
    "PipelineGraph",
    "JobSpec",
    "StepSpec",
    "MatrixSpec",
    "MatrixDimension",
    "StageName",
    # Serialization
    "render",
    "dump",
    "write_workflow",
]
