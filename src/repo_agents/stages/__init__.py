"""Runtime stage entry points invoked by the compiled workflow.

Key exports:
    run_preflight — global-preflight
    run_route — route-event
    run_validate, read_gate — agent-validation and per-entry gating
    run_execute — agent-execution
    run_outputs — execute-outputs
    run_audit — audit-report
    ProgressReporter — progress comments edited across the stages above
"""

from repo_agents.stages.audit import AuditRecord, run_audit
from repo_agents.stages.execute import (
    ClaudeCodeExecutor,
    ExecutionResult,
    ExecutionStatus,
    GitHubContextCollector,
    ProposedMutation,
    run_execute,
)
from repo_agents.stages.outputs import MutationHandlerRegistry, OutputResult, OutputStatus, run_outputs
from repo_agents.stages.progress import ProgressReporter, ProgressState
from repo_agents.stages.preflight import PreflightResult, run_preflight
from repo_agents.stages.route import RouteResult, run_route
from repo_agents.stages.validate import read_gate, run_validate

__all__ = [
    "run_preflight",
    "PreflightResult",
    "run_route",
    "RouteResult",
    "run_validate",
    "read_gate",
    "run_execute",
    "ExecutionResult",
    "ExecutionStatus",
    "ProposedMutation",
    "ClaudeCodeExecutor",
    "GitHubContextCollector",
    "run_outputs",
    "OutputResult",
    "OutputStatus",
    "MutationHandlerRegistry",
    "run_audit",
    "AuditRecord",
    "ProgressReporter",
    "ProgressState",
]
