"""Exceptions raised across repo-agents.

Per-file parse and validation problems are not exceptions: they are returned
as :class:`~repo_agents.models.Diagnostic` values so every problem can be
reported in one pass. The classes here cover failures that abort an operation.
"""

from __future__ import annotations

from repo_agents.models import Diagnostic


class CompileError(ValueError):
    """The definition set cannot be compiled into a pipeline.

    ``problems`` holds ``(path, diagnostic)`` pairs so the CLI can report
    file, field path and message for each one.
    """

    def __init__(self, message: str, problems: list[tuple[str, Diagnostic]] | None = None):
        super().__init__(message)
        self.problems = problems or []

    def format_problems(self) -> list[str]:
        return [f"{path or '<input>'}: {diag.field}: {diag.message}" for path, diag in self.problems]


class DiscoveryError(OSError):
    """The agents directory could not be read."""


class PreflightError(RuntimeError):
    """A global precondition for running any agent is not met."""


class ExecutionFailure(RuntimeError):
    """The execution backend reported a failure for an agent."""


class OutputFailure(RuntimeError):
    """A proposed platform mutation was rejected or failed."""
