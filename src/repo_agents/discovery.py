"""Discover agent definition files under a directory tree.

Discovery is side-effect free: it returns paths, parsed definitions and the
diagnostics for files that failed, and leaves logging and formatting to the
caller (CLI or stage runner).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from repo_agents.errors import DiscoveryError
from repo_agents.models import AgentDefinition, Diagnostic
from repo_agents.parser import ParseResult, load_agent, parse_file

AGENT_SUFFIX = ".md"


@dataclass
class DiscoveryResult:
    """All agent files found under one directory."""

    agents_dir: Path
    results: list[ParseResult] = field(default_factory=list)
    error: DiscoveryError | None = None

    @property
    def files(self) -> list[str]:
        return [r.path for r in self.results]

    @property
    def definitions(self) -> list[AgentDefinition]:
        """Definitions from files without error diagnostics."""
        return [r.definition for r in self.results if r.ok]

    @property
    def failures(self) -> dict[str, list[Diagnostic]]:
        return {r.path: r.errors for r in self.results if not r.ok}

    @property
    def warnings(self) -> dict[str, list[Diagnostic]]:
        return {r.path: r.warnings for r in self.results if r.warnings}


def find_agent_files(agents_dir: str | Path) -> list[Path]:
    """Return every ``*.md`` file below *agents_dir*, recursively, sorted.

    Raises:
        DiscoveryError: If the directory is missing or unreadable.
    """
    root = Path(agents_dir)
    if not root.is_dir():
        raise DiscoveryError(f"Agents directory not found: {root}")
    try:
        return sorted(p for p in root.rglob(f"*{AGENT_SUFFIX}") if p.is_file())
    except OSError as exc:
        raise DiscoveryError(f"Failed to read agents directory {root}: {exc}") from exc


def discover_agents(agents_dir: str | Path, *, semantic: bool = True) -> DiscoveryResult:
    """Parse every agent file under *agents_dir*.

    With ``semantic=True`` each parsed definition also goes through the
    cross-field validation pass. An unreadable directory is reported through
    ``DiscoveryResult.error`` and yields zero agents.
    """
    result = DiscoveryResult(agents_dir=Path(agents_dir))
    try:
        paths = find_agent_files(agents_dir)
    except DiscoveryError as exc:
        result.error = exc
        return result

    load = load_agent if semantic else parse_file
    result.results = [load(path) for path in paths]
    return result
