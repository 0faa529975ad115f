"""route-event: discover definitions afresh and match the triggering event."""

from __future__ import annotations

import json
import logging
from pathlib import Path

from pydantic import BaseModel, Field

from repo_agents.discovery import discover_agents
from repo_agents.models import MatrixEntry, RepositoryEvent
from repo_agents.platform import PlatformQueries
from repo_agents.router import EventRouter

logger = logging.getLogger(__name__)


class RouteResult(BaseModel):
    entries: list[MatrixEntry] = Field(default_factory=list)
    # path → error messages for definitions excluded from routing
    excluded: dict[str, list[str]] = Field(default_factory=dict)

    @property
    def output_rows(self) -> list[dict[str, str]]:
        """One row per (matched agent, declared output kind)."""
        return [
            {"agent": entry.name, "slug": entry.slug, "path": entry.path, "kind": kind}
            for entry in self.entries
            for kind in entry.config.output_types
        ]

    def outputs(self) -> dict[str, str]:
        rows = self.output_rows
        return {
            "matching-agents": json.dumps([e.model_dump(mode="json") for e in self.entries]),
            "output-matrix": json.dumps(rows),
            "has-agents": "true" if self.entries else "false",
            "has-outputs": "true" if rows else "false",
        }


async def run_route(
    agents_dir: str | Path,
    event: RepositoryEvent,
    platform: PlatformQueries | None = None,
) -> RouteResult:
    """Route *event* against every definition currently under *agents_dir*.

    A malformed definition is logged and excluded; it never blocks the others.
    """
    discovery = discover_agents(agents_dir)
    if discovery.error is not None:
        logger.warning("%s; no agents will run", discovery.error)
        return RouteResult()

    excluded: dict[str, list[str]] = {}
    for path, diagnostics in discovery.failures.items():
        excluded[path] = [str(d) for d in diagnostics]
        logger.warning("Skipping invalid agent %s: %s", path, "; ".join(excluded[path]))
    for path, diagnostics in discovery.warnings.items():
        for diag in diagnostics:
            logger.info("%s: %s", path, diag)

    definitions = discovery.definitions
    logger.info("Discovered %d valid agent(s) in %s", len(definitions), agents_dir)

    entries = await EventRouter(platform).route(definitions, event)
    return RouteResult(entries=entries, excluded=excluded)
