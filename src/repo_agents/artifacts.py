"""JSON artifacts handed between pipeline stages.

Each agent gets one directory under the artifacts root, named by its slug::

    <root>/<slug>/verdict.json
    <root>/<slug>/execution.json
    <root>/<slug>/outputs-<kind>.json
    <root>/<slug>/audit.json

The workflow uploads and downloads these directories by artifact name, so a
stage only ever reads files written by an earlier stage of the same run.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TypeVar

from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

VERDICT_FILE = "verdict.json"
EXECUTION_FILE = "execution.json"
AUDIT_FILE = "audit.json"


def outputs_file(kind: str) -> str:
    return f"outputs-{kind}.json"


class ArtifactStore:
    """Reads and writes per-agent JSON artifacts under *root*."""

    def __init__(self, root: str | Path):
        self.root = Path(root)

    def agent_dir(self, slug: str) -> Path:
        return self.root / slug

    def path(self, slug: str, filename: str) -> Path:
        return self.agent_dir(slug) / filename

    def write(self, slug: str, filename: str, model: BaseModel) -> Path:
        path = self.path(slug, filename)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(model.model_dump_json(indent=2), encoding="utf-8")
        logger.debug("Wrote artifact %s", path)
        return path

    def read(self, slug: str, filename: str, model: type[M]) -> M | None:
        """Load an artifact, or None when it is missing or unreadable."""
        path = self.path(slug, filename)
        if not path.exists():
            return None
        try:
            return model.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as exc:
            logger.warning("Ignoring unreadable artifact %s: %s", path, exc)
            return None

    def read_all(self, slug: str, prefix: str, model: type[M]) -> list[M]:
        """Load every ``<prefix>*.json`` artifact for an agent, sorted by name."""
        directory = self.agent_dir(slug)
        if not directory.is_dir():
            return []
        loaded = []
        for path in sorted(directory.glob(f"{prefix}*.json")):
            item = self.read(slug, path.name, model)
            if item is not None:
                loaded.append(item)
        return loaded
