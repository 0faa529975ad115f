"""GitHub Actions runner integration: step outputs, summaries and masking."""

from __future__ import annotations

import logging
import os
import uuid
from collections.abc import Mapping
from pathlib import Path

logger = logging.getLogger(__name__)


def set_outputs(outputs: Mapping[str, str], env: Mapping[str, str] | None = None) -> None:
    """Append step outputs to ``$GITHUB_OUTPUT``; log them when unset."""
    env = os.environ if env is None else env
    target = env.get("GITHUB_OUTPUT")
    if not target:
        for key, value in outputs.items():
            logger.info("output %s=%s", key, value)
        return
    with open(target, "a", encoding="utf-8") as f:
        for key, value in outputs.items():
            value = str(value)
            if "\n" in value:
                delimiter = f"ghadelimiter_{uuid.uuid4().hex}"
                f.write(f"{key}<<{delimiter}\n{value}\n{delimiter}\n")
            else:
                f.write(f"{key}={value}\n")


def append_step_summary(markdown: str, env: Mapping[str, str] | None = None) -> bool:
    """Append to ``$GITHUB_STEP_SUMMARY``. Returns False when not on a runner."""
    env = os.environ if env is None else env
    target = env.get("GITHUB_STEP_SUMMARY")
    if not target:
        return False
    with open(Path(target), "a", encoding="utf-8") as f:
        f.write(markdown.rstrip("\n") + "\n")
    return True


def mask(value: str) -> None:
    """Ask the runner to redact *value* from logs."""
    if value:
        print(f"::add-mask::{value}", flush=True)
