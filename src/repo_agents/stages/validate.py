"""agent-validation: run the admission gate and record the verdict.

Also home of :func:`read_gate`, which later per-agent stages use to decide
whether they have anything to do for their matrix entry.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from pathlib import Path

from repo_agents.artifacts import EXECUTION_FILE, VERDICT_FILE, ArtifactStore
from repo_agents.config import DEFAULT_BOT_IDENTITY, Settings
from repo_agents.gate import AdmissionContext, AdmissionGate
from repo_agents.models import RepositoryEvent, ValidationVerdict, slugify
from repo_agents.parser import load_agent
from repo_agents.platform import PlatformQueries
from repo_agents.stages.execute import ExecutionResult, ExecutionStatus
from repo_agents.stages.progress import ProgressReporter

logger = logging.getLogger(__name__)


async def run_validate(
    settings: Settings,
    agent_path: str | Path,
    event: RepositoryEvent,
    store: ArtifactStore,
    *,
    platform: PlatformQueries | None = None,
    automation_identity: str | None = None,
    now: Callable[[], datetime] | None = None,
    progress: ProgressReporter | None = None,
) -> ValidationVerdict:
    """Admit or skip the agent at *agent_path* for *event*; writes ``verdict.json``.

    An admitted agent gets its progress comment here, when *progress* is given.
    """
    result = load_agent(agent_path)
    if not result.ok:
        messages = "; ".join(str(d) for d in result.errors)
        name = Path(agent_path).stem
        logger.error("Agent %s is invalid: %s", agent_path, messages)
        verdict = ValidationVerdict.skip(name, "definition", f"Invalid agent definition: {messages}")
        store.write(slugify(name), VERDICT_FILE, verdict)
        return verdict

    agent = result.definition
    ctx = AdmissionContext(
        agent=agent,
        event=event,
        platform=platform,
        automation_identities=list(settings.automation_identities),
        automation_identity=automation_identity or DEFAULT_BOT_IDENTITY,
        require_explicit_authorization=settings.require_explicit_authorization,
    )
    if now is not None:
        ctx.now = now

    verdict = await AdmissionGate().admit(ctx)
    if verdict.should_run and progress is not None:
        verdict.progress_comment_id = await progress.start(agent, verdict)
    store.write(agent.slug, VERDICT_FILE, verdict)
    return verdict


def read_gate(store: ArtifactStore, slug: str, require: str) -> tuple[bool, str]:
    """Whether a per-agent stage should proceed, and why not.

    ``require`` is ``"admitted"`` (the verdict says run) or ``"executed"``
    (execution finished successfully).
    """
    if require == "admitted":
        verdict = store.read(slug, VERDICT_FILE, ValidationVerdict)
        if verdict is None:
            return False, "no verdict recorded"
        if not verdict.should_run:
            return False, verdict.skip_reason or "skipped"
        return True, ""

    if require == "executed":
        execution = store.read(slug, EXECUTION_FILE, ExecutionResult)
        if execution is None:
            return False, "no execution recorded"
        if execution.status != ExecutionStatus.SUCCESS:
            return False, f"execution {execution.status.value}"
        return True, ""

    raise ValueError(f"Unknown gate requirement: {require!r}")
