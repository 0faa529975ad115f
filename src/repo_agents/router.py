"""Event Router — decides which agents fire for one incoming event.

:func:`match` is a pure function of (definitions, event, unblocked issues).
:class:`EventRouter` adds the single platform lookup the closed-issue retry
rule needs and then delegates to :func:`match`.

Matching by event family:

- ``issues`` / ``pull_request`` / ``discussion`` — the event action must be
  listed in the agent's ``types`` for that family.
- ``schedule`` — the event's cron string must be one of the agent's crons
  (exact string comparison).
- ``repository_dispatch`` — the dispatch type (the payload ``action``) must
  be listed in the agent's ``types``.
- ``workflow_dispatch`` — any agent with manual dispatch enabled, unless the
  dispatch names one agent, in which case only that agent is selected.

When an issue closes, open issues it was blocking are re-offered to every
agent with ``pre_flight.check_blocking_issues`` whose trigger labels
intersect the blocked issue's labels (no trigger labels matches any issue).
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence

import httpx

from repo_agents.models import AgentDefinition, MatrixEntry, RepositoryEvent, TriggerFamily
from repo_agents.platform import PlatformQueries

logger = logging.getLogger(__name__)


def is_closed_issue_event(event: RepositoryEvent) -> bool:
    return event.family == TriggerFamily.ISSUES and event.action == "closed"


def matches_event(agent: AgentDefinition, event: RepositoryEvent) -> bool:
    """Whether *agent*'s declared triggers select *event*."""
    family = event.family
    triggers = agent.triggers

    if family in (TriggerFamily.ISSUES, TriggerFamily.PULL_REQUEST, TriggerFamily.DISCUSSION):
        return event.action is not None and event.action in triggers.action_types(family)
    if family == TriggerFamily.SCHEDULE:
        return event.schedule is not None and event.schedule in triggers.crons
    if family == TriggerFamily.REPOSITORY_DISPATCH:
        return event.action is not None and event.action in triggers.dispatch_types
    if family == TriggerFamily.WORKFLOW_DISPATCH:
        return triggers.manual_dispatch
    return False


def _issue_labels(issue: dict) -> set[str]:
    return {lbl["name"] if isinstance(lbl, dict) else str(lbl) for lbl in issue.get("labels") or []}


def retry_candidates(
    definitions: Sequence[AgentDefinition], unblocked_issues: Iterable[dict]
) -> list[AgentDefinition]:
    """Agents to re-offer for open issues that a just-closed issue was blocking."""
    open_issues = [i for i in unblocked_issues if i.get("state", "open") == "open"]
    selected: list[AgentDefinition] = []
    for issue in open_issues:
        labels = _issue_labels(issue)
        for agent in definitions:
            if not agent.pre_flight.check_blocking_issues:
                continue
            trigger_labels = set(agent.authorization.trigger_labels)
            if trigger_labels and not (trigger_labels & labels):
                continue
            if agent not in selected:
                selected.append(agent)
    return selected


def match(
    definitions: Sequence[AgentDefinition],
    event: RepositoryEvent,
    unblocked_issues: Iterable[dict] | None = None,
) -> list[MatrixEntry]:
    """Select the agents that fire for *event*, in definition order.

    Args:
        definitions: Parsed agent definitions.
        event: The triggering event.
        unblocked_issues: For an issue-closed event, the issues the closed
            issue was blocking (any state; closed ones are ignored).

    Returns:
        One :class:`MatrixEntry` per selected agent, unique by name.
    """
    if event.family == TriggerFamily.WORKFLOW_DISPATCH and event.dispatch_agent:
        wanted = event.dispatch_agent
        selected = [a for a in definitions if a.name == wanted or a.slug == wanted]
        return _entries(selected[:1])

    selected = [agent for agent in definitions if matches_event(agent, event)]
    if unblocked_issues is not None and is_closed_issue_event(event):
        retry = retry_candidates(definitions, unblocked_issues)
        selected = [a for a in definitions if a in selected or a in retry]
    return _entries(selected)


def _entries(agents: Iterable[AgentDefinition]) -> list[MatrixEntry]:
    entries: list[MatrixEntry] = []
    seen: set[str] = set()
    for agent in agents:
        if agent.name in seen:
            continue
        seen.add(agent.name)
        entries.append(MatrixEntry.from_definition(agent))
    return entries


class EventRouter:
    """Routes events, looking up unblocked issues when an issue closes."""

    def __init__(self, platform: PlatformQueries | None = None):
        self.platform = platform

    async def unblocked_issues(self, event: RepositoryEvent) -> list[dict]:
        number = event.subject_number
        if self.platform is None or number is None:
            return []
        try:
            blocked = await self.platform.blocked_issues(number)
        except httpx.HTTPError as exc:
            logger.warning("Could not list issues blocked by #%s: %s", number, exc)
            return []
        open_issues = [i for i in blocked if i.get("state") == "open"]
        for issue in open_issues:
            if "labels" not in issue and issue.get("number") is not None:
                try:
                    issue["labels"] = await self.platform.get_labels(issue["number"])
                except httpx.HTTPError as exc:
                    logger.warning("Could not read labels of #%s: %s", issue["number"], exc)
        if open_issues:
            logger.info(
                "Issue #%s was blocking %d open issue(s): %s",
                number,
                len(open_issues),
                ", ".join(f"#{i.get('number')}" for i in open_issues),
            )
        return open_issues

    async def route(
        self, definitions: Sequence[AgentDefinition], event: RepositoryEvent
    ) -> list[MatrixEntry]:
        unblocked = None
        if is_closed_issue_event(event):
            unblocked = await self.unblocked_issues(event)
        entries = match(definitions, event, unblocked)
        logger.info("Event %s matched %d agent(s)", event.full_type, len(entries))
        for entry in entries:
            logger.info("  - %s (%s)", entry.name, entry.path)
        return entries
