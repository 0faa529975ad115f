"""Admission-Control Gate — ordered checks deciding whether an agent runs.

Checks run in a fixed order and the first failure wins; later checks are not
evaluated. Each check receives an :class:`AdmissionContext` and returns a
:class:`CheckOutcome`. Checks can be synchronous or async.

Built-in checks, in evaluation order:
    - ``bot_actor``        — reject automation identities unless allowed
    - ``authorization``    — actor must be in an allow-list when any is set
    - ``trigger_labels``   — subject must carry one of the trigger labels
    - ``skip_labels``      — subject must carry none of the skip labels
    - ``rate_limit``       — no prior admitted run within the interval
    - ``max_open_prs``     — automation identity is under its open-PR cap
    - ``blocking_issues``  — subject has no open blocking dependencies

The last three query the platform. A platform error there is logged and the
check passes; those checks are advisory.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable

import httpx

from repo_agents.config import DEFAULT_BOT_IDENTITY
from repo_agents.models import AgentDefinition, RepositoryEvent, ValidationVerdict
from repo_agents.platform import PlatformQueries

logger = logging.getLogger(__name__)


# ── Context and outcome ──────────────────────────────────────────────────────


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class AdmissionContext:
    """Everything a check may look at for one (agent, event) pair."""

    agent: AgentDefinition
    event: RepositoryEvent
    platform: PlatformQueries | None = None

    # Extra logins treated as automation identities besides ``*[bot]``
    automation_identities: list[str] = field(default_factory=list)
    # Identity whose open PRs count against ``max_open_prs``
    automation_identity: str = DEFAULT_BOT_IDENTITY
    require_explicit_authorization: bool = False
    now: Callable[[], datetime] = _utcnow

    @property
    def actor(self) -> str:
        return self.event.actor

    def is_automation_identity(self, login: str) -> bool:
        return login.endswith("[bot]") or login in self.automation_identities


@dataclass
class CheckOutcome:
    passed: bool
    reason: str | None = None
    # Verdict flag set when this check rejects, e.g. ``rate_limited``
    flag: str | None = None

    @classmethod
    def ok(cls) -> CheckOutcome:
        return cls(passed=True)

    @classmethod
    def reject(cls, reason: str, flag: str | None = None) -> CheckOutcome:
        return cls(passed=False, reason=reason, flag=flag)


CheckFunc = Callable[[AdmissionContext], "CheckOutcome"]


# ── Gate ─────────────────────────────────────────────────────────────────────


class AdmissionGate:
    """Runs the ordered admission checks for one (agent, event) pair.

    Usage::

        gate = AdmissionGate()
        verdict = await gate.admit(AdmissionContext(agent, event, platform))
    """

    def __init__(self) -> None:
        self._checks: list[tuple[str, CheckFunc, bool]] = []
        self._register_builtin_checks()

    def register_fn(self, name: str, fn: CheckFunc, *, fail_open: bool = False) -> None:
        """Append a check. ``fail_open`` checks pass when the platform errors."""
        self._checks.append((name, fn, fail_open))
        logger.debug("Registered admission check: %s", name)

    def list_checks(self) -> list[str]:
        return [name for name, _, _ in self._checks]

    async def evaluate(self, name: str, fn: CheckFunc, fail_open: bool, ctx: AdmissionContext) -> CheckOutcome:
        try:
            if asyncio.iscoroutinefunction(fn):
                return await fn(ctx)
            return fn(ctx)
        except httpx.HTTPError as exc:
            if fail_open:
                logger.warning(
                    "Admission check '%s' could not query the platform, allowing: %s", name, exc
                )
                return CheckOutcome.ok()
            logger.warning("Admission check '%s' failed on a platform error: %s", name, exc)
            return CheckOutcome.reject(f"Check {name} failed: {exc}")
        except Exception as exc:
            logger.exception("Admission check '%s' raised an exception", name)
            return CheckOutcome.reject(f"Check {name} error: {exc}")

    async def admit(self, ctx: AdmissionContext) -> ValidationVerdict:
        """Return the verdict for ``ctx.agent`` and ``ctx.event``."""
        agent_name = ctx.agent.name
        for name, fn, fail_open in self._checks:
            outcome = await self.evaluate(name, fn, fail_open, ctx)
            if not outcome.passed:
                logger.info("Agent %s skipped at %s: %s", agent_name, name, outcome.reason)
                flags = {outcome.flag: True} if outcome.flag else {}
                verdict = ValidationVerdict.skip(
                    agent_name, name, outcome.reason or f"{name} check failed", **flags
                )
                verdict.target_number = ctx.event.subject_number
                return verdict
            logger.debug("Agent %s passed %s", agent_name, name)

        logger.info("All admission checks passed for %s", agent_name)
        return ValidationVerdict.admit(agent_name, ctx.event)

    def _register_builtin_checks(self) -> None:
        self.register_fn("bot_actor", check_bot_actor)
        self.register_fn("authorization", check_authorization)
        self.register_fn("trigger_labels", check_trigger_labels)
        self.register_fn("skip_labels", check_skip_labels)
        self.register_fn("rate_limit", check_rate_limit, fail_open=True)
        self.register_fn("max_open_prs", check_max_open_prs, fail_open=True)
        self.register_fn("blocking_issues", check_blocking_issues, fail_open=True)


# ── Built-in checks ──────────────────────────────────────────────────────────


def check_bot_actor(ctx: AdmissionContext) -> CheckOutcome:
    """Prevent an agent's own output from re-triggering it."""
    actor = ctx.actor
    if not ctx.is_automation_identity(actor):
        return CheckOutcome.ok()
    auth = ctx.agent.authorization
    if auth.allow_bot_triggers or actor in auth.allowed_actors:
        return CheckOutcome.ok()
    return CheckOutcome.reject(
        f"Actor {actor} is an automation identity and bot triggers are not allowed",
        flag="bot_triggered",
    )


async def check_authorization(ctx: AdmissionContext) -> CheckOutcome:
    auth = ctx.agent.authorization
    actor = ctx.actor

    if not auth.has_allow_lists:
        if ctx.require_explicit_authorization:
            return CheckOutcome.reject(
                f"Authorization: agent has no allow-lists and explicit authorization is required "
                f"(actor {actor})"
            )
        return CheckOutcome.ok()

    if actor in auth.allowed_users or actor in auth.allowed_actors:
        return CheckOutcome.ok()

    if auth.allowed_teams and ctx.platform is not None:
        for team in auth.allowed_teams:
            try:
                if await ctx.platform.is_team_member(team, actor):
                    return CheckOutcome.ok()
            except httpx.HTTPError as exc:
                logger.warning("Team lookup for %s in %s failed: %s", actor, team, exc)

    return CheckOutcome.reject(f"Authorization: user {actor} is not authorized to trigger this agent")


def check_trigger_labels(ctx: AdmissionContext) -> CheckOutcome:
    required = ctx.agent.authorization.trigger_labels
    if not required or not ctx.event.has_labels:
        return CheckOutcome.ok()
    present = set(ctx.event.labels)
    if present.intersection(required):
        return CheckOutcome.ok()
    return CheckOutcome.reject(f"Missing trigger label: requires one of {', '.join(required)}")


def check_skip_labels(ctx: AdmissionContext) -> CheckOutcome:
    skip = ctx.agent.authorization.skip_labels
    if not skip or not ctx.event.has_labels:
        return CheckOutcome.ok()
    found = [label for label in ctx.event.labels if label in skip]
    if found:
        return CheckOutcome.reject(f"Skip label present: {', '.join(found)}")
    return CheckOutcome.ok()


async def check_rate_limit(ctx: AdmissionContext) -> CheckOutcome:
    """Best-effort: two near-simultaneous runs may both pass."""
    interval = ctx.agent.rate_limit.interval_minutes
    if interval <= 0 or ctx.platform is None:
        return CheckOutcome.ok()

    last_run = await ctx.platform.last_run_started(ctx.agent.slug)
    if last_run is None:
        return CheckOutcome.ok()

    elapsed = (ctx.now() - last_run).total_seconds() / 60
    if elapsed < interval:
        remaining = interval - elapsed
        return CheckOutcome.reject(
            f"Rate limit: last run {elapsed:.0f} minute(s) ago, "
            f"{remaining:.0f} minute(s) remaining of {interval}",
            flag="rate_limited",
        )
    return CheckOutcome.ok()


async def check_max_open_prs(ctx: AdmissionContext) -> CheckOutcome:
    cap = ctx.agent.max_open_prs
    if not cap or ctx.platform is None:
        return CheckOutcome.ok()

    count = await ctx.platform.count_open_prs(ctx.automation_identity)
    if count >= cap:
        return CheckOutcome.reject(
            f"Max open PRs limit reached: {count}/{cap} open by {ctx.automation_identity}",
            flag="pr_limited",
        )
    return CheckOutcome.ok()


async def check_blocking_issues(ctx: AdmissionContext) -> CheckOutcome:
    if not ctx.agent.pre_flight.check_blocking_issues or ctx.platform is None:
        return CheckOutcome.ok()
    number = ctx.event.subject_number
    if number is None or ctx.event.discussion is not None:
        return CheckOutcome.ok()

    blockers = await ctx.platform.open_blockers(number)
    if blockers:
        listed = ", ".join(f"#{b.get('number')}: {b.get('title', '')}" for b in blockers)
        return CheckOutcome.reject(
            f"Blocked by {len(blockers)} open issue(s): {listed}",
            flag="blocked_by_issues",
        )
    return CheckOutcome.ok()
