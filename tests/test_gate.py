"""Tests for the admission gate: check order, verdict flags and each check."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from repo_agents.gate import AdmissionContext, AdmissionGate, CheckOutcome

OPENED = "on:\n  issues:\n    types: [opened, labeled]"
NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def admit(platform):
    """Run the gate for (agent, event) against the fake platform."""

    async def _admit(agent, event, **kwargs):
        ctx = AdmissionContext(agent=agent, event=event, platform=platform, now=lambda: NOW, **kwargs)
        return await AdmissionGate().admit(ctx)

    return _admit


class TestGateOrder:
    def test_builtin_check_order(self):
        assert AdmissionGate().list_checks() == [
            "bot_actor",
            "authorization",
            "trigger_labels",
            "skip_labels",
            "rate_limit",
            "max_open_prs",
            "blocking_issues",
        ]

    async def test_authorization_reported_before_rate_limit(self, make_agent, make_event, admit, platform):
        agent = make_agent(f"name: A\n{OPENED}\nallowed-users: [alice]\nrate_limit_minutes: 30")
        platform.last_runs["a"] = NOW - timedelta(minutes=1)

        verdict = await admit(agent, make_event(actor="bob"))

        assert verdict.failed_check == "authorization"
        assert not verdict.rate_limited
        assert not platform.called("last_run_started")

    async def test_all_pass(self, make_agent, make_event, admit):
        verdict = await admit(make_agent(f"name: A\n{OPENED}"), make_event(number=7))
        assert verdict.should_run
        assert verdict.skip_reason is None
        assert verdict.target_number == 7
        assert verdict.event_name == "issues"
        assert verdict.event_snapshot["issue"]["number"] == 7

    async def test_custom_check_appended(self, make_agent, make_event, platform):
        gate = AdmissionGate()
        gate.register_fn("weekday", lambda ctx: CheckOutcome.reject("Not on weekends"))
        verdict = await gate.admit(
            AdmissionContext(agent=make_agent(f"name: A\n{OPENED}"), event=make_event(), platform=platform)
        )
        assert verdict.failed_check == "weekday"
        assert verdict.skip_reason == "Not on weekends"

    async def test_crashing_check_rejects(self, make_agent, make_event, platform):
        def boom(ctx):
            raise KeyError("missing")

        gate = AdmissionGate()
        gate.register_fn("boom", boom)
        verdict = await gate.admit(
            AdmissionContext(agent=make_agent(f"name: A\n{OPENED}"), event=make_event(), platform=platform)
        )
        assert not verdict.should_run
        assert verdict.failed_check == "boom"


class TestBotActor:
    async def test_bot_rejected_by_default(self, make_agent, make_event, admit):
        verdict = await admit(make_agent(f"name: A\n{OPENED}"), make_event(actor="renovate[bot]"))
        assert not verdict.should_run
        assert verdict.bot_triggered
        assert verdict.failed_check == "bot_actor"

    async def test_configured_automation_identity(self, make_agent, make_event, admit):
        verdict = await admit(
            make_agent(f"name: A\n{OPENED}"),
            make_event(actor="deploy-user"),
            automation_identities=["deploy-user"],
        )
        assert verdict.bot_triggered

    async def test_allow_bot_triggers(self, make_agent, make_event, admit):
        agent = make_agent(f"name: A\n{OPENED}\nallow_bot_triggers: true")
        assert (await admit(agent, make_event(actor="renovate[bot]"))).should_run

    async def test_bot_in_allowed_actors(self, make_agent, make_event, admit):
        agent = make_agent(f"name: A\n{OPENED}\nallowed-actors: ['renovate[bot]']")
        assert (await admit(agent, make_event(actor="renovate[bot]"))).should_run


class TestAuthorization:
    async def test_unlisted_user_rejected(self, make_agent, make_event, admit):
        agent = make_agent(f"name: A\n{OPENED}\nallowed-users: [alice]")

        verdict = await admit(agent, make_event(actor="bob"))

        assert not verdict.should_run
        assert "Authorization" in verdict.skip_reason
        assert "bob" in verdict.skip_reason

    async def test_listed_user_admitted(self, make_agent, make_event, admit):
        agent = make_agent(f"name: A\n{OPENED}\nallowed-users: [alice]")
        assert (await admit(agent, make_event(actor="alice"))).should_run

    async def test_team_membership(self, make_agent, make_event, admit, platform):
        platform.teams["acme/core"] = {"carol"}
        agent = make_agent(f"name: A\n{OPENED}\nallowed-teams: [acme/core]")

        assert (await admit(agent, make_event(actor="carol"))).should_run
        assert not (await admit(agent, make_event(actor="dave"))).should_run

    async def test_team_lookup_failure_is_not_membership(self, make_agent, make_event, admit, platform):
        platform.fail.add("is_team_member")
        agent = make_agent(f"name: A\n{OPENED}\nallowed-teams: [core]")
        verdict = await admit(agent, make_event(actor="carol"))
        assert verdict.failed_check == "authorization"

    async def test_no_allow_lists_permits_anyone(self, make_agent, make_event, admit):
        assert (await admit(make_agent(f"name: A\n{OPENED}"), make_event(actor="anyone"))).should_run

    async def test_explicit_authorization_required(self, make_agent, make_event, admit):
        verdict = await admit(
            make_agent(f"name: A\n{OPENED}"), make_event(actor="anyone"), require_explicit_authorization=True
        )
        assert verdict.failed_check == "authorization"


class TestLabels:
    async def test_trigger_label_required(self, make_agent, make_event, admit):
        agent = make_agent(f"name: A\n{OPENED}\ntrigger_labels: [bug, regression]")

        missing = await admit(agent, make_event(labels=["docs"]))
        present = await admit(agent, make_event(labels=["docs", "regression"]))

        assert missing.failed_check == "trigger_labels"
        assert present.should_run

    async def test_trigger_labels_ignored_for_unlabelled_events(self, make_agent, make_event, admit):
        agent = make_agent(
            f"name: A\n{OPENED}\n  schedule:\n    - cron: '0 0 * * *'\ntrigger_labels: [bug]"
        )
        event = make_event("schedule", None, number=None, extra={"schedule": "0 0 * * *"})
        assert (await admit(agent, event)).should_run

    async def test_skip_label(self, make_agent, make_event, admit):
        agent = make_agent(f"name: A\n{OPENED}\nskip_labels: [wontfix, duplicate]")
        verdict = await admit(agent, make_event(labels=["bug", "wontfix"]))
        assert verdict.failed_check == "skip_labels"
        assert "wontfix" in verdict.skip_reason

    async def test_pull_request_labels(self, make_agent, make_event, admit):
        agent = make_agent(
            "name: A\non:\n  pull_request:\n    types: [opened]\ntrigger_labels: [ready]"
        )
        event = make_event("pull_request", "opened", subject="pull_request", labels=[])
        assert (await admit(agent, event)).failed_check == "trigger_labels"


class TestRateLimit:
    async def test_second_run_within_interval_skipped(self, make_agent, make_event, admit, platform):
        agent = make_agent(f"name: Issue Triage\n{OPENED}\nrate_limit_minutes: 30")
        platform.last_runs["issue-triage"] = NOW - timedelta(minutes=10)

        verdict = await admit(agent, make_event())

        assert not verdict.should_run
        assert verdict.rate_limited
        assert verdict.failed_check == "rate_limit"

    async def test_run_after_interval_admitted(self, make_agent, make_event, admit, platform):
        agent = make_agent(f"name: A\n{OPENED}\nrate_limit_minutes: 30")
        platform.last_runs["a"] = NOW - timedelta(minutes=31)
        assert (await admit(agent, make_event())).should_run

    async def test_zero_interval_disables(self, make_agent, make_event, admit, platform):
        agent = make_agent(f"name: A\n{OPENED}\nrate_limit_minutes: 0")
        platform.last_runs["a"] = NOW
        assert (await admit(agent, make_event())).should_run
        assert not platform.called("last_run_started")

    async def test_platform_error_is_advisory(self, make_agent, make_event, admit, platform):
        platform.fail.add("last_run_started")
        assert (await admit(make_agent(f"name: A\n{OPENED}"), make_event())).should_run


class TestMaxOpenPrs:
    async def test_cap_reached(self, make_agent, make_event, admit, platform):
        platform.open_prs["my-app[bot]"] = 3
        agent = make_agent(f"name: A\n{OPENED}\nmax_open_prs: 3")

        verdict = await admit(agent, make_event(), automation_identity="my-app[bot]")

        assert verdict.pr_limited
        assert "3/3" in verdict.skip_reason

    async def test_under_cap(self, make_agent, make_event, admit, platform):
        platform.open_prs["github-actions[bot]"] = 1
        agent = make_agent(f"name: A\n{OPENED}\nmax_open_prs: 2")
        assert (await admit(agent, make_event())).should_run
        assert ("count_open_prs", "github-actions[bot]") in platform.calls

    async def test_no_cap_no_query(self, make_agent, make_event, admit, platform):
        await admit(make_agent(f"name: A\n{OPENED}"), make_event())
        assert not platform.called("count_open_prs")


class TestBlockingIssues:
    async def test_open_blocker_rejects(self, make_agent, make_event, admit, platform):
        platform.blockers[42] = [{"number": 7, "title": "Schema change", "state": "open"}]
        agent = make_agent(f"name: A\n{OPENED}\npre_flight:\n  check_blocking_issues: true")

        verdict = await admit(agent, make_event(number=42))

        assert verdict.blocked_by_issues
        assert "#7" in verdict.skip_reason
        assert verdict.target_number == 42

    async def test_closed_blockers_ignored(self, make_agent, make_event, admit, platform):
        platform.blockers[42] = [{"number": 7, "state": "closed"}]
        agent = make_agent(f"name: A\n{OPENED}\npre_flight:\n  check_blocking_issues: true")
        assert (await admit(agent, make_event(number=42))).should_run

    async def test_disabled_by_default(self, make_agent, make_event, admit, platform):
        platform.blockers[42] = [{"number": 7, "state": "open"}]
        assert (await admit(make_agent(f"name: A\n{OPENED}"), make_event(number=42))).should_run
        assert not platform.called("open_blockers")

    async def test_not_applied_to_discussions(self, make_agent, make_event, admit, platform):
        agent = make_agent(
            "name: A\non:\n  discussion:\n    types: [created]\npre_flight:\n  check_blocking_issues: true"
        )
        event = make_event("discussion", "created", subject="discussion", number=5)
        assert (await admit(agent, event)).should_run
        assert not platform.called("open_blockers")
