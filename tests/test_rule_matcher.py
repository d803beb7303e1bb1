"""Rule matcher: filters, suppression, sliding windows and ordering."""
from datetime import timedelta

import pytest

from alertrelay.models.enums import TriggerType
from alertrelay.models.notification_rule import NotificationRule
from alertrelay.schemas.events import MatchOutcome
from alertrelay.schemas.rules import RuleConditions
from alertrelay.services.ephemeral_store import MemoryRollingCounter, MemorySuppressionLedger
from alertrelay.services.rule_matcher import RuleMatcher, matches_filters

from conftest import ORG_ID, T0, make_event


def make_rule(rule_id="rule-1", priority=0, trigger=TriggerType.BACKUP_FAILED, enabled=True, **conditions):
    return NotificationRule(
        id=rule_id,
        org_id=ORG_ID,
        name=f"rule {rule_id}",
        trigger_type=trigger,
        enabled=enabled,
        priority=priority,
        conditions={"count": 1, "time_window_minutes": 60, **conditions},
        actions=[],
    )


@pytest.fixture
def matcher():
    return RuleMatcher(MemoryRollingCounter(), MemorySuppressionLedger())


@pytest.mark.asyncio
async def test_count_one_matches_every_event(matcher):
    rule = make_rule()
    for minute in (0, 1, 2):
        result = await matcher.evaluate_rule(rule, make_event(occurred_at=T0 + timedelta(minutes=minute)))
        assert result.outcome == MatchOutcome.MATCHED


@pytest.mark.asyncio
async def test_backup_failed_scenario_fires_at_third_event(matcher):
    rule = make_rule(count=3, time_window_minutes=60)

    outcomes = []
    for minute in (0, 20, 40, 45):
        result = await matcher.evaluate_rule(rule, make_event(occurred_at=T0 + timedelta(minutes=minute)))
        outcomes.append(result.outcome)

    assert outcomes == [
        MatchOutcome.COUNTED,
        MatchOutcome.COUNTED,
        MatchOutcome.MATCHED,
        MatchOutcome.COUNTED,
    ]


@pytest.mark.asyncio
async def test_suppressed_events_are_not_counted(matcher):
    rule = make_rule(count=2)
    await matcher.ledger.suppress(rule.id, "agent:agent-a", T0 + timedelta(minutes=30))

    for minute in (0, 10, 20):
        result = await matcher.evaluate_rule(rule, make_event(occurred_at=T0 + timedelta(minutes=minute)))
        assert result.outcome == MatchOutcome.SUPPRESSED

    assert await matcher.counter.count(rule.id, "agent:agent-a") == 0

    resumed = await matcher.evaluate_rule(rule, make_event(occurred_at=T0 + timedelta(minutes=31)))
    assert resumed.outcome == MatchOutcome.COUNTED


@pytest.mark.asyncio
async def test_suppression_is_scoped(matcher):
    rule = make_rule()
    await matcher.ledger.suppress(rule.id, "agent:agent-a", T0 + timedelta(minutes=30))

    other = await matcher.evaluate_rule(rule, make_event(resource_id="agent-b"))
    assert other.outcome == MatchOutcome.MATCHED


@pytest.mark.asyncio
async def test_filtered_events_do_not_touch_counter(matcher):
    rule = make_rule(count=2, severity="warning")
    result = await matcher.evaluate_rule(rule, make_event(severity="critical"))
    assert result.outcome == MatchOutcome.FILTERED
    assert await matcher.counter.count(rule.id, "agent:agent-a") == 0


def test_resource_filters_only_narrow_their_own_resource_type():
    conditions = RuleConditions(agent_ids=["agent-a"])

    assert matches_filters(conditions, make_event(resource_id="agent-a"))
    assert not matches_filters(conditions, make_event(resource_id="agent-z"))
    assert matches_filters(conditions, make_event(resource_type="repository", resource_id="repo-1"))

    repo_conditions = RuleConditions(repository_ids=["repo-1"])
    assert not matches_filters(repo_conditions, make_event(resource_type="repository", resource_id="repo-2"))


def test_scope_key_defaults():
    assert make_event().scope_key == "agent:agent-a"
    assert make_event(resource_type=None, resource_id=None).scope_key == "global"
    assert make_event(scope_key="tenant-x").scope_key == "tenant-x"


@pytest.mark.asyncio
async def test_evaluate_orders_by_priority_then_id(matcher):
    rules = [
        make_rule("b", priority=5),
        make_rule("c", priority=1),
        make_rule("a", priority=5),
        make_rule("d", priority=0, trigger=TriggerType.AGENT_OFFLINE),
        make_rule("e", priority=0, enabled=False),
    ]

    results = await matcher.evaluate(make_event(), rules)

    assert [r.rule_id for r in results] == ["c", "a", "b"]
