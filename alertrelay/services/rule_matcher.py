"""
Rule matcher.

Decides, per enabled rule, whether an incoming event fires the rule,
is only counted toward its window, or is silenced by a suppression.
"""
from datetime import timedelta

import structlog

from alertrelay.models.notification_rule import NotificationRule
from alertrelay.schemas.events import MatchOutcome, MatchResult, SignalEvent
from alertrelay.schemas.rules import RuleConditions

logger = structlog.get_logger()

# resource_type -> conditions attribute holding the allowed ids
_RESOURCE_FILTERS = {
    "agent": "agent_ids",
    "schedule": "schedule_ids",
    "repository": "repository_ids",
}


def rule_order(rule: NotificationRule) -> tuple[int, str]:
    """Ascending priority, ties broken by id."""
    return (rule.priority, rule.id)


def matches_filters(conditions: RuleConditions, event: SignalEvent) -> bool:
    """
    Apply severity and resource id filters.

    A resource list only narrows events about that resource type; an
    agent_ids filter does not reject a repository event.
    """
    if conditions.severity and conditions.severity != event.severity:
        return False

    attr = _RESOURCE_FILTERS.get(event.resource_type or "")
    if attr and event.resource_id is not None:
        allowed = getattr(conditions, attr)
        if allowed and event.resource_id not in allowed:
            return False

    return True


class RuleMatcher:
    """
    Evaluates rules against events using the rolling counter and the
    suppression ledger.

    The evaluation clock is the event's occurred_at, so replayed or
    delayed events are counted where they happened.
    """

    def __init__(self, counter, ledger):
        self.counter = counter
        self.ledger = ledger

    async def evaluate_rule(self, rule: NotificationRule, event: SignalEvent) -> MatchResult:
        """
        Evaluate one rule.

        Steps:
            1. filters must match
            2. an active suppression silences the rule without counting
            3. the event is appended to the (rule, scope) window
            4. reaching conditions.count matches and resets the window
        """
        conditions = RuleConditions.model_validate(rule.conditions or {})
        log = logger.bind(rule_id=rule.id, event_id=event.id, scope_key=event.scope_key)

        if not matches_filters(conditions, event):
            log.debug("rule_filtered")
            return MatchResult(rule_id=rule.id, outcome=MatchOutcome.FILTERED, threshold=conditions.count)

        if await self.ledger.is_suppressed(rule.id, event.scope_key, event.occurred_at):
            log.info("rule_suppressed")
            return MatchResult(rule_id=rule.id, outcome=MatchOutcome.SUPPRESSED, threshold=conditions.count)

        hit = await self.counter.hit(
            rule.id,
            event.scope_key,
            at=event.occurred_at,
            window=timedelta(minutes=conditions.time_window_minutes),
            threshold=conditions.count,
        )

        if hit.triggered:
            log.info("rule_matched", count=hit.count, threshold=conditions.count)
            outcome = MatchOutcome.MATCHED
        else:
            log.debug("rule_counted", count=hit.count, threshold=conditions.count)
            outcome = MatchOutcome.COUNTED

        return MatchResult(rule_id=rule.id, outcome=outcome, count=hit.count, threshold=conditions.count)

    async def evaluate(self, event: SignalEvent, rules: list[NotificationRule]) -> list[MatchResult]:
        """Evaluate every enabled rule for the event's trigger type, in priority order."""
        results = []
        for rule in sorted(rules, key=rule_order):
            if not rule.enabled or rule.trigger_type != event.trigger_type:
                continue
            results.append(await self.evaluate_rule(rule, event))
        return results
