"""
Event pipeline: rule evaluation followed by action dispatch.

Rules are handled one at a time in (priority, id) order; a rule's actions
run before the next rule is evaluated. No lock spans the pipeline: the
matcher serialises per counter key and deliveries are handed to the
queue as independent work.
"""
import uuid

import structlog
from sqlalchemy.exc import SQLAlchemyError

from alertrelay.models.notification_rule import NotificationRule
from alertrelay.routes.metrics import track_event_received, track_rule_outcome
from alertrelay.schemas.events import EventResult, RuleFiring, SignalEvent
from alertrelay.schemas.rules import RuleConditions, RuleTestRequest, RuleTestResult
from alertrelay.sentry_config import capture_exception
from alertrelay.services.rule_matcher import matches_filters, rule_order
from alertrelay.services.rule_service import RuleService

logger = structlog.get_logger()


class EventPipeline:
    def __init__(self, session_factory, matcher, dispatcher):
        self.session_factory = session_factory
        self.matcher = matcher
        self.dispatcher = dispatcher

    async def process(self, event: SignalEvent) -> EventResult:
        """Evaluate an event against the org's enabled rules and run matched actions."""
        log = logger.bind(org_id=event.org_id, event_id=event.id, trigger_type=event.trigger_type.value)
        track_event_received(event.trigger_type.value)

        async with self.session_factory() as db:
            rules = await RuleService(db).enabled_rules_for(event.org_id, event.trigger_type)

        result = EventResult(event_id=event.id, scope_key=event.scope_key)
        for rule in sorted(rules, key=rule_order):
            match = await self.matcher.evaluate_rule(rule, event)
            track_rule_outcome(match.outcome.value)

            outcomes = []
            if match.matched:
                outcomes = await self.dispatcher.dispatch(rule, event)
                await self._record_execution(rule, event, outcomes)
            result.results.append(RuleFiring(match=match, outcomes=outcomes))

        log.info(
            "event_processed",
            rules_evaluated=len(result.results),
            rules_matched=sum(1 for firing in result.results if firing.match.matched),
        )
        return result

    async def _record_execution(self, rule: NotificationRule, event: SignalEvent, outcomes) -> None:
        try:
            async with self.session_factory() as db:
                await RuleService(db).record_execution(rule, event, outcomes)
        except SQLAlchemyError:
            # Actions already ran; losing the audit row must not fail the event.
            logger.exception("rule_execution_record_failed", rule_id=rule.id, event_id=event.id)
            capture_exception()

    async def dry_run(self, rule: NotificationRule, sample: RuleTestRequest) -> RuleTestResult:
        """
        Test-fire a rule against a synthetic event.

        Checks filters and resolves each action's target. Counters, the
        suppression ledger and outbound channels are left untouched.
        """
        event = SignalEvent(
            id=f"test-{uuid.uuid4()}",
            org_id=rule.org_id,
            trigger_type=rule.trigger_type,
            severity=sample.severity,
            resource_type=sample.resource_type,
            resource_id=sample.resource_id,
            data=sample.data,
        )
        conditions = RuleConditions.model_validate(rule.conditions or {})
        if not matches_filters(conditions, event):
            return RuleTestResult(success=False, message="event does not match rule filters")

        outcomes = await self.dispatcher.plan(rule, event)
        failed = [outcome for outcome in outcomes if not outcome.success]
        if failed:
            message = f"{len(failed)} of {len(outcomes)} action(s) cannot be executed"
        else:
            message = f"rule would run {len(outcomes)} action(s)"

        logger.info("rule_tested", rule_id=rule.id, success=not failed, actions=len(outcomes))
        return RuleTestResult(success=not failed, message=message, outcomes=outcomes)
