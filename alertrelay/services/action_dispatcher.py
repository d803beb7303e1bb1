"""
Action dispatcher.

Runs a fired rule's actions in list order, one at a time. Every action
yields an ActionOutcome; a failing action is recorded and the remaining
actions still run.
"""
from datetime import timedelta

import structlog
from pydantic import ValidationError

from alertrelay.exceptions import AlertRelayError, NotFoundError
from alertrelay.models.notification_rule import NotificationRule
from alertrelay.routes.metrics import track_action_outcome
from alertrelay.schemas.events import SignalEvent
from alertrelay.schemas.rules import (
    ActionOutcome,
    EscalateAction,
    NotifyChannelAction,
    SuppressAction,
    WebhookAction,
    parse_action,
)
from alertrelay.sentry_config import capture_exception
from alertrelay.services.channels import ESCALATION_PREFIX, ChannelService, default_message
from alertrelay.services.webhook_service import EndpointService

logger = structlog.get_logger()


def _raw_type(raw) -> str:
    if isinstance(raw, dict):
        return str(raw.get("type", "unknown"))
    return "unknown"


class ActionDispatcher:
    """
    Executes rule actions against channels, the suppression ledger and
    the webhook delivery subsystem.

    A suppress action only affects future events; sibling actions in the
    same list still execute.
    """

    def __init__(self, session_factory, notifier, ledger, deliveries, queue, secret_box):
        self.session_factory = session_factory
        self.notifier = notifier
        self.ledger = ledger
        self.deliveries = deliveries
        self.queue = queue
        self.secret_box = secret_box

    async def dispatch(self, rule: NotificationRule, event: SignalEvent) -> list[ActionOutcome]:
        outcomes = []
        for index, raw in enumerate(rule.actions or []):
            outcome = await self._run(index, raw, rule, event)
            track_action_outcome(outcome.type, outcome.success)
            outcomes.append(outcome)
        return outcomes

    async def _run(self, index: int, raw, rule: NotificationRule, event: SignalEvent) -> ActionOutcome:
        log = logger.bind(rule_id=rule.id, event_id=event.id, action_index=index)
        try:
            action = parse_action(raw)
        except ValidationError as e:
            log.warning("action_invalid", error=str(e))
            return ActionOutcome(index=index, type=_raw_type(raw), success=False, error=f"invalid action: {e}")

        try:
            detail, delivery_ids = await self._execute(action, rule, event)
        except AlertRelayError as e:
            log.warning("action_failed", action_type=action.type, error=str(e))
            return ActionOutcome(index=index, type=action.type, success=False, error=str(e))
        except Exception as e:
            log.exception("action_crashed", action_type=action.type)
            capture_exception()
            return ActionOutcome(index=index, type=action.type, success=False, error=f"{type(e).__name__}: {e}")

        log.info("action_executed", action_type=action.type, detail=detail)
        return ActionOutcome(
            index=index,
            type=action.type,
            success=True,
            detail=detail,
            delivery_ids=delivery_ids,
        )

    async def _execute(self, action, rule: NotificationRule, event: SignalEvent) -> tuple[str, list[str]]:
        match action:
            case NotifyChannelAction():
                message = action.message or default_message(rule, event)
                return await self._notify(action.channel_id, rule, event, message), []
            case EscalateAction():
                message = ESCALATION_PREFIX + (action.message or default_message(rule, event))
                return await self._notify(action.escalate_to_channel_id, rule, event, message), []
            case SuppressAction():
                until = event.occurred_at + timedelta(minutes=action.suppress_duration_minutes)
                await self.ledger.suppress(rule.id, event.scope_key, until)
                return f"suppressed {event.scope_key} until {until.isoformat()}", []
            case WebhookAction():
                return await self._webhook(action, rule, event)
            case _:
                raise AssertionError(f"unhandled action type {action.type}")

    async def _notify(self, channel_id: str, rule: NotificationRule, event: SignalEvent, message: str) -> str:
        async with self.session_factory() as db:
            channel = await ChannelService(db).find(event.org_id, channel_id)
        if channel is None:
            raise NotFoundError(f"channel {channel_id} not found")
        if not channel.enabled:
            return "channel disabled, skipped"
        await self.notifier.send(channel, rule, event, message)
        return f"sent to {channel.type.value} channel {channel.id}"

    async def _webhook(self, action: WebhookAction, rule: NotificationRule, event: SignalEvent) -> tuple[str, list[str]]:
        if action.webhook_url:
            delivery_id = await self.deliveries.create_adhoc_delivery(action.webhook_url, event, rule, action.message)
            await self.queue.enqueue(delivery_id)
            return "queued ad hoc delivery", [delivery_id]

        async with self.session_factory() as db:
            endpoints_service = EndpointService(db, self.secret_box)
            if action.endpoint_id:
                endpoint = await endpoints_service.find(event.org_id, action.endpoint_id)
                if endpoint is None:
                    raise NotFoundError(f"webhook endpoint {action.endpoint_id} not found")
                if not endpoint.enabled:
                    return "endpoint disabled, skipped", []
                if not endpoint.subscribes_to(event.trigger_type):
                    return f"endpoint not subscribed to {event.trigger_type.value}, skipped", []
                endpoints = [endpoint]
            else:
                endpoints = await endpoints_service.subscribed_endpoints(event.org_id, event.trigger_type)

        if not endpoints:
            return "no subscribed endpoints", []

        delivery_ids = await self.deliveries.create_endpoint_deliveries(endpoints, event, rule, action.message)
        for delivery_id in delivery_ids:
            await self.queue.enqueue(delivery_id)
        return f"queued {len(delivery_ids)} delivery(ies)", delivery_ids

    async def plan(self, rule: NotificationRule, event: SignalEvent) -> list[ActionOutcome]:
        """
        Dry run: resolve every action's target without sending anything,
        writing suppressions or creating deliveries.
        """
        outcomes = []
        async with self.session_factory() as db:
            channels = ChannelService(db)
            endpoints_service = EndpointService(db, self.secret_box)
            for index, raw in enumerate(rule.actions or []):
                try:
                    action = parse_action(raw)
                except ValidationError as e:
                    outcomes.append(ActionOutcome(index=index, type=_raw_type(raw), success=False, error=f"invalid action: {e}"))
                    continue

                success, detail, error = True, None, None
                match action:
                    case NotifyChannelAction(channel_id=channel_id) | EscalateAction(escalate_to_channel_id=channel_id):
                        channel = await channels.find(event.org_id, channel_id)
                        if channel is None:
                            success, error = False, f"channel {channel_id} not found"
                        elif not channel.enabled:
                            detail = "channel disabled, would skip"
                        else:
                            detail = f"would send to {channel.type.value} channel {channel.id}"
                    case SuppressAction():
                        detail = f"would suppress {event.scope_key} for {action.suppress_duration_minutes} minutes"
                    case WebhookAction(webhook_url=url) if url:
                        detail = f"would deliver to {url}"
                    case WebhookAction(endpoint_id=endpoint_id) if endpoint_id:
                        endpoint = await endpoints_service.find(event.org_id, endpoint_id)
                        if endpoint is None:
                            success, error = False, f"webhook endpoint {endpoint_id} not found"
                        elif not endpoint.enabled or not endpoint.subscribes_to(event.trigger_type):
                            detail = "endpoint disabled or not subscribed, would skip"
                        else:
                            detail = f"would deliver to endpoint {endpoint.id}"
                    case WebhookAction():
                        subscribed = await endpoints_service.subscribed_endpoints(event.org_id, event.trigger_type)
                        detail = f"would deliver to {len(subscribed)} subscribed endpoint(s)"

                outcomes.append(ActionOutcome(index=index, type=action.type, success=success, detail=detail, error=error))
        return outcomes
