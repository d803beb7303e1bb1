"""Action execution: channels, escalation, suppression, webhooks and failure isolation."""
import json
from datetime import timedelta

import httpx
import pytest

from alertrelay.models.enums import ChannelType, DeliveryStatus, TriggerType
from alertrelay.models.notification_rule import NotificationRule
from alertrelay.schemas.channels import ChannelCreate
from alertrelay.schemas.webhooks import EndpointCreate
from alertrelay.services.channels import ChannelService
from alertrelay.services.signing import SIGNATURE_HEADER, verify_signature
from alertrelay.services.webhook_service import EndpointService

from conftest import ORG_ID, T0, make_event

SLACK_URL = "https://hooks.slack.example/T000/B000"
ADHOC_URL = "https://adhoc.example.com/hook"


def make_rule(actions, rule_id="rule-1", name="Backup watch"):
    return NotificationRule(
        id=rule_id,
        org_id=ORG_ID,
        name=name,
        trigger_type=TriggerType.BACKUP_FAILED,
        enabled=True,
        priority=0,
        conditions={"count": 1, "time_window_minutes": 60},
        actions=actions,
    )


async def create_channel(engine, **overrides):
    fields = {"name": "ops-slack", "type": ChannelType.SLACK, "config": {"webhook_url": SLACK_URL}}
    fields.update(overrides)
    async with engine.session_factory() as db:
        return await ChannelService(db).create(ORG_ID, ChannelCreate(**fields))


async def create_endpoint(engine, **overrides):
    fields = {
        "name": "receiver",
        "url": "https://receiver.example.com/hook",
        "secret": "receiver-secret-0123456789",
        "event_types": [TriggerType.BACKUP_FAILED],
        "retry_count": 0,
        "timeout_seconds": 5,
    }
    fields.update(overrides)
    async with engine.session_factory() as db:
        return await EndpointService(db, engine.secret_box).create(ORG_ID, EndpointCreate(**fields))


@pytest.mark.asyncio
async def test_notify_channel_posts_to_slack(engine, recorder):
    channel = await create_channel(engine)
    rule = make_rule([{"type": "notify_channel", "channel_id": channel.id}])

    [outcome] = await engine.dispatcher.dispatch(rule, make_event())

    assert outcome.success
    [request] = recorder.to(SLACK_URL)
    body = json.loads(request.content)
    assert body["text"] == "Backup watch: backup_failed on agent:agent-a"


@pytest.mark.asyncio
async def test_escalation_prefixes_message(engine, recorder):
    channel = await create_channel(engine)
    rule = make_rule([{"type": "escalate", "escalate_to_channel_id": channel.id, "message": "Backups are failing"}])

    [outcome] = await engine.dispatcher.dispatch(rule, make_event())

    assert outcome.success
    body = json.loads(recorder.to(SLACK_URL)[0].content)
    assert body["text"] == "[ESCALATION] Backups are failing"


@pytest.mark.asyncio
async def test_pagerduty_trigger_uses_dedup_key(engine, recorder):
    channel = await create_channel(engine, type=ChannelType.PAGERDUTY, config={"routing_key": "R0UT1NG"})
    rule = make_rule([{"type": "notify_channel", "channel_id": channel.id}])

    [outcome] = await engine.dispatcher.dispatch(rule, make_event())

    assert outcome.success
    [request] = recorder.to(engine.settings.PAGERDUTY_EVENTS_URL)
    body = json.loads(request.content)
    assert body["routing_key"] == "R0UT1NG"
    assert body["event_action"] == "trigger"
    assert body["dedup_key"] == "rule-1:agent:agent-a"
    assert body["payload"]["severity"] == "critical"


@pytest.mark.asyncio
async def test_disabled_channel_is_skipped(engine, recorder):
    channel = await create_channel(engine, enabled=False)
    rule = make_rule([{"type": "notify_channel", "channel_id": channel.id}])

    [outcome] = await engine.dispatcher.dispatch(rule, make_event())

    assert outcome.success
    assert outcome.detail == "channel disabled, skipped"
    assert recorder.requests == []


@pytest.mark.asyncio
async def test_failing_action_does_not_stop_the_rest(engine, recorder):
    channel = await create_channel(engine)
    recorder.responder = lambda request: (
        httpx.Response(500) if str(request.url).startswith(SLACK_URL) else httpx.Response(200)
    )
    rule = make_rule([
        {"type": "notify_channel", "channel_id": channel.id},
        {"type": "notify_channel", "channel_id": "missing-channel"},
        {"type": "suppress", "suppress_duration_minutes": 15},
        {"type": "webhook", "webhook_url": ADHOC_URL},
    ])

    outcomes = await engine.dispatcher.dispatch(rule, make_event())
    await engine.queue.drain(timeout=5)

    assert [o.success for o in outcomes] == [False, False, True, True]
    assert "HTTP 500" in outcomes[0].error
    assert "not found" in outcomes[1].error
    assert len(recorder.to(ADHOC_URL)) == 1


@pytest.mark.asyncio
async def test_invalid_stored_action_is_reported(engine):
    rule = make_rule([{"type": "page_everyone"}, {"type": "suppress", "suppress_duration_minutes": 5}])

    outcomes = await engine.dispatcher.dispatch(rule, make_event())

    assert outcomes[0].type == "page_everyone"
    assert not outcomes[0].success
    assert outcomes[1].success


@pytest.mark.asyncio
async def test_suppress_uses_event_time(engine):
    rule = make_rule([{"type": "suppress", "suppress_duration_minutes": 30}])

    await engine.dispatcher.dispatch(rule, make_event())

    assert await engine.ledger.is_suppressed(rule.id, "agent:agent-a", T0 + timedelta(minutes=30))
    assert not await engine.ledger.is_suppressed(rule.id, "agent:agent-a", T0 + timedelta(minutes=31))
    assert not await engine.ledger.is_suppressed(rule.id, "agent:agent-b", T0)


@pytest.mark.asyncio
async def test_adhoc_webhook_is_signed_with_adhoc_secret(engine, recorder):
    rule = make_rule([{"type": "webhook", "webhook_url": ADHOC_URL, "message": "hello"}])

    [outcome] = await engine.dispatcher.dispatch(rule, make_event())
    await engine.queue.drain(timeout=5)

    [delivery_id] = outcome.delivery_ids
    delivery = await engine.deliveries.get_delivery(ORG_ID, delivery_id)
    assert delivery.status == DeliveryStatus.DELIVERED
    assert delivery.endpoint_id is None
    assert delivery.target_url == ADHOC_URL

    [request] = recorder.to(ADHOC_URL)
    assert verify_signature(request.content, request.headers[SIGNATURE_HEADER], "adhoc-signing-secret")
    payload = json.loads(request.content)
    assert payload["data"]["message"] == "hello"
    assert payload["data"]["rule"] == {"id": rule.id, "name": rule.name}


@pytest.mark.asyncio
async def test_webhook_without_target_fans_out_to_subscribers(engine, recorder):
    first = await create_endpoint(engine, name="first", url="https://one.example.com/hook")
    second = await create_endpoint(engine, name="second", url="https://two.example.com/hook")
    await create_endpoint(engine, name="other", url="https://three.example.com/hook", event_types=[TriggerType.AGENT_OFFLINE])
    rule = make_rule([{"type": "webhook"}])

    [outcome] = await engine.dispatcher.dispatch(rule, make_event())
    await engine.queue.drain(timeout=5)

    assert outcome.success
    assert len(outcome.delivery_ids) == 2
    assert len(recorder.to("https://one.example.com")) == 1
    assert len(recorder.to("https://two.example.com")) == 1
    assert recorder.to("https://three.example.com") == []
    assert {first.id, second.id} == {
        (await engine.deliveries.get_delivery(ORG_ID, d)).endpoint_id for d in outcome.delivery_ids
    }


@pytest.mark.asyncio
async def test_webhook_to_unsubscribed_endpoint_is_skipped(engine, recorder):
    endpoint = await create_endpoint(engine, event_types=[TriggerType.AGENT_OFFLINE])
    rule = make_rule([{"type": "webhook", "endpoint_id": endpoint.id}])

    [outcome] = await engine.dispatcher.dispatch(rule, make_event())

    assert outcome.success
    assert outcome.delivery_ids == []
    assert "not subscribed" in outcome.detail
    assert recorder.requests == []


@pytest.mark.asyncio
async def test_webhook_with_no_subscribers(engine, recorder):
    rule = make_rule([{"type": "webhook"}])

    [outcome] = await engine.dispatcher.dispatch(rule, make_event())

    assert outcome.success
    assert outcome.detail == "no subscribed endpoints"
    assert recorder.requests == []


@pytest.mark.asyncio
async def test_plan_sends_nothing(engine, recorder):
    channel = await create_channel(engine)
    rule = make_rule([
        {"type": "notify_channel", "channel_id": channel.id},
        {"type": "notify_channel", "channel_id": "missing-channel"},
        {"type": "suppress", "suppress_duration_minutes": 10},
        {"type": "webhook", "webhook_url": ADHOC_URL},
    ])

    outcomes = await engine.dispatcher.plan(rule, make_event())

    assert [o.success for o in outcomes] == [True, False, True, True]
    assert recorder.requests == []
    assert not await engine.ledger.is_suppressed(rule.id, "agent:agent-a", T0)
    assert await engine.deliveries.due_deliveries(T0 + timedelta(days=365)) == []
