"""Webhook delivery state machine, signing on the wire, retry and test-fire."""
import json
from datetime import datetime, timezone

import httpx
import pytest
from sqlalchemy import func, select

from alertrelay.exceptions import ConflictError
from alertrelay.models.enums import DeliveryStatus, TriggerType
from alertrelay.models.webhook import WebhookDelivery
from alertrelay.schemas.webhooks import EndpointCreate, EndpointResponse, EndpointUpdate
from alertrelay.services.secret_box import SecretBox
from alertrelay.services.signing import SIGNATURE_HEADER, verify_signature
from alertrelay.services.webhook_service import EndpointService, backoff_delay

from conftest import ORG_ID, make_event

SECRET = "endpoint-secret-0123456789"
HOOK_URL = "https://hooks.example.com/alerts"


async def create_endpoint(engine, **overrides):
    fields = {
        "name": "ops",
        "url": HOOK_URL,
        "secret": SECRET,
        "event_types": [TriggerType.BACKUP_FAILED],
        "retry_count": 2,
        "timeout_seconds": 5,
    }
    fields.update(overrides)
    async with engine.session_factory() as db:
        return await EndpointService(db, engine.secret_box).create(ORG_ID, EndpointCreate(**fields))


async def deliver(engine, endpoint, event=None):
    [delivery_id] = await engine.deliveries.create_endpoint_deliveries([endpoint], event or make_event())
    await engine.queue.enqueue(delivery_id)
    await engine.queue.drain(timeout=5)
    return await engine.deliveries.get_delivery(ORG_ID, delivery_id)


def test_backoff_doubles_and_caps():
    assert [backoff_delay(n, 30, 900) for n in range(1, 7)] == [30, 60, 120, 240, 480, 900]


@pytest.mark.asyncio
async def test_server_error_exhausts_all_attempts(engine, recorder):
    recorder.responder = lambda request: httpx.Response(500, text="boom")
    endpoint = await create_endpoint(engine, retry_count=2, timeout_seconds=5)

    delivery = await deliver(engine, endpoint)

    assert len(recorder.requests) == 3
    assert delivery.status == DeliveryStatus.FAILED
    assert delivery.attempt_number == 3
    assert delivery.max_attempts == 3
    assert delivery.response_status == 500
    assert delivery.error_message == "HTTP 500"
    assert delivery.next_retry_at is None


@pytest.mark.asyncio
async def test_delivered_never_retries(engine, recorder):
    endpoint = await create_endpoint(engine)

    delivery = await deliver(engine, endpoint)

    assert len(recorder.requests) == 1
    assert delivery.status == DeliveryStatus.DELIVERED
    assert delivery.attempt_number == 1
    assert delivery.response_status == 200
    assert delivery.delivered_at is not None

    # A stray re-enqueue of a terminal delivery does nothing
    await engine.queue.enqueue(delivery.id)
    await engine.queue.drain(timeout=5)
    assert len(recorder.requests) == 1


@pytest.mark.asyncio
async def test_retry_then_success(engine, recorder):
    statuses = iter([503, 200])
    recorder.responder = lambda request: httpx.Response(next(statuses))
    endpoint = await create_endpoint(engine, retry_count=3)

    delivery = await deliver(engine, endpoint)

    assert len(recorder.requests) == 2
    assert delivery.status == DeliveryStatus.DELIVERED
    assert delivery.attempt_number == 2


@pytest.mark.asyncio
async def test_request_is_signed_and_shaped(engine, recorder):
    endpoint = await create_endpoint(engine, headers={"X-Team": "storage", SIGNATURE_HEADER: "forged"})
    event = make_event(data={"job": "nightly"})

    delivery = await deliver(engine, endpoint, event)

    [request] = recorder.requests
    body = request.content
    assert verify_signature(body, request.headers[SIGNATURE_HEADER], SECRET)
    assert request.headers["X-Team"] == "storage"
    assert request.headers["X-Webhook-Event"] == "backup_failed"
    assert request.headers["X-Webhook-Event-Id"] == event.id
    assert request.headers["X-Webhook-Delivery-Id"] == delivery.id
    assert request.headers["User-Agent"] == "AlertRelay-Webhook/1.0"

    payload = json.loads(body)
    assert set(payload) == {"event_type", "event_id", "occurred_at", "data"}
    assert payload["data"]["details"] == {"job": "nightly"}
    assert payload["data"]["scope_key"] == "agent:agent-a"


@pytest.mark.asyncio
async def test_timeout_counts_as_failure(engine, recorder):
    def responder(request):
        raise httpx.ReadTimeout("slow", request=request)

    recorder.responder = responder
    endpoint = await create_endpoint(engine, retry_count=0)

    delivery = await deliver(engine, endpoint)

    assert delivery.status == DeliveryStatus.FAILED
    assert delivery.response_status is None
    assert delivery.error_message.startswith("timeout")


@pytest.mark.asyncio
async def test_connection_error_is_recorded(engine, recorder):
    def responder(request):
        raise httpx.ConnectError("refused", request=request)

    recorder.responder = responder
    endpoint = await create_endpoint(engine, retry_count=1)

    delivery = await deliver(engine, endpoint)

    assert len(recorder.requests) == 2
    assert delivery.status == DeliveryStatus.FAILED
    assert "ConnectError" in delivery.error_message


@pytest.mark.asyncio
async def test_disabled_endpoint_is_skipped_at_fire_time(engine, recorder):
    endpoint = await create_endpoint(engine)
    [delivery_id] = await engine.deliveries.create_endpoint_deliveries([endpoint], make_event())

    async with engine.session_factory() as db:
        await EndpointService(db, engine.secret_box).update(ORG_ID, endpoint.id, EndpointUpdate(enabled=False))

    assert await engine.deliveries.attempt(delivery_id) is None

    delivery = await engine.deliveries.get_delivery(ORG_ID, delivery_id)
    assert recorder.requests == []
    assert delivery.status == DeliveryStatus.FAILED
    assert delivery.error_message == "endpoint disabled"


@pytest.mark.asyncio
async def test_undecryptable_secret_fails_delivery(engine, recorder):
    # Stored under a key the engine no longer holds, as after a botched key rotation
    fields = {"name": "rotated", "url": HOOK_URL, "secret": SECRET, "event_types": [TriggerType.BACKUP_FAILED]}
    async with engine.session_factory() as db:
        endpoint = await EndpointService(db, SecretBox(SecretBox.generate_key())).create(
            ORG_ID, EndpointCreate(**fields)
        )
    [delivery_id] = await engine.deliveries.create_endpoint_deliveries([endpoint], make_event())

    assert await engine.deliveries.attempt(delivery_id) is None

    delivery = await engine.deliveries.get_delivery(ORG_ID, delivery_id)
    assert recorder.requests == []
    assert delivery.status == DeliveryStatus.FAILED
    assert delivery.error_message == "endpoint secret cannot be decrypted"
    assert await engine.deliveries.due_deliveries(datetime.now(timezone.utc)) == []


@pytest.mark.asyncio
async def test_manual_retry_creates_new_chain(engine, recorder):
    recorder.responder = lambda request: httpx.Response(500)
    endpoint = await create_endpoint(engine, retry_count=0)
    failed = await deliver(engine, endpoint)
    assert failed.status == DeliveryStatus.FAILED

    recorder.responder = lambda request: httpx.Response(200)
    retry = await engine.deliveries.retry_delivery(ORG_ID, failed.id)

    assert retry.id != failed.id
    assert retry.retry_of_id == failed.id
    assert retry.status == DeliveryStatus.PENDING
    assert retry.attempt_number == 1
    assert retry.payload == failed.payload

    await engine.queue.enqueue(retry.id)
    await engine.queue.drain(timeout=5)

    original = await engine.deliveries.get_delivery(ORG_ID, failed.id)
    assert original.status == DeliveryStatus.FAILED
    assert original.attempt_number == failed.attempt_number
    assert (await engine.deliveries.get_delivery(ORG_ID, retry.id)).status == DeliveryStatus.DELIVERED


@pytest.mark.asyncio
async def test_retry_of_non_failed_delivery_conflicts(engine):
    endpoint = await create_endpoint(engine)
    delivered = await deliver(engine, endpoint)

    with pytest.raises(ConflictError):
        await engine.deliveries.retry_delivery(ORG_ID, delivered.id)


@pytest.mark.asyncio
async def test_test_endpoint_persists_nothing(engine, recorder):
    endpoint = await create_endpoint(engine)

    result = await engine.deliveries.test_endpoint(endpoint)

    assert result.success
    assert result.response_status == 200
    assert result.duration_ms >= 0
    [request] = recorder.requests
    assert verify_signature(request.content, request.headers[SIGNATURE_HEADER], SECRET)

    async with engine.session_factory() as db:
        count = await db.scalar(select(func.count()).select_from(WebhookDelivery))
    assert count == 0


@pytest.mark.asyncio
async def test_test_endpoint_reports_failure(engine, recorder):
    recorder.responder = lambda request: httpx.Response(404)
    endpoint = await create_endpoint(engine)

    result = await engine.deliveries.test_endpoint(endpoint)

    assert not result.success
    assert result.response_status == 404
    assert result.error_message == "HTTP 404"


@pytest.mark.asyncio
async def test_list_deliveries_paginates(engine):
    endpoint = await create_endpoint(engine)
    for _ in range(3):
        await engine.deliveries.create_endpoint_deliveries([endpoint], make_event())

    page, total = await engine.deliveries.list_deliveries(ORG_ID, endpoint.id, limit=2, offset=0)
    rest, _ = await engine.deliveries.list_deliveries(ORG_ID, endpoint.id, limit=2, offset=2)

    assert total == 3
    assert len(page) == 2
    assert len(rest) == 1
    other_org, other_total = await engine.deliveries.list_deliveries("org-2", endpoint.id)
    assert other_org == [] and other_total == 0


@pytest.mark.asyncio
async def test_recovery_picks_up_unqueued_deliveries(engine, recorder):
    endpoint = await create_endpoint(engine)
    [delivery_id] = await engine.deliveries.create_endpoint_deliveries([endpoint], make_event())

    assert await engine.recover_due_deliveries() == 1
    await engine.queue.drain(timeout=5)

    assert (await engine.deliveries.get_delivery(ORG_ID, delivery_id)).status == DeliveryStatus.DELIVERED
    assert await engine.recover_due_deliveries() == 0


@pytest.mark.asyncio
async def test_secret_is_encrypted_and_never_exposed(engine):
    endpoint = await create_endpoint(engine)

    assert SECRET.encode() not in endpoint.secret_encrypted
    assert engine.secret_box.decrypt(endpoint.secret_encrypted) == SECRET
    assert SECRET not in EndpointResponse.model_validate(endpoint).model_dump_json()


@pytest.mark.asyncio
async def test_subscribed_endpoints_filters_by_event_type(engine):
    backup = await create_endpoint(engine, name="backup")
    await create_endpoint(engine, name="agents", event_types=[TriggerType.AGENT_OFFLINE])
    await create_endpoint(engine, name="off", enabled=False)

    async with engine.session_factory() as db:
        found = await EndpointService(db, engine.secret_box).subscribed_endpoints(ORG_ID, TriggerType.BACKUP_FAILED)

    assert [e.id for e in found] == [backup.id]
