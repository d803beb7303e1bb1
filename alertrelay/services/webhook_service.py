"""
Webhook Service

Endpoint registration and signed outbound delivery with a retry state
machine:

    pending -> delivered
    pending -> retrying -> ... -> delivered | failed

Each call to WebhookDeliveryService.attempt performs exactly one HTTP
request and records its outcome before returning the backoff delay for
the next attempt. Scheduling that next attempt is the delivery queue's
job, so a delivery's attempts never overlap.

SECURITY: All queries MUST include org_id filter. Endpoint secrets are
decrypted only to sign a request and are never logged.
"""
import asyncio
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta

import httpx
import structlog
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from alertrelay.exceptions import ConfigurationError, ConflictError, NotFoundError
from alertrelay.models.base import utcnow
from alertrelay.models.enums import DeliveryStatus, TriggerType
from alertrelay.models.notification_rule import NotificationRule
from alertrelay.models.webhook import WebhookDelivery, WebhookEndpoint
from alertrelay.routes.metrics import track_webhook_attempt, track_webhook_terminal
from alertrelay.schemas.events import SignalEvent
from alertrelay.schemas.webhooks import EndpointCreate, EndpointUpdate, TestEndpointResult
from alertrelay.services.secret_box import SecretBox
from alertrelay.services.signing import SIGNATURE_HEADER, canonical_body, generate_signature

logger = structlog.get_logger()

USER_AGENT = "AlertRelay-Webhook/1.0"

# Headers an endpoint's custom header map may not replace
_RESERVED_HEADERS = {
    "content-type",
    "user-agent",
    SIGNATURE_HEADER.lower(),
    "x-webhook-event",
    "x-webhook-event-id",
    "x-webhook-delivery-id",
    "x-webhook-timestamp",
}


def backoff_delay(attempt_number: int, base: float, cap: float) -> float:
    """Delay before the attempt that follows attempt `attempt_number` (1-based)."""
    return min(base * (2 ** (attempt_number - 1)), cap)


def build_payload(
    event: SignalEvent,
    rule: NotificationRule | None = None,
    message: str | None = None,
) -> dict:
    """Outbound JSON body: {event_type, event_id, occurred_at, data}."""
    resource = None
    if event.resource_type:
        resource = {"type": event.resource_type, "id": event.resource_id}

    return {
        "event_type": event.trigger_type.value,
        "event_id": event.id,
        "occurred_at": event.occurred_at.isoformat(),
        "data": {
            "scope_key": event.scope_key,
            "severity": event.severity,
            "resource": resource,
            "rule": {"id": rule.id, "name": rule.name} if rule is not None else None,
            "message": message,
            "details": event.data,
        },
    }


def build_headers(
    body: bytes,
    *,
    delivery_id: str,
    event_type: str,
    event_id: str,
    secret: str | None,
    custom_headers: dict | None = None,
) -> dict:
    headers = {
        name: value
        for name, value in (custom_headers or {}).items()
        if name.lower() not in _RESERVED_HEADERS
    }
    headers.update({
        "Content-Type": "application/json",
        "User-Agent": USER_AGENT,
        "X-Webhook-Event": event_type,
        "X-Webhook-Event-Id": event_id,
        "X-Webhook-Delivery-Id": delivery_id,
        "X-Webhook-Timestamp": str(int(time.time())),
    })
    if secret:
        headers[SIGNATURE_HEADER] = generate_signature(body, secret)
    return headers


@dataclass
class AttemptResult:
    success: bool
    response_status: int | None
    response_body: str | None
    error_message: str | None
    duration_ms: int


async def send_signed(
    client: httpx.AsyncClient,
    url: str,
    body: bytes,
    headers: dict,
    timeout_seconds: float,
    body_limit: int,
) -> AttemptResult:
    """
    POST one request with a hard overall deadline.

    Timeouts and transport errors come back as a failed AttemptResult,
    never as exceptions. At most body_limit bytes of the response are kept.
    """
    start = time.monotonic()

    async def _post() -> tuple[int, bytes]:
        async with client.stream("POST", url, content=body, headers=headers, timeout=timeout_seconds) as response:
            received = bytearray()
            async for chunk in response.aiter_bytes():
                received.extend(chunk)
                if len(received) >= body_limit:
                    break
            return response.status_code, bytes(received[:body_limit])

    status_code = None
    response_body = None
    error = None
    try:
        status_code, raw = await asyncio.wait_for(_post(), timeout=timeout_seconds)
        response_body = raw.decode("utf-8", errors="replace")
    except (asyncio.TimeoutError, httpx.TimeoutException):
        error = f"timeout after {timeout_seconds}s"
    except httpx.HTTPError as e:
        error = f"{type(e).__name__}: {e}"

    duration_ms = int((time.monotonic() - start) * 1000)
    if status_code is not None and 200 <= status_code < 300:
        return AttemptResult(True, status_code, response_body, None, duration_ms)
    if status_code is not None:
        error = f"HTTP {status_code}"
    return AttemptResult(False, status_code, response_body, error, duration_ms)


class EndpointService:
    """Service for managing registered webhook endpoints."""

    def __init__(self, db: AsyncSession, secret_box: SecretBox):
        self.db = db
        self.secret_box = secret_box

    async def create(self, org_id: str, data: EndpointCreate) -> WebhookEndpoint:
        """
        Register an endpoint. The secret is encrypted before it is stored.

        Args:
            org_id: Organisation ID
            data: Validated endpoint payload

        Returns:
            Newly created WebhookEndpoint
        """
        endpoint = WebhookEndpoint(
            org_id=org_id,
            name=data.name,
            url=data.url,
            secret_encrypted=self.secret_box.encrypt(data.secret),
            event_types=[t.value for t in data.event_types],
            headers=dict(data.headers),
            retry_count=data.retry_count,
            timeout_seconds=data.timeout_seconds,
            enabled=data.enabled,
        )
        self.db.add(endpoint)
        await self.db.commit()
        await self.db.refresh(endpoint)
        logger.info("webhook_endpoint_created", org_id=org_id, endpoint_id=endpoint.id, url=endpoint.url)
        return endpoint

    async def find(self, org_id: str, endpoint_id: str) -> WebhookEndpoint | None:
        stmt = select(WebhookEndpoint).where(
            WebhookEndpoint.id == endpoint_id,
            WebhookEndpoint.org_id == org_id,
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get(self, org_id: str, endpoint_id: str) -> WebhookEndpoint:
        endpoint = await self.find(org_id, endpoint_id)
        if endpoint is None:
            raise NotFoundError(f"webhook endpoint {endpoint_id} not found")
        return endpoint

    async def list_endpoints(self, org_id: str) -> list[WebhookEndpoint]:
        stmt = (
            select(WebhookEndpoint)
            .where(WebhookEndpoint.org_id == org_id)
            .order_by(WebhookEndpoint.created_at, WebhookEndpoint.id)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def subscribed_endpoints(self, org_id: str, trigger_type: TriggerType) -> list[WebhookEndpoint]:
        """Enabled endpoints whose event_types include the trigger type."""
        stmt = (
            select(WebhookEndpoint)
            .where(WebhookEndpoint.org_id == org_id, WebhookEndpoint.enabled.is_(True))
            .order_by(WebhookEndpoint.created_at, WebhookEndpoint.id)
        )
        result = await self.db.execute(stmt)
        # event_types is a JSON list; filtered here to stay portable across backends
        return [endpoint for endpoint in result.scalars().all() if endpoint.subscribes_to(trigger_type)]

    async def update(self, org_id: str, endpoint_id: str, data: EndpointUpdate) -> WebhookEndpoint:
        """Partial update. Disabling takes effect for attempts not yet started."""
        endpoint = await self.get(org_id, endpoint_id)
        fields = data.model_dump(exclude_unset=True, exclude_none=True)

        if "secret" in fields:
            endpoint.secret_encrypted = self.secret_box.encrypt(fields.pop("secret"))
        if "event_types" in fields:
            endpoint.event_types = list(dict.fromkeys(t.value for t in data.event_types))
            fields.pop("event_types")
        for name, value in fields.items():
            setattr(endpoint, name, value)

        await self.db.commit()
        await self.db.refresh(endpoint)
        logger.info("webhook_endpoint_updated", org_id=org_id, endpoint_id=endpoint.id, enabled=endpoint.enabled)
        return endpoint

    async def delete(self, org_id: str, endpoint_id: str) -> None:
        """Delete an endpoint. Its delivery history is kept."""
        endpoint = await self.get(org_id, endpoint_id)
        await self.db.delete(endpoint)
        await self.db.commit()
        logger.info("webhook_endpoint_deleted", org_id=org_id, endpoint_id=endpoint_id)


@dataclass
class _Target:
    url: str
    secret: str | None
    headers: dict
    timeout_seconds: int


class WebhookDeliveryService:
    """
    Creates delivery records and runs individual delivery attempts.

    Works with its own sessions from session_factory because attempts run
    outside any request, in the delivery queue or the arq worker.
    """

    def __init__(self, session_factory, secret_box: SecretBox, http_client: httpx.AsyncClient, settings):
        self.session_factory = session_factory
        self.secret_box = secret_box
        self.http_client = http_client
        self.settings = settings

    async def create_endpoint_deliveries(
        self,
        endpoints: list[WebhookEndpoint],
        event: SignalEvent,
        rule: NotificationRule | None = None,
        message: str | None = None,
    ) -> list[str]:
        """Create one pending delivery per endpoint. Returns the delivery ids."""
        if not endpoints:
            return []
        payload = build_payload(event, rule, message)
        async with self.session_factory() as db:
            deliveries = [
                WebhookDelivery(
                    org_id=event.org_id,
                    endpoint_id=endpoint.id,
                    rule_id=rule.id if rule is not None else None,
                    event_id=event.id,
                    event_type=event.trigger_type,
                    payload=payload,
                    status=DeliveryStatus.PENDING,
                    attempt_number=1,
                    max_attempts=endpoint.retry_count + 1,
                    timeout_seconds=endpoint.timeout_seconds,
                )
                for endpoint in endpoints
            ]
            db.add_all(deliveries)
            await db.commit()
            ids = [delivery.id for delivery in deliveries]

        logger.info("webhook_deliveries_created", org_id=event.org_id, event_id=event.id, delivery_ids=ids)
        return ids

    async def create_adhoc_delivery(
        self,
        url: str,
        event: SignalEvent,
        rule: NotificationRule | None = None,
        message: str | None = None,
    ) -> str:
        """Create a pending delivery to a one-off URL using default retry and timeout."""
        async with self.session_factory() as db:
            delivery = WebhookDelivery(
                org_id=event.org_id,
                target_url=url,
                rule_id=rule.id if rule is not None else None,
                event_id=event.id,
                event_type=event.trigger_type,
                payload=build_payload(event, rule, message),
                status=DeliveryStatus.PENDING,
                attempt_number=1,
                max_attempts=self.settings.WEBHOOK_DEFAULT_RETRY_COUNT + 1,
                timeout_seconds=self.settings.WEBHOOK_DEFAULT_TIMEOUT_SECONDS,
            )
            db.add(delivery)
            await db.commit()
            delivery_id = delivery.id

        logger.info("webhook_adhoc_delivery_created", org_id=event.org_id, event_id=event.id, delivery_id=delivery_id)
        return delivery_id

    async def _resolve_target(self, db: AsyncSession, delivery: WebhookDelivery) -> _Target | str:
        """Look up where to send at fire time. Returns an error string when the target is gone."""
        if delivery.endpoint_id is None:
            return _Target(
                url=delivery.target_url,
                secret=self.settings.ADHOC_WEBHOOK_SECRET,
                headers={},
                timeout_seconds=delivery.timeout_seconds,
            )

        endpoint = await db.get(WebhookEndpoint, delivery.endpoint_id)
        if endpoint is None:
            return "endpoint not found"
        if not endpoint.enabled:
            return "endpoint disabled"
        try:
            secret = self.secret_box.decrypt(endpoint.secret_encrypted)
        except ConfigurationError:
            # Terminal until the key is restored or the secret is re-set
            return "endpoint secret cannot be decrypted"
        return _Target(
            url=endpoint.url,
            secret=secret,
            headers=endpoint.headers or {},
            timeout_seconds=endpoint.timeout_seconds,
        )

    async def attempt(self, delivery_id: str) -> float | None:
        """
        Run one attempt for a delivery.

        Returns:
            Seconds to wait before the next attempt, or None when the
            delivery is terminal (or was not found).
        """
        log = logger.bind(delivery_id=delivery_id)

        async with self.session_factory() as db:
            delivery = await db.get(WebhookDelivery, delivery_id)
            if delivery is None:
                log.warning("webhook_delivery_missing")
                return None
            if delivery.status.is_terminal:
                log.info("webhook_delivery_already_terminal", status=delivery.status.value)
                return None

            target = await self._resolve_target(db, delivery)
            if isinstance(target, str):
                delivery.status = DeliveryStatus.FAILED
                delivery.error_message = target
                delivery.next_retry_at = None
                delivery.processed_at = utcnow()
                await db.commit()
                track_webhook_terminal(DeliveryStatus.FAILED.value)
                log.warning("webhook_delivery_skipped", reason=target)
                return None

            payload = delivery.payload
            attempt_number = delivery.attempt_number
            event_type = delivery.event_type.value
            event_id = delivery.event_id

        body = canonical_body(payload)
        headers = build_headers(
            body,
            delivery_id=delivery_id,
            event_type=event_type,
            event_id=event_id,
            secret=target.secret,
            custom_headers=target.headers,
        )
        result = await send_signed(
            self.http_client,
            target.url,
            body,
            headers,
            target.timeout_seconds,
            self.settings.WEBHOOK_RESPONSE_BODY_LIMIT,
        )
        track_webhook_attempt("success" if result.success else "error")

        async with self.session_factory() as db:
            delivery = await db.get(WebhookDelivery, delivery_id)
            if delivery is None:
                return None
            delay = self._record(delivery, result)
            await db.commit()

        log.info(
            "webhook_attempt_recorded",
            attempt=attempt_number,
            success=result.success,
            response_status=result.response_status,
            duration_ms=result.duration_ms,
            error=result.error_message,
            next_delay_seconds=delay,
        )
        return delay

    def _record(self, delivery: WebhookDelivery, result: AttemptResult) -> float | None:
        now = utcnow()
        delivery.processed_at = now
        delivery.response_status = result.response_status
        delivery.response_body = result.response_body

        if result.success:
            delivery.status = DeliveryStatus.DELIVERED
            delivery.delivered_at = now
            delivery.error_message = None
            delivery.next_retry_at = None
            track_webhook_terminal(DeliveryStatus.DELIVERED.value)
            return None

        delivery.error_message = result.error_message
        if delivery.attempt_number < delivery.max_attempts:
            delay = backoff_delay(
                delivery.attempt_number,
                self.settings.WEBHOOK_BACKOFF_BASE_SECONDS,
                self.settings.WEBHOOK_BACKOFF_CAP_SECONDS,
            )
            delivery.status = DeliveryStatus.RETRYING
            delivery.attempt_number += 1
            delivery.next_retry_at = now + timedelta(seconds=delay)
            return delay

        delivery.status = DeliveryStatus.FAILED
        delivery.next_retry_at = None
        track_webhook_terminal(DeliveryStatus.FAILED.value)
        return None

    async def retry_delivery(self, org_id: str, delivery_id: str) -> WebhookDelivery:
        """
        Start a fresh attempt chain for a failed delivery.

        The failed record is left untouched; the new delivery links back
        through retry_of_id.

        Raises:
            NotFoundError: unknown delivery
            ConflictError: delivery is not failed
        """
        async with self.session_factory() as db:
            original = await self._get_delivery(db, org_id, delivery_id)
            if original.status != DeliveryStatus.FAILED:
                raise ConflictError(f"only failed deliveries can be retried (status is {original.status.value})")

            max_attempts = original.max_attempts
            timeout_seconds = original.timeout_seconds
            if original.endpoint_id is not None:
                endpoint = await db.get(WebhookEndpoint, original.endpoint_id)
                if endpoint is not None:
                    max_attempts = endpoint.retry_count + 1
                    timeout_seconds = endpoint.timeout_seconds

            retry = WebhookDelivery(
                org_id=original.org_id,
                endpoint_id=original.endpoint_id,
                target_url=original.target_url,
                rule_id=original.rule_id,
                event_id=original.event_id,
                event_type=original.event_type,
                payload=original.payload,
                status=DeliveryStatus.PENDING,
                attempt_number=1,
                max_attempts=max_attempts,
                timeout_seconds=timeout_seconds,
                retry_of_id=original.id,
            )
            db.add(retry)
            await db.commit()

        logger.info("webhook_delivery_retried", org_id=org_id, delivery_id=retry.id, retry_of_id=delivery_id)
        return retry

    async def test_endpoint(self, endpoint: WebhookEndpoint, event_type: TriggerType | None = None) -> TestEndpointResult:
        """
        Send one signed synthetic event. No retry, nothing persisted.
        """
        trigger = TriggerType(event_type or (endpoint.event_types or [TriggerType.BACKUP_FAILED.value])[0])
        event = SignalEvent(
            id=f"test-{uuid.uuid4()}",
            org_id=endpoint.org_id,
            trigger_type=trigger,
            severity="info",
            data={"test": True},
        )
        body = canonical_body(build_payload(event, message="This is a test webhook from AlertRelay"))
        headers = build_headers(
            body,
            delivery_id=f"test-{uuid.uuid4()}",
            event_type=trigger.value,
            event_id=event.id,
            secret=self.secret_box.decrypt(endpoint.secret_encrypted),
            custom_headers=endpoint.headers,
        )
        result = await send_signed(
            self.http_client,
            endpoint.url,
            body,
            headers,
            endpoint.timeout_seconds,
            self.settings.WEBHOOK_RESPONSE_BODY_LIMIT,
        )
        logger.info(
            "webhook_endpoint_tested",
            endpoint_id=endpoint.id,
            success=result.success,
            response_status=result.response_status,
            duration_ms=result.duration_ms,
        )
        return TestEndpointResult(
            success=result.success,
            response_status=result.response_status,
            duration_ms=result.duration_ms,
            error_message=result.error_message,
        )

    async def _get_delivery(self, db: AsyncSession, org_id: str, delivery_id: str) -> WebhookDelivery:
        stmt = select(WebhookDelivery).where(
            WebhookDelivery.id == delivery_id,
            WebhookDelivery.org_id == org_id,
        )
        delivery = (await db.execute(stmt)).scalar_one_or_none()
        if delivery is None:
            raise NotFoundError(f"webhook delivery {delivery_id} not found")
        return delivery

    async def get_delivery(self, org_id: str, delivery_id: str) -> WebhookDelivery:
        async with self.session_factory() as db:
            return await self._get_delivery(db, org_id, delivery_id)

    async def list_deliveries(
        self,
        org_id: str,
        endpoint_id: str,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[WebhookDelivery], int]:
        """Newest first, with the total count for pagination."""
        conditions = (WebhookDelivery.org_id == org_id, WebhookDelivery.endpoint_id == endpoint_id)
        async with self.session_factory() as db:
            total = await db.scalar(select(func.count()).select_from(WebhookDelivery).where(*conditions))
            stmt = (
                select(WebhookDelivery)
                .where(*conditions)
                .order_by(WebhookDelivery.created_at.desc(), WebhookDelivery.id)
                .limit(limit)
                .offset(offset)
            )
            items = list((await db.execute(stmt)).scalars().all())
        return items, int(total or 0)

    async def due_deliveries(self, now: datetime, limit: int = 100) -> list[str]:
        """
        Ids of non-terminal deliveries that should be attempted now.

        Covers pending records never handed to a queue and retries whose
        timer was lost with a restart.
        """
        stmt = (
            select(WebhookDelivery.id)
            .where(
                WebhookDelivery.status.in_([DeliveryStatus.PENDING, DeliveryStatus.RETRYING]),
                or_(WebhookDelivery.next_retry_at.is_(None), WebhookDelivery.next_retry_at <= now),
            )
            .order_by(WebhookDelivery.created_at)
            .limit(limit)
        )
        async with self.session_factory() as db:
            return list((await db.execute(stmt)).scalars().all())
