"""
Notification channels: storage and outbound senders.

Channels are the targets of notify_channel and escalate actions.
Each channel type has a sender that turns a rule firing into one HTTP
request over the shared httpx client.

SECURITY: All queries MUST include org_id filter.
"""
import httpx
import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from alertrelay.exceptions import ChannelDeliveryError, NotFoundError
from alertrelay.models.channel import NotificationChannel
from alertrelay.models.enums import ChannelType
from alertrelay.models.notification_rule import NotificationRule
from alertrelay.schemas.channels import ChannelCreate
from alertrelay.schemas.events import SignalEvent

logger = structlog.get_logger()

ESCALATION_PREFIX = "[ESCALATION] "

# Event severity -> PagerDuty Events v2 severity
_PAGERDUTY_SEVERITY = {
    "critical": "critical",
    "error": "error",
    "high": "error",
    "warning": "warning",
    "medium": "warning",
    "info": "info",
    "low": "info",
}


def default_message(rule: NotificationRule, event: SignalEvent) -> str:
    return f"{rule.name}: {event.trigger_type.value} on {event.scope_key}"


def _raise_for_status(response: httpx.Response, channel: NotificationChannel):
    if not 200 <= response.status_code < 300:
        raise ChannelDeliveryError(
            f"{channel.type.value} channel {channel.id} returned HTTP {response.status_code}"
        )


class SlackSender:
    """Posts to a Slack incoming webhook."""

    def __init__(self, client: httpx.AsyncClient, timeout: float):
        self.client = client
        self.timeout = timeout

    async def send(self, channel, rule, event, message: str):
        body = {
            "text": message,
            "attachments": [{
                "color": "danger" if event.severity in ("critical", "error") else "warning",
                "fields": [
                    {"title": "Trigger", "value": event.trigger_type.value, "short": True},
                    {"title": "Scope", "value": event.scope_key, "short": True},
                    {"title": "Rule", "value": rule.name, "short": True},
                ],
                "ts": int(event.occurred_at.timestamp()),
            }],
        }
        response = await self.client.post(channel.config["webhook_url"], json=body, timeout=self.timeout)
        _raise_for_status(response, channel)


class GenericWebhookSender:
    """Posts a plain JSON notification to an arbitrary URL (unsigned)."""

    def __init__(self, client: httpx.AsyncClient, timeout: float):
        self.client = client
        self.timeout = timeout

    async def send(self, channel, rule, event, message: str):
        body = {
            "message": message,
            "rule_id": rule.id,
            "rule_name": rule.name,
            "event_id": event.id,
            "trigger_type": event.trigger_type.value,
            "scope_key": event.scope_key,
            "severity": event.severity,
            "occurred_at": event.occurred_at.isoformat(),
            "data": event.data,
        }
        response = await self.client.post(channel.config["webhook_url"], json=body, timeout=self.timeout)
        _raise_for_status(response, channel)


class PagerDutySender:
    """
    Triggers a PagerDuty incident through the Events API v2.

    dedup_key is "<rule_id>:<scope_key>" so repeated firings for the same
    entity roll into one open incident.
    """

    def __init__(self, client: httpx.AsyncClient, timeout: float, events_url: str):
        self.client = client
        self.timeout = timeout
        self.events_url = events_url

    async def send(self, channel, rule, event, message: str):
        body = {
            "routing_key": channel.config["routing_key"],
            "event_action": "trigger",
            "dedup_key": f"{rule.id}:{event.scope_key}",
            "payload": {
                "summary": message[:1024],
                "source": event.scope_key,
                "severity": _PAGERDUTY_SEVERITY.get((event.severity or "").lower(), "error"),
                "timestamp": event.occurred_at.isoformat(),
                "component": event.resource_type or "alertrelay",
                "custom_details": {"event_id": event.id, "rule_id": rule.id, **event.data},
            },
        }
        response = await self.client.post(self.events_url, json=body, timeout=self.timeout)
        _raise_for_status(response, channel)


class ChannelNotifier:
    """Routes a message to the sender for the channel's type."""

    def __init__(self, client: httpx.AsyncClient, settings):
        timeout = settings.CHANNEL_TIMEOUT_SECONDS
        self.senders = {
            ChannelType.SLACK: SlackSender(client, timeout),
            ChannelType.WEBHOOK: GenericWebhookSender(client, timeout),
            ChannelType.PAGERDUTY: PagerDutySender(client, timeout, settings.PAGERDUTY_EVENTS_URL),
        }

    async def send(
        self,
        channel: NotificationChannel,
        rule: NotificationRule,
        event: SignalEvent,
        message: str,
    ) -> None:
        """
        Send one notification.

        Raises:
            ChannelDeliveryError: transport failure or non-2xx response
        """
        sender = self.senders[channel.type]
        logger.info(
            "channel_notification_sending",
            channel_id=channel.id,
            channel_type=channel.type.value,
            rule_id=rule.id,
            event_id=event.id,
        )
        try:
            await sender.send(channel, rule, event, message)
        except httpx.HTTPError as e:
            raise ChannelDeliveryError(f"{channel.type.value} channel {channel.id}: {e}") from e


class ChannelService:
    """Service for managing notification channels."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(self, org_id: str, data: ChannelCreate) -> NotificationChannel:
        channel = NotificationChannel(
            org_id=org_id,
            name=data.name,
            type=data.type,
            config=dict(data.config),
            enabled=data.enabled,
        )
        self.db.add(channel)
        await self.db.commit()
        await self.db.refresh(channel)
        logger.info("channel_created", org_id=org_id, channel_id=channel.id, channel_type=channel.type.value)
        return channel

    async def find(self, org_id: str, channel_id: str) -> NotificationChannel | None:
        """Get channel by ID within organisation."""
        stmt = select(NotificationChannel).where(
            NotificationChannel.id == channel_id,
            NotificationChannel.org_id == org_id,
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get(self, org_id: str, channel_id: str) -> NotificationChannel:
        channel = await self.find(org_id, channel_id)
        if channel is None:
            raise NotFoundError(f"channel {channel_id} not found")
        return channel

    async def list_channels(self, org_id: str) -> list[NotificationChannel]:
        stmt = (
            select(NotificationChannel)
            .where(NotificationChannel.org_id == org_id)
            .order_by(NotificationChannel.created_at)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def delete(self, org_id: str, channel_id: str) -> None:
        channel = await self.get(org_id, channel_id)
        await self.db.delete(channel)
        await self.db.commit()
        logger.info("channel_deleted", org_id=org_id, channel_id=channel_id)
