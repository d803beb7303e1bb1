"""
Notification rule service.

CRUD for rules plus the rule execution audit trail.

SECURITY: All queries MUST include org_id filter.
Failure to do so will result in data leakage between tenants.
"""
import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from alertrelay.exceptions import ConfigurationError, NotFoundError
from alertrelay.models.channel import NotificationChannel
from alertrelay.models.enums import TriggerType
from alertrelay.models.notification_rule import NotificationRule, RuleExecution
from alertrelay.models.webhook import WebhookEndpoint
from alertrelay.schemas.events import SignalEvent
from alertrelay.schemas.rules import (
    ActionOutcome,
    EscalateAction,
    NotifyChannelAction,
    RuleCreate,
    RuleUpdate,
    WebhookAction,
    dump_actions,
)

logger = structlog.get_logger()


class RuleService:
    """Service for managing notification rules."""

    def __init__(self, db: AsyncSession, counter=None, ledger=None):
        self.db = db
        self.counter = counter
        self.ledger = ledger

    async def _validate_references(self, org_id: str, actions: list) -> None:
        """
        Reject actions that point at channels or endpoints outside the org.

        Raises:
            ConfigurationError: a referenced channel or endpoint is unknown
        """
        for index, action in enumerate(actions):
            match action:
                case NotifyChannelAction(channel_id=channel_id) | EscalateAction(escalate_to_channel_id=channel_id):
                    exists = await self.db.scalar(
                        select(func.count()).select_from(NotificationChannel).where(
                            NotificationChannel.id == channel_id,
                            NotificationChannel.org_id == org_id,
                        )
                    )
                    if not exists:
                        raise ConfigurationError(f"action {index}: channel {channel_id} does not exist")
                case WebhookAction(endpoint_id=endpoint_id) if endpoint_id:
                    exists = await self.db.scalar(
                        select(func.count()).select_from(WebhookEndpoint).where(
                            WebhookEndpoint.id == endpoint_id,
                            WebhookEndpoint.org_id == org_id,
                        )
                    )
                    if not exists:
                        raise ConfigurationError(f"action {index}: webhook endpoint {endpoint_id} does not exist")
                case _:
                    pass

    async def create(self, org_id: str, data: RuleCreate) -> NotificationRule:
        """
        Create a rule after checking its action references.

        Args:
            org_id: Organisation ID
            data: Validated rule payload

        Returns:
            Newly created NotificationRule
        """
        await self._validate_references(org_id, data.actions)

        rule = NotificationRule(
            org_id=org_id,
            name=data.name,
            description=data.description,
            trigger_type=data.trigger_type,
            enabled=data.enabled,
            priority=data.priority,
            conditions=data.conditions.model_dump(mode="json"),
            actions=dump_actions(data.actions),
        )
        self.db.add(rule)
        await self.db.commit()
        await self.db.refresh(rule)
        logger.info("rule_created", org_id=org_id, rule_id=rule.id, trigger_type=rule.trigger_type.value)
        return rule

    async def find(self, org_id: str, rule_id: str) -> NotificationRule | None:
        stmt = select(NotificationRule).where(
            NotificationRule.id == rule_id,
            NotificationRule.org_id == org_id,
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get(self, org_id: str, rule_id: str) -> NotificationRule:
        rule = await self.find(org_id, rule_id)
        if rule is None:
            raise NotFoundError(f"notification rule {rule_id} not found")
        return rule

    async def list_rules(self, org_id: str) -> list[NotificationRule]:
        """Get all rules for an organisation in evaluation order."""
        stmt = (
            select(NotificationRule)
            .where(NotificationRule.org_id == org_id)
            .order_by(NotificationRule.priority, NotificationRule.id)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def enabled_rules_for(self, org_id: str, trigger_type: TriggerType) -> list[NotificationRule]:
        """Enabled rules for one trigger type, ordered by (priority, id)."""
        stmt = (
            select(NotificationRule)
            .where(
                NotificationRule.org_id == org_id,
                NotificationRule.trigger_type == trigger_type,
                NotificationRule.enabled.is_(True),
            )
            .order_by(NotificationRule.priority, NotificationRule.id)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def update(self, org_id: str, rule_id: str, data: RuleUpdate) -> NotificationRule:
        """
        Apply a partial update.

        Lowering conditions.count takes effect on the next event; the
        stored window timestamps are left as they are.
        """
        rule = await self.get(org_id, rule_id)
        fields = data.model_dump(exclude_unset=True)

        if data.actions is not None:
            await self._validate_references(org_id, data.actions)
            rule.actions = dump_actions(data.actions)
        if data.conditions is not None:
            rule.conditions = data.conditions.model_dump(mode="json")

        for name in ("name", "description", "trigger_type", "enabled", "priority"):
            if name in fields and (fields[name] is not None or name == "description"):
                setattr(rule, name, fields[name])

        await self.db.commit()
        await self.db.refresh(rule)
        logger.info("rule_updated", org_id=org_id, rule_id=rule.id, fields=sorted(fields))
        return rule

    async def set_enabled(self, org_id: str, rule_id: str, enabled: bool) -> NotificationRule:
        rule = await self.get(org_id, rule_id)
        rule.enabled = enabled
        await self.db.commit()
        await self.db.refresh(rule)
        logger.info("rule_toggled", org_id=org_id, rule_id=rule.id, enabled=enabled)
        return rule

    async def delete(self, org_id: str, rule_id: str) -> None:
        """
        Delete a rule and forget its counters and suppressions.

        Deliveries and executions already recorded are kept.
        """
        rule = await self.get(org_id, rule_id)
        await self.db.delete(rule)
        await self.db.commit()

        if self.counter is not None:
            await self.counter.reset(rule_id)
        if self.ledger is not None:
            await self.ledger.clear(rule_id)
        logger.info("rule_deleted", org_id=org_id, rule_id=rule_id)

    async def record_execution(
        self,
        rule: NotificationRule,
        event: SignalEvent,
        outcomes: list[ActionOutcome],
    ) -> RuleExecution:
        execution = RuleExecution(
            org_id=rule.org_id,
            rule_id=rule.id,
            event_id=event.id,
            trigger_type=event.trigger_type,
            scope_key=event.scope_key,
            success=all(outcome.success for outcome in outcomes),
            outcomes=[outcome.model_dump(mode="json") for outcome in outcomes],
        )
        self.db.add(execution)
        await self.db.commit()
        return execution

    async def list_executions(
        self,
        org_id: str,
        rule_id: str,
        limit: int = 50,
        offset: int = 0,
    ) -> list[RuleExecution]:
        """Most recent executions first."""
        await self.get(org_id, rule_id)
        stmt = (
            select(RuleExecution)
            .where(RuleExecution.org_id == org_id, RuleExecution.rule_id == rule_id)
            .order_by(RuleExecution.executed_at.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())
