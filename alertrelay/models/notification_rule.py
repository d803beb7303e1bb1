"""
Notification rule and rule execution models.

SECURITY: All queries MUST include org_id filter.
Failure to do so will result in data leakage between tenants.
"""
from datetime import datetime
from sqlalchemy import String, Text, Integer, Boolean, DateTime, JSON, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column
from alertrelay.models.base import Base, TimestampMixin, enum_values, new_id, utcnow
from alertrelay.models.enums import TriggerType


class NotificationRule(Base, TimestampMixin):
    """
    A rule that turns matching domain events into actions.

    conditions and actions are stored as JSON; services parse them into
    the schemas in alertrelay.schemas.rules before use.
    """
    __tablename__ = "notification_rules"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    org_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    trigger_type: Mapped[TriggerType] = mapped_column(
        SQLEnum(TriggerType, native_enum=False, length=50, values_callable=enum_values),
        nullable=False,
        index=True
    )
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    conditions: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    actions: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    def __repr__(self):
        return f"<NotificationRule(id={self.id}, trigger={self.trigger_type}, priority={self.priority})>"


class RuleExecution(Base):
    """Audit record written each time a rule fires."""
    __tablename__ = "rule_executions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    org_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    rule_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    event_id: Mapped[str] = mapped_column(String(64), nullable=False)
    trigger_type: Mapped[TriggerType] = mapped_column(
        SQLEnum(TriggerType, native_enum=False, length=50, values_callable=enum_values),
        nullable=False
    )
    scope_key: Mapped[str] = mapped_column(String(255), nullable=False)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    outcomes: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    executed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    def __repr__(self):
        return f"<RuleExecution(rule_id={self.rule_id}, event_id={self.event_id}, success={self.success})>"
