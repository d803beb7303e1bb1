"""
Notification channel model.

Targets for notify_channel and escalate actions.
"""
from sqlalchemy import String, Boolean, JSON, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column
from alertrelay.models.base import Base, TimestampMixin, enum_values, new_id
from alertrelay.models.enums import ChannelType


class NotificationChannel(Base, TimestampMixin):
    """A Slack, generic webhook or PagerDuty destination owned by an organisation."""
    __tablename__ = "notification_channels"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    org_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    type: Mapped[ChannelType] = mapped_column(
        SQLEnum(ChannelType, native_enum=False, length=20, values_callable=enum_values),
        nullable=False
    )
    config: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def __repr__(self):
        return f"<NotificationChannel(id={self.id}, type={self.type})>"
