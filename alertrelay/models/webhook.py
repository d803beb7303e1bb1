"""
Webhook endpoint and delivery models.

Tracks registered endpoints and every outbound delivery attempt chain.
"""
from datetime import datetime
from sqlalchemy import String, Integer, Boolean, DateTime, Text, JSON, LargeBinary, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column
from alertrelay.models.base import Base, TimestampMixin, enum_values, new_id, utcnow
from alertrelay.models.enums import DeliveryStatus, TriggerType


class WebhookEndpoint(Base, TimestampMixin):
    """
    A registered webhook receiver.

    The signing secret is stored Fernet-encrypted and is never returned
    by the API or written to logs.
    """
    __tablename__ = "webhook_endpoints"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    org_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    secret_encrypted: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    event_types: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    headers: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    timeout_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=30)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def subscribes_to(self, trigger_type: TriggerType) -> bool:
        return TriggerType(trigger_type).value in (self.event_types or [])

    def __repr__(self):
        return f"<WebhookEndpoint(id={self.id}, url={self.url}, enabled={self.enabled})>"


class WebhookDelivery(Base):
    """
    One webhook delivery attempt chain.

    endpoint_id is a weak reference (no foreign key) so history survives
    endpoint deletion. Ad hoc deliveries carry target_url instead.
    """
    __tablename__ = "webhook_deliveries"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    org_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    endpoint_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    target_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    rule_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    event_id: Mapped[str] = mapped_column(String(64), nullable=False)
    event_type: Mapped[TriggerType] = mapped_column(
        SQLEnum(TriggerType, native_enum=False, length=50, values_callable=enum_values),
        nullable=False
    )
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)
    status: Mapped[DeliveryStatus] = mapped_column(
        SQLEnum(DeliveryStatus, native_enum=False, length=20, values_callable=enum_values),
        nullable=False,
        default=DeliveryStatus.PENDING,
        index=True
    )
    response_status: Mapped[int | None] = mapped_column(Integer, nullable=True)
    response_body: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False)
    timeout_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=30)
    next_retry_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    retry_of_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return (
            f"<WebhookDelivery(id={self.id}, status={self.status}, "
            f"attempt={self.attempt_number}/{self.max_attempts})>"
        )
