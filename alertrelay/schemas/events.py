"""
Inbound signal events and rule evaluation results.
"""
import enum
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from alertrelay.models.enums import TriggerType
from alertrelay.schemas.rules import ActionOutcome


GLOBAL_SCOPE = "global"


class SignalEvent(BaseModel):
    """
    A domain event emitted by the signal source.

    scope_key narrows counting and suppression to one entity. When not
    given it is derived as "<resource_type>:<resource_id>", or "global"
    for events without a resource.
    """
    id: str = Field(default_factory=lambda: str(uuid.uuid4()), min_length=1, max_length=64)
    org_id: str
    trigger_type: TriggerType
    severity: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    scope_key: Optional[str] = None
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    data: dict[str, Any] = Field(default_factory=dict)

    @field_validator("occurred_at")
    @classmethod
    def ensure_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    @model_validator(mode="after")
    def derive_scope_key(self):
        if not self.scope_key:
            if self.resource_type and self.resource_id:
                self.scope_key = f"{self.resource_type}:{self.resource_id}"
            else:
                self.scope_key = GLOBAL_SCOPE
        return self


class EventIngest(BaseModel):
    """Request body for POST /api/events (org comes from the token)."""
    id: Optional[str] = Field(default=None, min_length=1, max_length=64)
    trigger_type: TriggerType
    severity: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    scope_key: Optional[str] = None
    occurred_at: Optional[datetime] = None
    data: dict[str, Any] = Field(default_factory=dict)

    def to_event(self, org_id: str) -> SignalEvent:
        fields = self.model_dump(exclude_none=True)
        return SignalEvent(org_id=org_id, **fields)


class MatchOutcome(str, enum.Enum):
    MATCHED = "matched"
    COUNTED = "counted"
    SUPPRESSED = "suppressed"
    FILTERED = "filtered"


class MatchResult(BaseModel):
    rule_id: str
    outcome: MatchOutcome
    count: int = 0
    threshold: int = 1

    @property
    def matched(self) -> bool:
        return self.outcome == MatchOutcome.MATCHED


class RuleFiring(BaseModel):
    """Evaluation and dispatch result for one rule."""
    match: MatchResult
    outcomes: list[ActionOutcome] = Field(default_factory=list)


class EventResult(BaseModel):
    event_id: str
    scope_key: str
    results: list[RuleFiring] = Field(default_factory=list)
