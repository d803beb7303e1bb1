"""
Notification rule request/response models.

RuleAction is a discriminated union on `type`; fields that belong to
other action kinds are dropped at parse time, so execution never sees
them.
"""
from datetime import datetime
from typing import Annotated, Literal, Optional, Union
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator

from alertrelay.models.enums import TriggerType


def check_http_url(value: str) -> str:
    parsed = urlparse(value)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValueError("URL must be an absolute http(s) URL")
    return value


class RuleConditions(BaseModel):
    """Sliding-window count condition plus optional resource filters."""
    model_config = ConfigDict(extra="ignore")

    count: int = Field(default=1, ge=1)
    time_window_minutes: int = Field(default=60, ge=1)
    severity: Optional[str] = None
    agent_ids: list[str] = Field(default_factory=list)
    schedule_ids: list[str] = Field(default_factory=list)
    repository_ids: list[str] = Field(default_factory=list)


class _ActionBase(BaseModel):
    model_config = ConfigDict(extra="ignore")

    message: Optional[str] = None


class NotifyChannelAction(_ActionBase):
    type: Literal["notify_channel"] = "notify_channel"
    channel_id: str = Field(min_length=1)


class EscalateAction(_ActionBase):
    type: Literal["escalate"] = "escalate"
    escalate_to_channel_id: str = Field(min_length=1)


class SuppressAction(_ActionBase):
    type: Literal["suppress"] = "suppress"
    suppress_duration_minutes: int = Field(ge=1)


class WebhookAction(_ActionBase):
    """
    Fire a webhook.

    endpoint_id targets one registered endpoint, webhook_url an ad hoc
    receiver; with neither, every subscribed endpoint of the organisation
    receives the event. Setting both is rejected.
    """
    type: Literal["webhook"] = "webhook"
    endpoint_id: Optional[str] = None
    webhook_url: Optional[str] = None

    @field_validator("webhook_url")
    @classmethod
    def validate_url(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        return check_http_url(value)

    @model_validator(mode="after")
    def endpoint_xor_url(self):
        if self.endpoint_id and self.webhook_url:
            raise ValueError("webhook action takes either endpoint_id or webhook_url, not both")
        return self


RuleAction = Annotated[
    Union[NotifyChannelAction, EscalateAction, SuppressAction, WebhookAction],
    Field(discriminator="type"),
]

rule_action_adapter = TypeAdapter(RuleAction)


def parse_action(raw: dict) -> RuleAction:
    """Parse one stored action dict into its typed variant."""
    return rule_action_adapter.validate_python(raw)


def dump_actions(actions: list) -> list[dict]:
    return [action.model_dump(mode="json", exclude_none=True) for action in actions]


class RuleCreate(BaseModel):
    """Request model for creating a notification rule."""
    name: str = Field(min_length=1, max_length=255)
    description: Optional[str] = None
    trigger_type: TriggerType
    enabled: bool = True
    priority: int = 0
    conditions: RuleConditions = Field(default_factory=RuleConditions)
    actions: list[RuleAction] = Field(min_length=1)


class RuleUpdate(BaseModel):
    """Partial update; omitted fields are left unchanged."""
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = None
    trigger_type: Optional[TriggerType] = None
    enabled: Optional[bool] = None
    priority: Optional[int] = None
    conditions: Optional[RuleConditions] = None
    actions: Optional[list[RuleAction]] = Field(default=None, min_length=1)


class RuleEnabledUpdate(BaseModel):
    enabled: bool


class RuleResponse(BaseModel):
    """Response model for notification rules."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    description: Optional[str]
    trigger_type: TriggerType
    enabled: bool
    priority: int
    conditions: RuleConditions
    actions: list[RuleAction]
    created_at: datetime
    updated_at: datetime


class ActionOutcome(BaseModel):
    """Result of executing (or planning) one rule action."""
    index: int
    type: str
    success: bool
    detail: Optional[str] = None
    error: Optional[str] = None
    delivery_ids: list[str] = Field(default_factory=list)


class RuleTestRequest(BaseModel):
    """Optional sample event fields for a rule dry run."""
    severity: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    data: dict = Field(default_factory=dict)


class RuleTestResult(BaseModel):
    success: bool
    message: str
    outcomes: list[ActionOutcome] = Field(default_factory=list)


class RuleExecutionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    rule_id: str
    event_id: str
    trigger_type: TriggerType
    scope_key: str
    success: bool
    outcomes: list[ActionOutcome]
    executed_at: datetime
