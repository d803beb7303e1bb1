"""
Webhook endpoint and delivery request/response models.
"""
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from alertrelay.models.enums import DeliveryStatus, TriggerType
from alertrelay.schemas.rules import check_http_url


class EndpointCreate(BaseModel):
    """Request model for registering a webhook endpoint."""
    name: str = Field(min_length=1, max_length=255)
    url: str
    secret: str = Field(min_length=16, max_length=512)
    event_types: list[TriggerType] = Field(min_length=1)
    headers: dict[str, str] = Field(default_factory=dict)
    retry_count: int = Field(default=3, ge=0, le=10)
    timeout_seconds: int = Field(default=30, ge=5, le=120)
    enabled: bool = True

    @field_validator("url")
    @classmethod
    def validate_url(cls, value: str) -> str:
        return check_http_url(value)

    @field_validator("event_types")
    @classmethod
    def dedupe_event_types(cls, value: list[TriggerType]) -> list[TriggerType]:
        return list(dict.fromkeys(value))


class EndpointUpdate(BaseModel):
    """Partial update; a new secret replaces the stored one."""
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    url: Optional[str] = None
    secret: Optional[str] = Field(default=None, min_length=16, max_length=512)
    event_types: Optional[list[TriggerType]] = Field(default=None, min_length=1)
    headers: Optional[dict[str, str]] = None
    retry_count: Optional[int] = Field(default=None, ge=0, le=10)
    timeout_seconds: Optional[int] = Field(default=None, ge=5, le=120)
    enabled: Optional[bool] = None

    @field_validator("url")
    @classmethod
    def validate_url(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        return check_http_url(value)


class EndpointResponse(BaseModel):
    """Endpoint as returned to readers. Never carries the secret."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    url: str
    event_types: list[TriggerType]
    headers: dict[str, str]
    retry_count: int
    timeout_seconds: int
    enabled: bool
    created_at: datetime
    updated_at: datetime


class DeliveryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    endpoint_id: Optional[str]
    target_url: Optional[str]
    rule_id: Optional[str]
    event_id: str
    event_type: TriggerType
    status: DeliveryStatus
    response_status: Optional[int]
    response_body: Optional[str]
    error_message: Optional[str]
    attempt_number: int
    max_attempts: int
    next_retry_at: Optional[datetime]
    retry_of_id: Optional[str]
    created_at: datetime
    processed_at: Optional[datetime]
    delivered_at: Optional[datetime]


class DeliveryPage(BaseModel):
    items: list[DeliveryResponse]
    total: int
    limit: int
    offset: int


class TestEndpointRequest(BaseModel):
    event_type: Optional[TriggerType] = None


class TestEndpointResult(BaseModel):
    success: bool
    response_status: Optional[int] = None
    duration_ms: int
    error_message: Optional[str] = None
