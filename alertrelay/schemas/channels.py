"""
Notification channel request/response models.
"""
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, model_validator

from alertrelay.models.enums import ChannelType
from alertrelay.schemas.rules import check_http_url


class ChannelCreate(BaseModel):
    """
    Request model for creating a channel.

    slack and webhook channels need config.webhook_url; pagerduty needs
    config.routing_key.
    """
    name: str = Field(min_length=1, max_length=255)
    type: ChannelType
    config: dict[str, str] = Field(default_factory=dict)
    enabled: bool = True

    @model_validator(mode="after")
    def check_config(self):
        if self.type == ChannelType.PAGERDUTY:
            if not self.config.get("routing_key"):
                raise ValueError("pagerduty channels require config.routing_key")
        else:
            url = self.config.get("webhook_url")
            if not url:
                raise ValueError(f"{self.type.value} channels require config.webhook_url")
            check_http_url(url)
        return self


class ChannelResponse(BaseModel):
    """Channel as returned to readers; config values are not echoed."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    type: ChannelType
    enabled: bool
    created_at: datetime
