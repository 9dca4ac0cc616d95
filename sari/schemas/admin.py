from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, field_validator

from sari.models import ChannelMode


class BotSettingsUpdate(BaseModel):
    auto_reply_enabled: Optional[bool] = None
    working_hours_enabled: Optional[bool] = None
    working_hours_start: Optional[str] = None
    working_hours_end: Optional[str] = None
    working_days: Optional[list[int]] = None
    welcome_message: Optional[str] = None
    out_of_hours_message: Optional[str] = None
    tone: Optional[str] = None
    language: Optional[str] = None
    response_delay_seconds: Optional[int] = None
    max_response_length: Optional[int] = None
    timezone: Optional[str] = None
    welcome_policy: Optional[str] = None

    @field_validator("working_days", mode="before")
    @classmethod
    def normalize_working_days(cls, value: object) -> Optional[list[int]]:
        if value is None:
            return None
        if isinstance(value, str):
            items = [item.strip() for item in value.split(",") if item.strip()]
        elif isinstance(value, list):
            items = value
        else:
            raise ValueError("working_days must be a list or comma-separated string")

        days: list[int] = []
        for item in items:
            try:
                day = int(item)
            except (TypeError, ValueError):
                raise ValueError(f"Invalid weekday: {item!r}")
            if day not in days:
                days.append(day)
        return sorted(days)


class BotSettingsResponse(BaseModel):
    merchant_id: UUID
    auto_reply_enabled: bool
    working_hours_enabled: bool
    working_hours_start: str
    working_hours_end: str
    working_days: list[int]
    welcome_message: Optional[str] = None
    out_of_hours_message: Optional[str] = None
    tone: str
    language: str
    response_delay_seconds: int
    max_response_length: int
    timezone: str
    welcome_policy: str


class ShouldRespondResponse(BaseModel):
    should_respond: bool
    action: str
    reason: str
    fallback_text: Optional[str] = None


class SendTestMessageResponse(BaseModel):
    success: bool
    message: str
    provider_ref: Optional[str] = None


class ConversationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    merchant_id: UUID
    customer_phone: str
    customer_name: Optional[str] = None
    status: str
    last_message_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None


class MessageResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    direction: str
    content: str
    message_type: str
    provider_message_id: Optional[str] = None
    is_processed: bool
    created_at: datetime


class ConnectionLinkRequest(BaseModel):
    phone_number: str
    instance_id: str
    api_token: str
    channel_mode: ChannelMode = ChannelMode.WEBHOOK


class ConnectionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    merchant_id: UUID
    phone_number: str
    instance_id: str
    channel_mode: str
    is_active: bool
    created_at: Optional[datetime] = None
    unlinked_at: Optional[datetime] = None
