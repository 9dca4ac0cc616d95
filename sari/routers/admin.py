"""Admin API: bot settings, status banner, connections and conversation reporting."""

import re
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from fastapi import APIRouter, Depends, Header, HTTPException
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from sari.config import settings
from sari.database import get_db
from sari.logging_config import get_logger
from sari.models import BotSettings, ConversationStatus, Merchant
from sari.schemas.admin import (
    BotSettingsResponse,
    BotSettingsUpdate,
    ConnectionLinkRequest,
    ConnectionResponse,
    ConversationResponse,
    MessageResponse,
    SendTestMessageResponse,
    ShouldRespondResponse,
)
from sari.services.connection_service import link_connection, normalize_phone, unlink_connection
from sari.services.conversation_service import (
    close_conversation,
    get_conversation,
    list_conversations,
    recent_messages,
)
from sari.services.delivery_service import send_test_message
from sari.services.eligibility import BotSettingsSnapshot, WelcomePolicy, should_respond

logger = get_logger("admin")

router = APIRouter(prefix="/admin", tags=["admin"])

CLOCK_PATTERN = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")
ALLOWED_TONES = {"friendly", "professional", "casual"}
ALLOWED_LANGUAGES = {"ar", "en", "both"}
ALLOWED_WELCOME_POLICIES = {policy.value for policy in WelcomePolicy}
TEST_MESSAGE_ERROR_STATUS = {
    "merchant_not_found": 404,
    "no_connection": 412,
    "no_phone": 412,
    "provider_error": 502,
}


def _require_admin_token(provided: Optional[str]) -> None:
    expected = settings.admin_token
    if not expected:
        raise HTTPException(status_code=500, detail="ADMIN_TOKEN not configured")
    if not provided or provided != expected:
        raise HTTPException(status_code=401, detail="Invalid admin token")


def _get_merchant(db: Session, merchant_id: UUID) -> Merchant:
    merchant = db.query(Merchant).filter(Merchant.id == merchant_id).first()
    if not merchant:
        raise HTTPException(status_code=404, detail=f"Merchant '{merchant_id}' not found")
    return merchant


def _settings_response(merchant_id: UUID, snapshot: BotSettingsSnapshot) -> BotSettingsResponse:
    return BotSettingsResponse(
        merchant_id=merchant_id,
        auto_reply_enabled=snapshot.auto_reply_enabled,
        working_hours_enabled=snapshot.working_hours_enabled,
        working_hours_start=snapshot.working_hours_start,
        working_hours_end=snapshot.working_hours_end,
        working_days=sorted(snapshot.working_days),
        welcome_message=snapshot.welcome_message,
        out_of_hours_message=snapshot.out_of_hours_message,
        tone=snapshot.tone,
        language=snapshot.language,
        response_delay_seconds=snapshot.response_delay_seconds,
        max_response_length=snapshot.max_response_length,
        timezone=snapshot.timezone,
        welcome_policy=snapshot.welcome_policy,
    )


def _validate_settings_update(data: BotSettingsUpdate) -> None:
    for field in ("working_hours_start", "working_hours_end"):
        value = getattr(data, field)
        if value is not None and not CLOCK_PATTERN.match(value):
            raise HTTPException(status_code=400, detail=f"{field} must be HH:MM")

    if data.working_days is not None:
        if any(day < 0 or day > 6 for day in data.working_days):
            raise HTTPException(status_code=400, detail="working_days must be weekday numbers 0-6 (0 = Sunday)")

    if data.tone is not None and data.tone not in ALLOWED_TONES:
        raise HTTPException(status_code=400, detail="tone must be friendly, professional, or casual")

    if data.language is not None and data.language not in ALLOWED_LANGUAGES:
        raise HTTPException(status_code=400, detail="language must be ar, en, or both")

    if data.response_delay_seconds is not None:
        if not 1 <= data.response_delay_seconds <= 10:
            raise HTTPException(status_code=400, detail="response_delay_seconds must be 1-10")

    if data.max_response_length is not None:
        if not 50 <= data.max_response_length <= 500:
            raise HTTPException(status_code=400, detail="max_response_length must be 50-500")

    if data.welcome_policy is not None and data.welcome_policy not in ALLOWED_WELCOME_POLICIES:
        raise HTTPException(
            status_code=400,
            detail="welcome_policy must be off, first_contact, or first_contact_override",
        )

    if data.timezone is not None:
        try:
            ZoneInfo(data.timezone)
        except (ZoneInfoNotFoundError, ValueError):
            raise HTTPException(status_code=400, detail=f"Unknown timezone '{data.timezone}'")


# === BOT SETTINGS ===


@router.get("/merchants/{merchant_id}/bot-settings", response_model=BotSettingsResponse)
async def get_bot_settings(
    merchant_id: UUID,
    db: Session = Depends(get_db),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    _require_admin_token(x_admin_token)
    _get_merchant(db, merchant_id)
    row = db.query(BotSettings).filter(BotSettings.merchant_id == merchant_id).first()
    return _settings_response(merchant_id, BotSettingsSnapshot.from_model(row))


@router.put("/merchants/{merchant_id}/bot-settings", response_model=BotSettingsResponse)
async def update_bot_settings(
    merchant_id: UUID,
    data: BotSettingsUpdate,
    db: Session = Depends(get_db),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    """Update bot settings.

    Validation:
    - working_hours_start / working_hours_end: HH:MM
    - working_days: 0-6, 0 = Sunday
    - tone: friendly/professional/casual
    - language: ar/en/both
    - response_delay_seconds: 1-10
    - max_response_length: 50-500
    - timezone: IANA name
    """
    _require_admin_token(x_admin_token)
    _get_merchant(db, merchant_id)
    _validate_settings_update(data)

    row = db.query(BotSettings).filter(BotSettings.merchant_id == merchant_id).first()
    if not row:
        row = BotSettings(merchant_id=merchant_id)
        db.add(row)

    updates = data.model_dump(exclude_unset=True)
    if "working_days" in updates:
        updates["working_days"] = ",".join(str(day) for day in updates["working_days"] or [])
    for field, value in updates.items():
        setattr(row, field, value)

    db.commit()
    db.refresh(row)
    logger.info(
        "Bot settings updated",
        extra={"context": {"merchant_id": str(merchant_id), "fields": sorted(updates)}},
    )
    return _settings_response(merchant_id, BotSettingsSnapshot.from_model(row))


@router.get("/merchants/{merchant_id}/should-respond", response_model=ShouldRespondResponse)
async def get_should_respond(
    merchant_id: UUID,
    db: Session = Depends(get_db),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    _require_admin_token(x_admin_token)
    _get_merchant(db, merchant_id)
    decision = should_respond(db, merchant_id, datetime.now(timezone.utc))
    return ShouldRespondResponse(
        should_respond=decision.sends_message,
        action=decision.action.value,
        reason=decision.reason,
        fallback_text=decision.fallback_text,
    )


@router.post("/merchants/{merchant_id}/test-message", response_model=SendTestMessageResponse)
async def send_test_message_endpoint(
    merchant_id: UUID,
    db: Session = Depends(get_db),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    """Send the welcome message to the merchant's own phone."""
    _require_admin_token(x_admin_token)
    result = send_test_message(db, merchant_id)
    if not result.ok:
        logger.warning(
            f"Test message not sent: {result.error}",
            extra={"context": {**result.context, "error_code": result.error_code}},
        )
        raise HTTPException(status_code=TEST_MESSAGE_ERROR_STATUS.get(result.error_code, 500), detail=result.error)
    return SendTestMessageResponse(success=True, message="Test message sent", provider_ref=result.value)


# === CONVERSATIONS ===


@router.get("/merchants/{merchant_id}/conversations", response_model=list[ConversationResponse])
async def get_conversations(
    merchant_id: UUID,
    status: Optional[ConversationStatus] = None,
    limit: int = 50,
    offset: int = 0,
    db: Session = Depends(get_db),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    _require_admin_token(x_admin_token)
    _get_merchant(db, merchant_id)
    limit = max(1, min(limit, 200))
    return list_conversations(db, merchant_id, status=status, limit=limit, offset=max(offset, 0))


@router.get("/conversations/{conversation_id}/messages", response_model=list[MessageResponse])
async def get_conversation_messages(
    conversation_id: UUID,
    limit: int = 50,
    db: Session = Depends(get_db),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    _require_admin_token(x_admin_token)
    if not get_conversation(db, conversation_id):
        raise HTTPException(status_code=404, detail=f"Conversation '{conversation_id}' not found")
    return recent_messages(db, conversation_id, limit=max(1, min(limit, 500)))


@router.post("/conversations/{conversation_id}/close", response_model=ConversationResponse)
async def close_conversation_endpoint(
    conversation_id: UUID,
    db: Session = Depends(get_db),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    _require_admin_token(x_admin_token)
    conversation = close_conversation(db, conversation_id)
    if not conversation:
        raise HTTPException(status_code=404, detail=f"Conversation '{conversation_id}' not found")
    return conversation


# === CONNECTIONS ===


@router.post("/merchants/{merchant_id}/connection", response_model=ConnectionResponse)
async def link_connection_endpoint(
    merchant_id: UUID,
    data: ConnectionLinkRequest,
    db: Session = Depends(get_db),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    """Link a WhatsApp number to the merchant, replacing any active connection."""
    _require_admin_token(x_admin_token)
    _get_merchant(db, merchant_id)
    if not normalize_phone(data.phone_number):
        raise HTTPException(status_code=400, detail="phone_number must contain digits")

    try:
        connection = link_connection(
            db,
            merchant_id,
            data.phone_number,
            data.instance_id,
            data.api_token,
            channel_mode=data.channel_mode,
        )
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.warning(
            "Phone number already linked to another merchant",
            extra={"context": {"merchant_id": str(merchant_id), "phone": normalize_phone(data.phone_number)}},
        )
        raise HTTPException(status_code=409, detail="Phone number is already linked to another merchant")
    db.refresh(connection)
    logger.info(
        "WhatsApp connection linked",
        extra={
            "context": {
                "merchant_id": str(merchant_id),
                "connection_id": str(connection.id),
                "channel_mode": connection.channel_mode,
            }
        },
    )
    return connection


@router.delete("/connections/{connection_id}")
async def unlink_connection_endpoint(
    connection_id: UUID,
    db: Session = Depends(get_db),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    _require_admin_token(x_admin_token)
    if not unlink_connection(db, connection_id):
        raise HTTPException(status_code=404, detail=f"Active connection '{connection_id}' not found")
    db.commit()
    logger.info("WhatsApp connection unlinked", extra={"context": {"connection_id": str(connection_id)}})
    return {"success": True}
