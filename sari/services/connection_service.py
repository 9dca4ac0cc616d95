import re
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy.orm import Session

from sari.logging_config import get_logger
from sari.models import ChannelMode, WhatsAppConnection

logger = get_logger("connection_service")

_NON_DIGITS = re.compile(r"\D+")


def normalize_phone(value: Optional[str]) -> str:
    """Reduce a phone number or Green API chat id (9665...@c.us) to digits."""
    if not value:
        return ""
    local_part = str(value).split("@", 1)[0]
    return _NON_DIGITS.sub("", local_part)


def get_connection_by_phone(db: Session, phone: str) -> Optional[WhatsAppConnection]:
    """Find the active connection that owns a WhatsApp number."""
    digits = normalize_phone(phone)
    if not digits:
        return None
    return (
        db.query(WhatsAppConnection)
        .filter(WhatsAppConnection.phone_number == digits, WhatsAppConnection.is_active == True)  # noqa: E712
        .first()
    )


def get_active_connection(db: Session, merchant_id: UUID) -> Optional[WhatsAppConnection]:
    return (
        db.query(WhatsAppConnection)
        .filter(WhatsAppConnection.merchant_id == merchant_id, WhatsAppConnection.is_active == True)  # noqa: E712
        .first()
    )


def list_polling_connections(db: Session) -> list[WhatsAppConnection]:
    """Active connections that cannot receive webhooks and must be polled."""
    return (
        db.query(WhatsAppConnection)
        .filter(
            WhatsAppConnection.is_active == True,  # noqa: E712
            WhatsAppConnection.channel_mode == ChannelMode.POLLING.value,
        )
        .all()
    )


def link_connection(
    db: Session,
    merchant_id: UUID,
    phone_number: str,
    instance_id: str,
    api_token: str,
    channel_mode: ChannelMode = ChannelMode.WEBHOOK,
) -> WhatsAppConnection:
    """Link a number to a merchant. Any previously active connection is invalidated."""
    now = datetime.now(timezone.utc)
    previous = get_active_connection(db, merchant_id)
    if previous:
        previous.is_active = False
        previous.unlinked_at = now
        db.flush()
        logger.info(
            "Previous connection invalidated",
            extra={"context": {"merchant_id": str(merchant_id), "connection_id": str(previous.id)}},
        )

    connection = WhatsAppConnection(
        merchant_id=merchant_id,
        phone_number=normalize_phone(phone_number),
        instance_id=instance_id,
        api_token=api_token,
        channel_mode=channel_mode.value,
        is_active=True,
        created_at=now,
    )
    db.add(connection)
    db.flush()
    return connection


def unlink_connection(db: Session, connection_id: UUID) -> bool:
    connection = db.query(WhatsAppConnection).filter(WhatsAppConnection.id == connection_id).first()
    if not connection or not connection.is_active:
        return False
    connection.is_active = False
    connection.unlinked_at = datetime.now(timezone.utc)
    db.flush()
    return True
