"""Inbound message ingestion shared by the webhook and polling channels."""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from sari.errors import DuplicateMessage, MalformedPayload, PersistenceFailure, UnknownConnection
from sari.logging_config import get_logger
from sari.models import MessageDirection
from sari.services.connection_service import get_connection_by_phone, normalize_phone
from sari.services.conversation_service import (
    append_message,
    count_incoming_messages,
    find_message_by_provider_id,
    get_or_create_conversation,
)

logger = get_logger("ingest_service")

INCOMING_MESSAGE_EVENT = "incomingMessageReceived"
TEXT_MESSAGE_TYPES = {"textMessage": "text", "extendedTextMessage": "text"}


class IngestChannel(str, Enum):
    WEBHOOK = "webhook"
    POLLING = "polling"


class IngestStatus(str, Enum):
    ACCEPTED = "accepted"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"


@dataclass(frozen=True)
class InboundMessage:
    provider_message_id: str
    from_phone: str
    to_phone: str
    text: Optional[str]
    message_type: str
    timestamp: datetime
    sender_name: Optional[str] = None
    is_group: bool = False


@dataclass
class IngestResult:
    status: IngestStatus
    conversation_id: Optional[UUID] = None
    message_id: Optional[UUID] = None
    merchant_id: Optional[UUID] = None
    connection_id: Optional[UUID] = None
    is_first_contact: bool = False
    reason: Optional[str] = None

    @property
    def accepted(self) -> bool:
        return self.status == IngestStatus.ACCEPTED


def _parse_timestamp(value: Any) -> datetime:
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return datetime.now(timezone.utc)


def _section(data: dict, key: str) -> dict:
    """Nested object of the payload; absent is empty, any other shape is malformed."""
    value = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise MalformedPayload(f"{key} must be an object", {"field": key, "type": type(value).__name__})
    return value


def _extract_text(message_data: dict) -> tuple[str, Optional[str]]:
    type_message = message_data.get("typeMessage") or "unknown"
    if not isinstance(type_message, str):
        raise MalformedPayload("typeMessage must be a string", {"type": type(type_message).__name__})
    if type_message == "textMessage":
        text = _section(message_data, "textMessageData").get("textMessage")
    elif type_message == "extendedTextMessage":
        text = _section(message_data, "extendedTextMessageData").get("text")
    else:
        return type_message.replace("Message", "") or type_message, None
    if text is not None and not isinstance(text, str):
        raise MalformedPayload("Message text must be a string", {"typeMessage": type_message})
    return "text", text


def normalize_greenapi_payload(raw: Any) -> Optional[InboundMessage]:
    """Map a Green API notification body to an InboundMessage.

    Returns None for events that are not incoming customer messages.
    Raises MalformedPayload when an incoming message lacks its sender,
    receiving number or message id.
    """
    if not isinstance(raw, dict):
        raise MalformedPayload("Notification body must be a JSON object")

    if raw.get("typeWebhook") != INCOMING_MESSAGE_EVENT:
        return None

    instance_data = _section(raw, "instanceData")
    sender_data = _section(raw, "senderData")
    message_data = _section(raw, "messageData")

    chat_id = sender_data.get("chatId") or sender_data.get("sender") or ""
    from_phone = normalize_phone(sender_data.get("sender") or chat_id)
    to_phone = normalize_phone(instance_data.get("wid"))
    provider_message_id = raw.get("idMessage")

    missing = [
        name
        for name, value in (("sender", from_phone), ("receiving number", to_phone), ("idMessage", provider_message_id))
        if not value
    ]
    if missing:
        raise MalformedPayload(
            f"Incoming message missing {', '.join(missing)}",
            {"typeWebhook": raw.get("typeWebhook"), "idMessage": provider_message_id},
        )

    message_type, text = _extract_text(message_data)
    return InboundMessage(
        provider_message_id=str(provider_message_id),
        from_phone=from_phone,
        to_phone=to_phone,
        text=text,
        message_type=message_type,
        timestamp=_parse_timestamp(raw.get("timestamp")),
        sender_name=sender_data.get("senderName") or sender_data.get("chatName") or None,
        is_group=str(chat_id).endswith("@g.us"),
    )


def ingest(db: Session, raw: Any, channel: IngestChannel) -> IngestResult:
    """Persist an inbound provider payload exactly once.

    Raises MalformedPayload, UnknownConnection or PersistenceFailure.
    Re-deliveries of a stored message return a duplicate result.
    """
    inbound = normalize_greenapi_payload(raw)
    if inbound is None:
        return IngestResult(status=IngestStatus.IGNORED, reason="not_incoming_message")

    log_context = {
        "channel": channel.value,
        "provider_message_id": inbound.provider_message_id,
        "to_phone": inbound.to_phone,
    }
    if inbound.is_group:
        logger.info("Skipping group chat message", extra={"context": log_context})
        return IngestResult(status=IngestStatus.IGNORED, reason="group_chat")
    if inbound.message_type != "text" or not (inbound.text or "").strip():
        logger.info(
            "Skipping non-text message",
            extra={"context": {**log_context, "message_type": inbound.message_type}},
        )
        return IngestResult(status=IngestStatus.IGNORED, reason="non_text")

    try:
        connection = get_connection_by_phone(db, inbound.to_phone)
        if not connection:
            logger.warning("No WhatsApp connection for receiving number", extra={"context": log_context})
            raise UnknownConnection(inbound.to_phone)

        log_context.update({"merchant_id": str(connection.merchant_id), "connection_id": str(connection.id)})
        existing = find_message_by_provider_id(db, connection.id, inbound.provider_message_id)
        if existing:
            logger.info("Duplicate message ignored", extra={"context": log_context})
            return IngestResult(
                status=IngestStatus.DUPLICATE,
                conversation_id=existing.conversation_id,
                message_id=existing.id,
                merchant_id=connection.merchant_id,
                connection_id=connection.id,
                reason="already_stored",
            )

        conversation, created = get_or_create_conversation(
            db,
            connection.merchant_id,
            inbound.from_phone,
            customer_name=inbound.sender_name or inbound.from_phone,
        )
        try:
            message = append_message(
                db,
                conversation,
                MessageDirection.INCOMING,
                inbound.text,
                connection_id=connection.id,
                provider_message_id=inbound.provider_message_id,
            )
        except DuplicateMessage:
            logger.info("Duplicate message lost insert race", extra={"context": log_context})
            winner = find_message_by_provider_id(db, connection.id, inbound.provider_message_id)
            return IngestResult(
                status=IngestStatus.DUPLICATE,
                conversation_id=winner.conversation_id if winner else conversation.id,
                message_id=winner.id if winner else None,
                merchant_id=connection.merchant_id,
                connection_id=connection.id,
                reason="concurrent_insert",
            )

        is_first_contact = count_incoming_messages(db, conversation.id) == 1
    except SQLAlchemyError as e:
        db.rollback()
        raise PersistenceFailure(f"Ingest failed: {e}", log_context) from e

    logger.info(
        "Inbound message stored",
        extra={
            "context": {
                **log_context,
                "conversation_id": str(conversation.id),
                "message_id": str(message.id),
                "new_conversation": created,
                "first_contact": is_first_contact,
            }
        },
    )
    return IngestResult(
        status=IngestStatus.ACCEPTED,
        conversation_id=conversation.id,
        message_id=message.id,
        merchant_id=connection.merchant_id,
        connection_id=connection.id,
        is_first_contact=is_first_contact,
    )
