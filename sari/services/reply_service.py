"""Auto-reply pipeline for one persisted inbound message."""

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from sari.database import SessionLocal
from sari.logging_config import get_logger
from sari.models import Conversation, Message, WhatsAppConnection
from sari.services import ai_service
from sari.services.alert_service import alert_error
from sari.services.connection_service import get_active_connection
from sari.services.conversation_service import claim_message_for_reply
from sari.services.delivery_service import deliver
from sari.services.eligibility import DecisionAction, apply_welcome_policy, decide, load_settings_snapshot
from sari.services.greenapi_service import GreenAPIClient
from sari.services.llm import LLMProvider

logger = get_logger("reply_service")


@dataclass
class ReplyOutcome:
    action: Optional[DecisionAction]
    reason: str
    sent: bool = False
    text: Optional[str] = None


def _resolve_connection(db: Session, message: Message, conversation: Conversation) -> Optional[WhatsAppConnection]:
    connection = None
    if message.connection_id:
        connection = db.query(WhatsAppConnection).filter(WhatsAppConnection.id == message.connection_id).first()
    if connection is None or not connection.is_active:
        connection = get_active_connection(db, conversation.merchant_id)
    return connection


def process_inbound_message(
    db: Session,
    message_id: UUID,
    is_first_contact: bool = False,
    now: Optional[datetime] = None,
    sleep_func: Callable[[float], None] = time.sleep,
    provider: Optional[LLMProvider] = None,
    client: Optional[GreenAPIClient] = None,
) -> ReplyOutcome:
    """Decide and send the reply for an inbound message.

    The message is claimed first, so concurrent or repeated calls produce at
    most one reply. Never raises.
    """
    log_context = {"message_id": str(message_id)}
    try:
        message = db.query(Message).filter(Message.id == message_id).first()
        if not message:
            logger.warning("Inbound message not found", extra={"context": log_context})
            return ReplyOutcome(action=None, reason="message_not_found")

        if not claim_message_for_reply(db, message_id):
            logger.info("Inbound message already handled", extra={"context": log_context})
            return ReplyOutcome(action=None, reason="already_processed")

        conversation = db.query(Conversation).filter(Conversation.id == message.conversation_id).first()
        log_context.update({"conversation_id": str(conversation.id), "merchant_id": str(conversation.merchant_id)})

        snapshot = load_settings_snapshot(db, conversation.merchant_id)
        decision = decide(snapshot, now or datetime.now(timezone.utc))
        decision = apply_welcome_policy(decision, snapshot, is_first_contact)
        log_context.update({"action": decision.action.value, "reason": decision.reason})
        logger.info("Eligibility decided", extra={"context": log_context})

        if decision.action == DecisionAction.SILENT:
            return ReplyOutcome(action=decision.action, reason=decision.reason)

        connection = _resolve_connection(db, message, conversation)
        if connection is None:
            logger.warning("No active connection to reply through", extra={"context": log_context})
            return ReplyOutcome(action=decision.action, reason="no_connection")

        delay_seconds = 0
        if decision.action == DecisionAction.RESPOND:
            delay_seconds = snapshot.response_delay_seconds
            text = ai_service.generate(
                db,
                conversation.merchant_id,
                conversation.id,
                message.content,
                settings=snapshot,
                provider=provider,
            )
        else:
            text = decision.fallback_text

        result = deliver(
            db,
            connection,
            conversation,
            conversation.customer_phone,
            text,
            client=client,
            sleep_func=sleep_func,
            delay_seconds=delay_seconds,
        )
        return ReplyOutcome(action=decision.action, reason=decision.reason, sent=result.success, text=text)
    except Exception as e:
        db.rollback()
        logger.error(f"Reply pipeline failed: {e}", extra={"context": log_context}, exc_info=True)
        alert_error("Auto-reply pipeline failed", {**log_context, "error": str(e)})
        return ReplyOutcome(action=None, reason="error")


def run_reply_pipeline(message_id: UUID, is_first_contact: bool = False) -> ReplyOutcome:
    """Entry point for background tasks: runs the pipeline on its own session."""
    db = SessionLocal()
    try:
        return process_inbound_message(db, message_id, is_first_contact=is_first_contact)
    finally:
        db.close()
