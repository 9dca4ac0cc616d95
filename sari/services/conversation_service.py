"""Conversation store.

Owns the Conversation and Message lifecycle. Every write commits its own unit
of work so that uniqueness conflicts between concurrent ingress paths can be
resolved by re-reading instead of failing the request.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from sari.errors import DuplicateMessage, PersistenceFailure
from sari.logging_config import get_logger
from sari.models import Conversation, ConversationStatus, Message, MessageDirection

logger = get_logger("conversation_service")


def _next_message_time(conversation: Conversation) -> datetime:
    """Now, nudged past last_message_at so created_at never goes backwards."""
    now = datetime.now(timezone.utc)
    last = conversation.last_message_at
    if last is not None:
        if last.tzinfo is None:
            last = last.replace(tzinfo=timezone.utc)
        if now <= last:
            now = last + timedelta(microseconds=1)
    return now


def _lock_for_append(db: Session, conversation: Conversation) -> None:
    """Take the conversation's write lock and reload last_message_at.

    The no-op UPDATE holds the row lock on Postgres and the database write lock
    on SQLite until commit, so appends to one conversation are serialized and
    each one sees the previous append's timestamp.
    """
    db.execute(
        update(Conversation)
        .where(Conversation.id == conversation.id)
        .values(last_message_at=Conversation.last_message_at)
        .execution_options(synchronize_session=False)
    )
    db.refresh(conversation, attribute_names=["last_message_at"])


def get_open_conversation(db: Session, merchant_id: UUID, customer_phone: str) -> Optional[Conversation]:
    return (
        db.query(Conversation)
        .filter(
            Conversation.merchant_id == merchant_id,
            Conversation.customer_phone == customer_phone,
            Conversation.status != ConversationStatus.CLOSED.value,
        )
        .first()
    )


def get_conversation(db: Session, conversation_id: UUID) -> Optional[Conversation]:
    return db.query(Conversation).filter(Conversation.id == conversation_id).first()


def get_or_create_conversation(
    db: Session,
    merchant_id: UUID,
    customer_phone: str,
    customer_name: Optional[str] = None,
) -> tuple[Conversation, bool]:
    """Find the open conversation for a customer or create one.

    Returns (conversation, created). When two writers race on the first
    message of a customer, the loser hits the partial unique index, rolls
    back and returns the winner's row.
    """
    try:
        conversation = get_open_conversation(db, merchant_id, customer_phone)
    except SQLAlchemyError as exc:
        db.rollback()
        raise PersistenceFailure(f"Conversation lookup failed: {exc}") from exc
    if conversation:
        return conversation, False

    now = datetime.now(timezone.utc)
    conversation = Conversation(
        merchant_id=merchant_id,
        customer_phone=customer_phone,
        customer_name=customer_name,
        status=ConversationStatus.ACTIVE.value,
        created_at=now,
        last_message_at=now,
    )
    db.add(conversation)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        existing = get_open_conversation(db, merchant_id, customer_phone)
        if existing is None:
            raise PersistenceFailure("Conversation insert conflicted but no open row was found")
        logger.info(
            "Conversation created concurrently, reusing existing row",
            extra={"context": {"merchant_id": str(merchant_id), "conversation_id": str(existing.id)}},
        )
        return existing, False
    except SQLAlchemyError as exc:
        db.rollback()
        raise PersistenceFailure(f"Conversation insert failed: {exc}") from exc

    return conversation, True


def append_message(
    db: Session,
    conversation: Conversation,
    direction: MessageDirection,
    content: str,
    *,
    connection_id: Optional[UUID] = None,
    provider_message_id: Optional[str] = None,
    message_type: str = "text",
    is_processed: bool = False,
) -> Message:
    """Append a message and bump the conversation's last_message_at.

    Raises DuplicateMessage when (connection_id, provider_message_id) is
    already stored, PersistenceFailure on any other database error.
    """
    try:
        _lock_for_append(db, conversation)
        now = _next_message_time(conversation)
        message = Message(
            conversation_id=conversation.id,
            connection_id=connection_id,
            direction=direction.value,
            content=content,
            message_type=message_type,
            provider_message_id=provider_message_id,
            is_processed=is_processed,
            created_at=now,
        )
        db.add(message)
        conversation.last_message_at = now
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        if provider_message_id:
            raise DuplicateMessage(connection_id, provider_message_id) from exc
        raise PersistenceFailure(f"Message insert failed: {exc}") from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise PersistenceFailure(f"Message insert failed: {exc}") from exc
    return message


def find_message_by_provider_id(
    db: Session,
    connection_id: UUID,
    provider_message_id: str,
) -> Optional[Message]:
    return (
        db.query(Message)
        .filter(Message.connection_id == connection_id, Message.provider_message_id == provider_message_id)
        .first()
    )


def recent_messages(db: Session, conversation_id: UUID, limit: int = 10) -> list[Message]:
    """Last `limit` messages of a conversation in chronological order."""
    rows = (
        db.query(Message)
        .filter(Message.conversation_id == conversation_id)
        .order_by(Message.created_at.desc())
        .limit(limit)
        .all()
    )
    return list(reversed(rows))


def count_incoming_messages(db: Session, conversation_id: UUID) -> int:
    return (
        db.query(Message)
        .filter(Message.conversation_id == conversation_id, Message.direction == MessageDirection.INCOMING.value)
        .count()
    )


def claim_message_for_reply(db: Session, message_id: UUID) -> bool:
    """Flip is_processed for an inbound message. Only the first caller wins."""
    updated = (
        db.query(Message)
        .filter(Message.id == message_id, Message.is_processed == False)  # noqa: E712
        .update({Message.is_processed: True}, synchronize_session=False)
    )
    db.commit()
    return updated == 1


def close_conversation(db: Session, conversation_id: UUID) -> Optional[Conversation]:
    conversation = get_conversation(db, conversation_id)
    if not conversation:
        return None
    if conversation.status != ConversationStatus.CLOSED.value:
        conversation.status = ConversationStatus.CLOSED.value
        conversation.closed_at = datetime.now(timezone.utc)
        db.commit()
    return conversation


def list_conversations(
    db: Session,
    merchant_id: UUID,
    status: Optional[ConversationStatus] = None,
    limit: int = 50,
    offset: int = 0,
) -> list[Conversation]:
    query = db.query(Conversation).filter(Conversation.merchant_id == merchant_id)
    if status:
        query = query.filter(Conversation.status == status.value)
    return query.order_by(Conversation.last_message_at.desc()).offset(offset).limit(limit).all()
