import uuid
from enum import Enum

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, Uuid, text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from sari.database import Base


class ConversationStatus(str, Enum):
    ACTIVE = "active"
    CLOSED = "closed"


class Conversation(Base):
    __tablename__ = "conversations"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    merchant_id = Column(Uuid, ForeignKey("merchants.id"), nullable=False)
    customer_phone = Column(Text, nullable=False)
    customer_name = Column(Text)
    status = Column(Text, nullable=False, default=ConversationStatus.ACTIVE.value)
    last_message_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    closed_at = Column(DateTime(timezone=True))

    messages = relationship("Message", back_populates="conversation")

    __table_args__ = (
        # At most one open conversation per customer of a merchant.
        Index(
            "uq_conversations_open_merchant_phone",
            "merchant_id",
            "customer_phone",
            unique=True,
            postgresql_where=text("status <> 'closed'"),
            sqlite_where=text("status <> 'closed'"),
        ),
        Index("idx_conversations_merchant_last_message", "merchant_id", "last_message_at"),
    )
