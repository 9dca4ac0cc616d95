import uuid
from enum import Enum

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import relationship

from sari.database import Base


class MessageDirection(str, Enum):
    INCOMING = "incoming"
    OUTGOING = "outgoing"


class Message(Base):
    __tablename__ = "messages"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    conversation_id = Column(Uuid, ForeignKey("conversations.id"), nullable=False)
    connection_id = Column(Uuid, ForeignKey("whatsapp_connections.id"))
    direction = Column(Text, nullable=False)
    content = Column(Text, nullable=False)
    message_type = Column(Text, nullable=False, default="text")
    provider_message_id = Column(Text)  # Green API idMessage, dedup key with connection_id
    is_processed = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False)

    conversation = relationship("Conversation", back_populates="messages")

    __table_args__ = (
        UniqueConstraint("connection_id", "provider_message_id", name="uq_messages_connection_provider_id"),
        Index("idx_messages_conversation_created", "conversation_id", "created_at"),
    )

    @property
    def message_direction(self) -> MessageDirection:
        return MessageDirection(self.direction)
