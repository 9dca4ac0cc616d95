import uuid

from sqlalchemy import Boolean, Column, DateTime, Text, Uuid
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from sari.database import Base


class Merchant(Base):
    __tablename__ = "merchants"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(Text, nullable=False)
    phone = Column(Text)  # merchant's own number, used for test messages
    auto_reply_enabled = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    bot_settings = relationship("BotSettings", back_populates="merchant", uselist=False)
    connections = relationship("WhatsAppConnection", back_populates="merchant")
