import uuid
from enum import Enum

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Text, Uuid, text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from sari.database import Base


class ChannelMode(str, Enum):
    WEBHOOK = "webhook"
    POLLING = "polling"


class WhatsAppConnection(Base):
    __tablename__ = "whatsapp_connections"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    merchant_id = Column(Uuid, ForeignKey("merchants.id"), nullable=False)
    phone_number = Column(Text, nullable=False)  # digits only
    channel_mode = Column(Text, nullable=False, default=ChannelMode.WEBHOOK.value)
    instance_id = Column(Text, nullable=False)  # Green API idInstance
    api_token = Column(Text, nullable=False)  # Green API apiTokenInstance
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    unlinked_at = Column(DateTime(timezone=True))

    merchant = relationship("Merchant", back_populates="connections")

    __table_args__ = (
        Index(
            "uq_whatsapp_connections_active_phone",
            "phone_number",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active"),
        ),
        Index("idx_whatsapp_connections_merchant_active", "merchant_id", "is_active"),
    )

    @property
    def is_polling(self) -> bool:
        return self.channel_mode == ChannelMode.POLLING.value
