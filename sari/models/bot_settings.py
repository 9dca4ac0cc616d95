from sqlalchemy import Boolean, Column, ForeignKey, Integer, Text, Uuid
from sqlalchemy.orm import relationship

from sari.database import Base


class BotSettings(Base):
    __tablename__ = "bot_settings"

    merchant_id = Column(Uuid, ForeignKey("merchants.id"), primary_key=True)
    auto_reply_enabled = Column(Boolean, nullable=False, default=True)
    working_hours_enabled = Column(Boolean, nullable=False, default=False)
    working_hours_start = Column(Text, nullable=False, default="09:00")
    working_hours_end = Column(Text, nullable=False, default="18:00")
    working_days = Column(Text, nullable=False, default="0,1,2,3,4")  # 0 = Sunday
    welcome_message = Column(Text)
    out_of_hours_message = Column(Text)
    tone = Column(Text, nullable=False, default="friendly")  # friendly, professional, casual
    language = Column(Text, nullable=False, default="ar")  # ar, en, both
    response_delay_seconds = Column(Integer, nullable=False, default=2)
    max_response_length = Column(Integer, nullable=False, default=200)
    timezone = Column(Text, nullable=False, default="Asia/Riyadh")
    welcome_policy = Column(Text, nullable=False, default="off")  # off, first_contact, first_contact_override

    merchant = relationship("Merchant", back_populates="bot_settings")
