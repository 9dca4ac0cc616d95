import uuid

from sqlalchemy import Column, ForeignKey, Integer, Numeric, Text, Uuid

from sari.database import Base


class Product(Base):
    __tablename__ = "products"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    merchant_id = Column(Uuid, ForeignKey("merchants.id"), nullable=False, index=True)
    name = Column(Text, nullable=False)
    description = Column(Text)
    price = Column(Numeric(10, 2), nullable=False)
    stock = Column(Integer)
    category = Column(Text)
