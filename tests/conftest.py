import os

os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import sari.models  # noqa: F401  registers tables on Base.metadata
from sari.database import Base
from sari.models import BotSettings, ChannelMode, Merchant, Product
from sari.services.connection_service import link_connection

MERCHANT_PHONE = "966555000111"
STORE_NUMBER = "966500000001"
CUSTOMER_PHONE = "966511111111"


@pytest.fixture
def engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'sari.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def merchant(db):
    merchant = Merchant(name="متجر النور", phone=MERCHANT_PHONE, auto_reply_enabled=True)
    db.add(merchant)
    db.commit()
    return merchant


@pytest.fixture
def connection(db, merchant):
    connection = link_connection(db, merchant.id, STORE_NUMBER, "1101000001", "token-abc")
    db.commit()
    return connection


@pytest.fixture
def polling_connection(db, merchant):
    connection = link_connection(
        db, merchant.id, STORE_NUMBER, "1101000001", "token-abc", channel_mode=ChannelMode.POLLING
    )
    db.commit()
    return connection


@pytest.fixture
def make_bot_settings(db):
    def _make(merchant_id, **overrides):
        row = BotSettings(merchant_id=merchant_id, **overrides)
        db.add(row)
        db.commit()
        return row

    return _make


@pytest.fixture
def make_product(db):
    def _make(merchant_id, name, price="100.00", description=None, category=None, stock=None):
        product = Product(
            merchant_id=merchant_id,
            name=name,
            price=Decimal(price),
            description=description,
            category=category,
            stock=stock,
        )
        db.add(product)
        db.commit()
        return product

    return _make


@pytest.fixture
def make_payload():
    """Build a Green API incomingMessageReceived notification body."""

    def _make(
        id_message="BAE5F4886F8A1E44",
        text="السلام عليكم",
        sender=CUSTOMER_PHONE,
        wid=STORE_NUMBER,
        type_message="textMessage",
        sender_name="عبدالله",
    ):
        message_data = {"typeMessage": type_message}
        if type_message == "textMessage":
            message_data["textMessageData"] = {"textMessage": text}
        elif type_message == "extendedTextMessage":
            message_data["extendedTextMessageData"] = {"text": text}
        else:
            message_data["fileMessageData"] = {"downloadUrl": "https://example.com/file.jpg"}
        return {
            "typeWebhook": "incomingMessageReceived",
            "instanceData": {"idInstance": 1101000001, "wid": f"{wid}@c.us", "typeInstance": "whatsapp"},
            "timestamp": 1704441600,
            "idMessage": id_message,
            "senderData": {
                "chatId": f"{sender}@c.us",
                "sender": f"{sender}@c.us",
                "senderName": sender_name,
            },
            "messageData": message_data,
        }

    return _make
