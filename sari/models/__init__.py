from sari.models.bot_settings import BotSettings
from sari.models.conversation import Conversation, ConversationStatus
from sari.models.merchant import Merchant
from sari.models.message import Message, MessageDirection
from sari.models.product import Product
from sari.models.whatsapp_connection import ChannelMode, WhatsAppConnection

__all__ = [
    "Merchant",
    "WhatsAppConnection",
    "ChannelMode",
    "BotSettings",
    "Conversation",
    "ConversationStatus",
    "Message",
    "MessageDirection",
    "Product",
]
