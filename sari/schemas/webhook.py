from typing import Optional
from uuid import UUID

from pydantic import BaseModel


class WebhookResponse(BaseModel):
    success: bool
    message: str
    status: Optional[str] = None
    conversation_id: Optional[UUID] = None
    message_id: Optional[UUID] = None
