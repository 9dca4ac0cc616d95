"""Green API client for a single WhatsApp instance.

API docs: https://green-api.com/docs/api/
"""

from typing import Any, Optional

import httpx

from sari.config import settings
from sari.errors import ProviderError
from sari.logging_config import get_logger

logger = get_logger("greenapi_service")

RETRYABLE_STATUS_CODES = {408, 429, 500, 502, 503, 504}


def format_chat_id(phone: str) -> str:
    """9665... -> 9665...@c.us"""
    if "@" in phone:
        return phone
    clean_phone = "".join(ch for ch in phone if ch.isdigit())
    return f"{clean_phone}@c.us"


class GreenAPIClient:
    def __init__(
        self,
        instance_id: str,
        api_token: str,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.instance_id = instance_id
        self.api_token = api_token
        self.base_url = (base_url or settings.green_api_url).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.green_api_timeout_seconds
        self.transport = transport

    @classmethod
    def for_connection(cls, connection, **kwargs) -> "GreenAPIClient":
        return cls(connection.instance_id, connection.api_token, **kwargs)

    def _build_url(self, method: str, *suffix: Any) -> str:
        url = f"{self.base_url}/waInstance{self.instance_id}/{method}/{self.api_token}"
        for part in suffix:
            url += f"/{part}"
        return url

    def _request(self, http_method: str, api_method: str, *suffix: Any, **kwargs) -> Any:
        url = self._build_url(api_method, *suffix)
        context = {"instance_id": self.instance_id, "method": api_method}
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.request(http_method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise ProviderError(f"Green API {api_method} timed out", retryable=True, context=context) from e
        except httpx.HTTPError as e:
            raise ProviderError(f"Green API {api_method} failed: {e}", retryable=True, context=context) from e

        if response.status_code != 200:
            logger.warning(
                f"Green API {api_method} returned {response.status_code}",
                extra={"context": {**context, "body": response.text[:200]}},
            )
            raise ProviderError(
                f"Green API {api_method} error: {response.status_code}",
                status_code=response.status_code,
                retryable=response.status_code in RETRYABLE_STATUS_CODES,
                context=context,
            )

        if not response.content or response.content.strip() == b"null":
            return None
        try:
            return response.json()
        except ValueError as e:
            raise ProviderError(f"Green API {api_method} returned invalid JSON", context=context) from e

    def receive_notification(self, receive_timeout: int = 5) -> Optional[dict]:
        """Next queued notification ({"receiptId": ..., "body": {...}}) or None."""
        data = self._request("GET", "receiveNotification", params={"receiveTimeout": receive_timeout})
        return data or None

    def delete_notification(self, receipt_id: int) -> bool:
        data = self._request("DELETE", "deleteNotification", receipt_id)
        return bool(data and data.get("result"))

    def send_message(self, phone: str, message: str) -> str:
        """Send a text message. Returns the provider's idMessage."""
        data = self._request("POST", "sendMessage", json={"chatId": format_chat_id(phone), "message": message})
        message_id = (data or {}).get("idMessage")
        if not message_id:
            raise ProviderError("Green API sendMessage returned no idMessage", context={"instance_id": self.instance_id})
        return message_id

    def send_typing(self, phone: str) -> None:
        self._request("POST", "sendChatStateTyping", json={"chatId": format_chat_id(phone)})
