"""Error taxonomy for the ingestion and auto-reply pipeline."""

from typing import Any, Optional


class SariError(Exception):
    """Base class for pipeline errors."""

    code = "sari_error"

    def __init__(self, message: str, context: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.context = context or {}


class MalformedPayload(SariError):
    """Provider payload cannot be normalized into an inbound message."""

    code = "malformed_payload"


class UnknownConnection(SariError):
    """Inbound message addressed to a number no merchant has linked."""

    code = "unknown_connection"

    def __init__(self, phone: str):
        super().__init__(f"No active WhatsApp connection for {phone}", {"phone": phone})
        self.phone = phone


class DuplicateMessage(SariError):
    """Dedup key already persisted. Callers treat this as success."""

    code = "duplicate_message"

    def __init__(self, connection_id, provider_message_id: str):
        super().__init__(
            f"Message {provider_message_id} already stored",
            {"connection_id": str(connection_id), "provider_message_id": provider_message_id},
        )
        self.connection_id = connection_id
        self.provider_message_id = provider_message_id


class PersistenceFailure(SariError):
    """Database unavailable or write failed for a transient reason."""

    code = "persistence_failure"


class GenerationFailure(SariError):
    """Language model errored, timed out or returned nothing."""

    code = "generation_failure"


class DeliveryFailure(SariError):
    """Provider rejected the outbound send."""

    code = "delivery_failure"


class ProviderError(SariError):
    """Error returned by the WhatsApp provider API."""

    code = "provider_error"

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        retryable: bool = False,
        context: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message, context)
        self.status_code = status_code
        self.retryable = retryable


class LLMProviderError(SariError):
    """Error returned by the language-model API."""

    code = "llm_error"

    def __init__(self, message: str, status_code: Optional[int] = None, timeout: bool = False):
        super().__init__(message, {"status_code": status_code, "timeout": timeout})
        self.status_code = status_code
        self.timeout = timeout
