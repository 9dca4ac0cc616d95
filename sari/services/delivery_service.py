import time
from dataclasses import dataclass
from typing import Callable, Optional

from sari.config import settings
from sari.errors import DeliveryFailure, DuplicateMessage, PersistenceFailure, ProviderError
from sari.logging_config import get_logger
from sari.models import BotSettings, Conversation, Merchant, MessageDirection, WhatsAppConnection
from sari.services.alert_service import alert_warning
from sari.services.connection_service import get_active_connection
from sari.services.conversation_service import append_message
from sari.services.greenapi_service import GreenAPIClient
from sari.services.result import Result

logger = get_logger("delivery_service")

DEFAULT_TEST_MESSAGE = "مرحباً! هذه رسالة تجريبية من ساري."


@dataclass
class DeliveryResult:
    success: bool
    provider_ref: Optional[str] = None
    error: Optional[str] = None


def _send_typing(client: GreenAPIClient, customer_phone: str, log_context: dict) -> None:
    try:
        client.send_typing(customer_phone)
    except ProviderError as e:
        logger.debug(f"Typing indicator failed: {e}", extra={"context": log_context})


def _send_with_retry(
    client: GreenAPIClient,
    customer_phone: str,
    text: str,
    sleep_func: Callable[[float], None],
    log_context: dict,
) -> str:
    """Send with up to DELIVERY_MAX_ATTEMPTS tries. Raises DeliveryFailure."""
    max_attempts = max(1, settings.delivery_max_attempts)
    for attempt in range(1, max_attempts + 1):
        try:
            return client.send_message(customer_phone, text)
        except ProviderError as e:
            logger.warning(
                f"Delivery attempt {attempt}/{max_attempts} failed: {e}",
                extra={"context": {**log_context, "status_code": e.status_code, "retryable": e.retryable}},
            )
            if not e.retryable or attempt == max_attempts:
                raise DeliveryFailure(
                    str(e),
                    {**log_context, "status_code": e.status_code, "attempts": attempt},
                ) from e
            sleep_func(settings.delivery_retry_backoff_seconds * (2 ** (attempt - 1)))
    raise DeliveryFailure("No delivery attempt made", log_context)


def deliver(
    db,
    connection: WhatsAppConnection,
    conversation: Conversation,
    customer_phone: str,
    text: str,
    client: Optional[GreenAPIClient] = None,
    sleep_func: Callable[[float], None] = time.sleep,
    delay_seconds: float = 0,
) -> DeliveryResult:
    """Send a reply to the customer and record it as an outgoing message.

    delay_seconds holds the finished reply back before the first send
    attempt, after the typing indicator. Nothing is persisted when the
    provider rejects the send. Only retryable provider errors are retried,
    up to DELIVERY_MAX_ATTEMPTS in total.
    """
    log_context = {
        "merchant_id": str(conversation.merchant_id),
        "conversation_id": str(conversation.id),
        "connection_id": str(connection.id),
    }
    if not text or not text.strip():
        logger.warning("Refusing to deliver empty reply", extra={"context": log_context})
        return DeliveryResult(success=False, error="empty_message")

    client = client or GreenAPIClient.for_connection(connection)
    if settings.typing_indicator_enabled:
        _send_typing(client, customer_phone, log_context)
    if delay_seconds > 0:
        sleep_func(delay_seconds)

    try:
        provider_ref = _send_with_retry(client, customer_phone, text, sleep_func, log_context)
    except DeliveryFailure as e:
        logger.error(f"Delivery failed: {e}", extra={"context": e.context})
        alert_warning("WhatsApp delivery failed", {**log_context, "error": str(e)})
        return DeliveryResult(success=False, error=str(e))

    try:
        append_message(
            db,
            conversation,
            MessageDirection.OUTGOING,
            text,
            connection_id=connection.id,
            provider_message_id=provider_ref,
            is_processed=True,
        )
    except (DuplicateMessage, PersistenceFailure) as e:
        # Customer already has the message; only our record of it is missing.
        logger.error(f"Outgoing message sent but not recorded: {e}", extra={"context": log_context})
        return DeliveryResult(success=True, provider_ref=provider_ref, error=e.code)

    logger.info("Reply delivered", extra={"context": {**log_context, "provider_ref": provider_ref}})
    return DeliveryResult(success=True, provider_ref=provider_ref)


def send_test_message(db, merchant_id, client: Optional[GreenAPIClient] = None) -> Result[str]:
    """Send the merchant's welcome message to the merchant's own phone.

    Returns Result with the provider message id. Error codes:
    merchant_not_found, no_connection, no_phone, provider_error.
    """
    log_context = {"merchant_id": str(merchant_id)}
    merchant = db.query(Merchant).filter(Merchant.id == merchant_id).first()
    if not merchant:
        return Result.failure("Merchant not found", "merchant_not_found", log_context)

    connection = get_active_connection(db, merchant_id)
    if not connection:
        return Result.failure("WhatsApp connection required", "no_connection", log_context)
    if not merchant.phone:
        return Result.failure("Merchant phone number required", "no_phone", log_context)

    row = db.query(BotSettings).filter(BotSettings.merchant_id == merchant_id).first()
    text = (row.welcome_message if row else None) or DEFAULT_TEST_MESSAGE

    client = client or GreenAPIClient.for_connection(connection)
    try:
        provider_ref = client.send_message(merchant.phone, text)
    except ProviderError as e:
        logger.error(f"Test message failed: {e}", extra={"context": {**log_context, **e.context}})
        return Result.from_error(e)

    logger.info("Test message sent", extra={"context": {**log_context, "provider_ref": provider_ref}})
    return Result.success(provider_ref)
