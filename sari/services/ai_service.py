"""Response generator: grounded LLM replies for customer messages."""

import time
from functools import lru_cache
from pathlib import Path
from typing import List, Optional
from uuid import UUID

import yaml
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from sari.config import settings as app_settings
from sari.errors import GenerationFailure, LLMProviderError
from sari.logging_config import get_logger
from sari.models import MessageDirection, Product
from sari.services.alert_service import alert_warning
from sari.services.conversation_service import recent_messages
from sari.services.eligibility import BotSettingsSnapshot, load_settings_snapshot
from sari.services.llm import ChatMessage, LLMProvider, LLMResponse, OpenAIProvider
from sari.services.product_service import format_price, search_products

logger = get_logger("ai_service")

PERSONAS_PATH = Path(__file__).resolve().parent.parent / "prompts" / "personas.yaml"

# Global LLM provider instance
_llm_provider: Optional[LLMProvider] = None


@lru_cache(maxsize=1)
def load_personas() -> dict:
    with PERSONAS_PATH.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh)


def get_llm_provider() -> LLMProvider:
    """Get or create LLM provider instance."""
    global _llm_provider
    if _llm_provider is None:
        if not app_settings.openai_api_key:
            raise GenerationFailure("OPENAI_API_KEY is not configured")
        _llm_provider = OpenAIProvider(api_key=app_settings.openai_api_key, default_model=app_settings.llm_model)
    return _llm_provider


def _prompt_language(language: str) -> str:
    return "en" if language == "en" else "ar"


def apology_text(language: str) -> str:
    apologies = load_personas()["apology"]
    return apologies.get(language) or apologies["ar"]


def get_conversation_history(db: Session, conversation_id: UUID, limit: int = 10) -> List[ChatMessage]:
    """Recent messages as chat roles: incoming -> user, outgoing -> assistant."""
    history = []
    for msg in recent_messages(db, conversation_id, limit=limit):
        role = "user" if msg.direction == MessageDirection.INCOMING.value else "assistant"
        history.append({"role": role, "content": msg.content})
    return history


def format_products(products: List[Product], language: str) -> str:
    personas = load_personas()
    lang = _prompt_language(language)
    currency = personas["currency"][lang]
    in_stock = personas["in_stock"][lang]

    lines = []
    for product in products:
        line = f"• {product.name} - {format_price(product.price)} {currency}"
        if product.stock is not None:
            line += f" ({in_stock}: {product.stock})"
        if product.description:
            line += f"\n{product.description}"
        lines.append(line)
    return "\n\n".join(lines)


def build_system_prompt(settings: BotSettingsSnapshot, products: List[Product]) -> str:
    personas = load_personas()
    lang = _prompt_language(settings.language)
    tones = personas["tones"]
    tone = tones.get(settings.tone) or tones["friendly"]

    parts = [
        personas["persona"][lang].strip(),
        tone[lang],
        personas["language_instruction"].get(settings.language) or personas["language_instruction"]["ar"],
        personas["length_instruction"][lang].format(max_length=settings.max_response_length),
    ]
    if products:
        parts.append(f"{personas['products_header'][lang]}\n{format_products(products, settings.language)}")
    else:
        parts.append(personas["no_products"][lang])
    return "\n\n".join(parts)


def build_prompt(
    settings: BotSettingsSnapshot,
    products: List[Product],
    history: List[ChatMessage],
    customer_text: str,
    window: int = 5,
) -> List[ChatMessage]:
    """System instruction, the last `window` history turns, then the customer message.

    The stored copy of the current message is dropped from the history so it
    is sent only once.
    """
    history = list(history)
    if history and history[-1] == {"role": "user", "content": customer_text}:
        history.pop()

    messages: List[ChatMessage] = [{"role": "system", "content": build_system_prompt(settings, products)}]
    if window > 0:
        messages.extend(history[-window:])
    messages.append({"role": "user", "content": customer_text})
    return messages


def _complete(llm: LLMProvider, messages: List[ChatMessage]) -> LLMResponse:
    """Call the model and return a non-empty reply. Raises GenerationFailure."""
    try:
        response = llm.generate(
            messages,
            model=app_settings.llm_model,
            temperature=app_settings.llm_temperature,
            max_tokens=app_settings.llm_max_tokens,
            timeout_seconds=app_settings.llm_timeout_seconds,
        )
    except LLMProviderError as e:
        raise GenerationFailure(str(e), e.context) from e
    except Exception as e:
        raise GenerationFailure(f"LLM provider crashed: {e}", {"error_type": type(e).__name__}) from e
    if not (response.content or "").strip():
        raise GenerationFailure("LLM returned empty content", {"model": response.model})
    return response


def generate(
    db: Session,
    merchant_id: UUID,
    conversation_id: UUID,
    customer_text: str,
    settings: Optional[BotSettingsSnapshot] = None,
    provider: Optional[LLMProvider] = None,
) -> str:
    """Generate a reply for the customer. Never raises: failures yield an apology."""
    snapshot = settings or load_settings_snapshot(db, merchant_id)
    log_context = {"merchant_id": str(merchant_id), "conversation_id": str(conversation_id)}

    try:
        history = get_conversation_history(db, conversation_id, limit=app_settings.history_fetch_limit)
        products = search_products(db, merchant_id, customer_text, limit=app_settings.product_search_limit)
    except SQLAlchemyError as e:
        logger.error(f"Failed to load generation context: {e}", extra={"context": log_context})
        return apology_text(snapshot.language)

    messages = build_prompt(snapshot, products, history, customer_text, window=app_settings.history_window)

    started = time.monotonic()
    try:
        llm = provider or get_llm_provider()
        response = _complete(llm, messages)
    except GenerationFailure as e:
        logger.error(
            f"LLM generation failed: {e}",
            extra={"context": {**log_context, "error_code": e.code, **e.context}},
        )
        alert_warning("LLM generation failed", {**log_context, "error": str(e)})
        return apology_text(snapshot.language)

    elapsed_ms = round((time.monotonic() - started) * 1000, 2)
    logger.info(
        "LLM reply generated",
        extra={
            "context": {
                **log_context,
                "provider": llm.name,
                "model": response.model,
                "tokens": response.total_tokens,
                "truncated": response.truncated,
                "products": len(products),
                "history": len(messages) - 2,
                "elapsed_ms": elapsed_ms,
            }
        },
    )
    return response.content.strip()
