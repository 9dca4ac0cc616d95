"""Operator alerts delivered through a Telegram bot.

A failing provider can trip the same alert on every polling tick, so repeats
of one (level, message, merchant/connection) key are suppressed for
ALERT_COOLDOWN_SECONDS.
"""

import time
from typing import Optional

import httpx

from sari.config import settings
from sari.logging_config import get_logger

logger = get_logger("alert_service")

TELEGRAM_SEND_URL = "https://api.telegram.org/bot{token}/sendMessage"
LEVEL_EMOJI = {"WARNING": "⚠️", "ERROR": "❌"}
SCOPE_KEYS = ("merchant_id", "connection_id")

_last_sent: dict[tuple, float] = {}


def format_alert(level: str, message: str, context: Optional[dict] = None) -> str:
    lines = [f"{LEVEL_EMOJI.get(level, '📢')} *Sari {level}*", "", message]
    if context:
        lines += ["", "```"] + [f"{key}: {value}" for key, value in context.items()] + ["```"]
    return "\n".join(lines)


def _cooldown_key(level: str, message: str, context: Optional[dict]) -> tuple:
    context = context or {}
    return (level, message) + tuple(str(context.get(key)) for key in SCOPE_KEYS)


def _prune(now: float) -> None:
    expired = [key for key, sent_at in _last_sent.items() if now - sent_at >= settings.alert_cooldown_seconds]
    for key in expired:
        del _last_sent[key]


def _in_cooldown(key: tuple, now: float) -> bool:
    sent_at = _last_sent.get(key)
    return sent_at is not None and now - sent_at < settings.alert_cooldown_seconds


def send_alert(level: str, message: str, context: Optional[dict] = None) -> bool:
    """Post an alert to the operator chat.

    Returns True only when Telegram accepted it. Never raises: an alert that
    cannot be delivered is logged instead.
    """
    if not settings.alert_bot_token or not settings.alert_chat_id:
        logger.warning(f"Alert not configured: {level} - {message}", extra={"context": context or {}})
        return False

    key = _cooldown_key(level, message, context)
    now = time.monotonic()
    if _in_cooldown(key, now):
        logger.info(f"Alert suppressed (cooldown): {message}", extra={"context": context or {}})
        return False
    _prune(now)
    _last_sent[key] = now

    try:
        with httpx.Client(timeout=10) as client:
            response = client.post(
                TELEGRAM_SEND_URL.format(token=settings.alert_bot_token),
                json={
                    "chat_id": settings.alert_chat_id,
                    "text": format_alert(level, message, context),
                    "parse_mode": "Markdown",
                },
            )
    except httpx.HTTPError as e:
        logger.error(f"Alert delivery failed: {e}", extra={"context": {"level": level}})
        return False

    if response.status_code != 200:
        logger.error(f"Telegram rejected alert: {response.status_code}", extra={"context": {"level": level}})
        return False
    return True


def alert_error(message: str, context: Optional[dict] = None) -> bool:
    return send_alert("ERROR", message, context)


def alert_warning(message: str, context: Optional[dict] = None) -> bool:
    return send_alert("WARNING", message, context)
