"""Auto-reply eligibility.

`decide` is a pure function of a settings snapshot and a point in time. The
same inputs always give the same Decision, which keeps the webhook and
polling paths in agreement.
"""

from dataclasses import dataclass
from datetime import datetime, time, timezone
from enum import Enum
from typing import Optional
from uuid import UUID
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy.orm import Session

from sari.logging_config import get_logger
from sari.models import BotSettings, Merchant

logger = get_logger("eligibility")

DEFAULT_TIMEZONE = "Asia/Riyadh"
ALL_DAYS = frozenset(range(7))


class DecisionAction(str, Enum):
    RESPOND = "respond"
    FALLBACK = "fallback"
    WELCOME = "welcome"
    SILENT = "silent"


class WelcomePolicy(str, Enum):
    OFF = "off"
    FIRST_CONTACT = "first_contact"
    FIRST_CONTACT_OVERRIDE = "first_contact_override"


@dataclass(frozen=True)
class BotSettingsSnapshot:
    auto_reply_enabled: bool = True
    merchant_enabled: bool = True
    working_hours_enabled: bool = False
    working_hours_start: str = "09:00"
    working_hours_end: str = "18:00"
    working_days: frozenset = frozenset({0, 1, 2, 3, 4})
    welcome_message: Optional[str] = None
    out_of_hours_message: Optional[str] = None
    tone: str = "friendly"
    language: str = "ar"
    response_delay_seconds: int = 2
    max_response_length: int = 200
    timezone: str = DEFAULT_TIMEZONE
    welcome_policy: str = WelcomePolicy.OFF.value

    @classmethod
    def from_model(cls, row: Optional[BotSettings], merchant: Optional[Merchant] = None) -> "BotSettingsSnapshot":
        merchant_enabled = True if merchant is None else bool(merchant.auto_reply_enabled)
        if row is None:
            return cls(merchant_enabled=merchant_enabled)
        return cls(
            auto_reply_enabled=bool(row.auto_reply_enabled),
            merchant_enabled=merchant_enabled,
            working_hours_enabled=bool(row.working_hours_enabled),
            working_hours_start=row.working_hours_start or "09:00",
            working_hours_end=row.working_hours_end or "18:00",
            working_days=parse_working_days(row.working_days),
            welcome_message=row.welcome_message,
            out_of_hours_message=row.out_of_hours_message,
            tone=row.tone or "friendly",
            language=row.language or "ar",
            response_delay_seconds=row.response_delay_seconds or 0,
            max_response_length=row.max_response_length or 200,
            timezone=row.timezone or DEFAULT_TIMEZONE,
            welcome_policy=row.welcome_policy or WelcomePolicy.OFF.value,
        )


@dataclass(frozen=True)
class Decision:
    action: DecisionAction
    reason: str
    fallback_text: Optional[str] = None

    @property
    def sends_message(self) -> bool:
        return self.action != DecisionAction.SILENT


def parse_working_days(value) -> frozenset:
    """'0,1,2' -> {0, 1, 2}. Unknown tokens are skipped."""
    if value is None:
        return frozenset()
    if isinstance(value, (set, frozenset, list, tuple)):
        tokens = value
    else:
        tokens = str(value).split(",")
    days = set()
    for token in tokens:
        try:
            day = int(str(token).strip())
        except ValueError:
            continue
        if day in ALL_DAYS:
            days.add(day)
    return frozenset(days)


def parse_clock(value: str) -> time:
    hours, minutes = value.strip().split(":", 1)
    return time(int(hours), int(minutes))


def weekday_ordinal(moment: datetime) -> int:
    """Weekday with 0 = Sunday ... 6 = Saturday."""
    return (moment.weekday() + 1) % 7


def within_window(current: time, start: time, end: time) -> bool:
    """True if current is in [start, end). Windows with end < start wrap midnight."""
    if start == end:
        return True
    if start < end:
        return start <= current < end
    return current >= start or current < end


def _zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown timezone {name!r}, using {DEFAULT_TIMEZONE}")
        return ZoneInfo(DEFAULT_TIMEZONE)


def local_now(settings: BotSettingsSnapshot, now: Optional[datetime] = None) -> datetime:
    """Convert an instant to the merchant's wall clock.

    Naive datetimes are taken to already be merchant-local.
    """
    if now is None:
        now = datetime.now(timezone.utc)
    if now.tzinfo is None:
        return now
    return now.astimezone(_zone(settings.timezone))


def _fallback(text: Optional[str], reason: str) -> Decision:
    if not text or not text.strip():
        return Decision(DecisionAction.SILENT, "no_fallback_message")
    return Decision(DecisionAction.FALLBACK, reason, fallback_text=text)


def decide(settings: BotSettingsSnapshot, now: datetime) -> Decision:
    if not settings.auto_reply_enabled:
        return Decision(DecisionAction.SILENT, "disabled")
    if not settings.merchant_enabled:
        return Decision(DecisionAction.SILENT, "merchant_disabled")
    if not settings.working_hours_enabled:
        return Decision(DecisionAction.RESPOND, "always_on")

    local = local_now(settings, now)
    if weekday_ordinal(local) not in settings.working_days:
        return _fallback(settings.out_of_hours_message, "outside_working_days")

    try:
        start = parse_clock(settings.working_hours_start)
        end = parse_clock(settings.working_hours_end)
    except ValueError:
        logger.warning(
            "Invalid working hours, treating as open all day",
            extra={"context": {"start": settings.working_hours_start, "end": settings.working_hours_end}},
        )
        return Decision(DecisionAction.RESPOND, "within_working_hours")

    if not within_window(local.time().replace(second=0, microsecond=0), start, end):
        return _fallback(settings.out_of_hours_message, "outside_working_hours")
    return Decision(DecisionAction.RESPOND, "within_working_hours")


def apply_welcome_policy(decision: Decision, settings: BotSettingsSnapshot, is_first_contact: bool) -> Decision:
    """Swap in the welcome message for a customer's first contact, per policy."""
    if not is_first_contact or decision.action == DecisionAction.SILENT:
        return decision
    if not settings.welcome_message or not settings.welcome_message.strip():
        return decision

    policy = settings.welcome_policy
    if policy == WelcomePolicy.FIRST_CONTACT.value and decision.action == DecisionAction.RESPOND:
        return Decision(DecisionAction.WELCOME, "first_contact", fallback_text=settings.welcome_message)
    if policy == WelcomePolicy.FIRST_CONTACT_OVERRIDE.value:
        return Decision(DecisionAction.WELCOME, "first_contact", fallback_text=settings.welcome_message)
    return decision


def load_settings_snapshot(db: Session, merchant_id: UUID) -> BotSettingsSnapshot:
    merchant = db.query(Merchant).filter(Merchant.id == merchant_id).first()
    row = db.query(BotSettings).filter(BotSettings.merchant_id == merchant_id).first()
    return BotSettingsSnapshot.from_model(row, merchant)


def should_respond(db: Session, merchant_id: UUID, now: Optional[datetime] = None) -> Decision:
    """Current eligibility of a merchant, for the settings status banner."""
    snapshot = load_settings_snapshot(db, merchant_id)
    return decide(snapshot, now or datetime.now(timezone.utc))
