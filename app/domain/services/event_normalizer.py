"""
Event Normalizer - חילוץ best-effort של שדות מ-payload של webhook.

שמות השדות אצל הספק משתנים בין tenants וגרסאות, ולכן כל שדה נקרא
ממספר נתיבים אפשריים לפי סדר עדיפות. הפונקציה normalize_webhook היא
total: לא זורקת על שום קלט, ומה שלא זוהה נרשם ללוג.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from app.core.logging import get_logger

logger = get_logger(__name__)

# מתחת לסף הזה ערך מספרי מתפרש כשניות, מעליו כמילישניות
_SECONDS_THRESHOLD = 100_000_000_000

_MISSING = object()
_MAX_BIGINT = 2 ** 63 - 1
# רוחב העמודה users.external_contact_id
MAX_CONTACT_ID_LENGTH = 100

_EVENT_TYPE_PATHS = (("type",), ("eventType",), ("event_type",))
_TIMESTAMP_PATHS = (
    ("timestamp",),
    ("createdAt",),
    ("created_at",),
    ("firedAt",),
    ("fired_at",),
)
_CONTACT_ID_PATHS = (("contactId",), ("contact_id",), ("contact", "id"))
_USER_ID_PATHS = (
    ("telegram_user_id",),
    ("telegramUserId",),
    ("contact", "telegram_user_id"),
    ("contact", "customFields", "telegram_user_id"),
    ("contact", "customFields", "telegramUserId"),
    ("contact", "customField", "telegram_user_id"),
)
_STATUS_PATHS = (("subscription", "status"), ("status",))
_ACTIVE_PATHS = (("isActive",), ("active",), ("subscription", "active"))
_CANCEL_AT_PERIOD_END_PATHS = (
    ("cancelAtPeriodEnd",),
    ("cancel_at_period_end",),
    ("subscription", "cancelAtPeriodEnd"),
    ("subscription", "cancel_at_period_end"),
)
_ENDED_PATHS = (("ended",), ("subscription", "ended"))

_ACTIVE_STATUSES = frozenset({"active", "trialing"})
_ENDED_STATUSES = frozenset({"canceled", "cancelled", "ended"})


class EventKind(str, Enum):
    """סוגי האירועים המוכרים + וריאנט "לא מזוהה" """

    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"
    PAYMENT_FAILED = "payment_failed"
    UNRECOGNIZED = "unrecognized"


@dataclass
class NormalizedWebhook:
    event_type: str | None = None
    event_kind: EventKind = EventKind.UNRECOGNIZED
    event_at: int | None = None  # epoch millis
    contact_id: str | None = None
    user_id: int | None = None
    is_active: bool | None = None
    cancel_at_period_end: bool | None = None
    ended: bool | None = None


def get_path(payload: Any, path: tuple[str, ...]) -> Any:
    """Walk nested dicts; returns _MISSING when any hop is absent or not a dict."""
    current = payload
    for key in path:
        if not isinstance(current, dict) or key not in current:
            return _MISSING
        current = current[key]
    return current


def first_present(payload: Any, paths: tuple[tuple[str, ...], ...]) -> Any:
    """First non-null value among candidate paths, or None."""
    for path in paths:
        value = get_path(payload, path)
        if value is not _MISSING and value is not None:
            return value
    return None


def _first_bool(payload: Any, paths: tuple[tuple[str, ...], ...]) -> bool | None:
    for path in paths:
        value = get_path(payload, path)
        if isinstance(value, bool):
            return value
    return None


def parse_event_timestamp(value: Any) -> int | None:
    """
    המרת חותמת זמן ל-epoch millis.

    מקבל מספר (שניות או מילישניות), מחרוזת מספרית או ISO-8601.
    ערך לא תקין -> None.
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, str):
        raw = value.strip()
        if not raw:
            return None
        try:
            number = float(raw)
        except ValueError:
            return _parse_iso8601(raw)
        return _number_to_millis(number)

    if isinstance(value, (int, float)):
        try:
            return _number_to_millis(float(value))
        except OverflowError:
            return None

    return None


def _number_to_millis(number: float) -> int | None:
    if not math.isfinite(number) or number <= 0:
        return None
    if number < _SECONDS_THRESHOLD:
        number *= 1000
    if number >= _MAX_BIGINT:
        return None
    return int(number)


def _parse_iso8601(raw: str) -> int | None:
    candidate = raw[:-1] + "+00:00" if raw.endswith(("Z", "z")) else raw
    try:
        parsed = datetime.fromisoformat(candidate)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    millis = int(parsed.timestamp() * 1000)
    return millis if millis > 0 else None


def parse_user_id(value: Any) -> int | None:
    """Chat user id from an int or a numeric string; anything else -> None."""
    parsed = _coerce_integral(value)
    if parsed is None or not 0 < parsed <= _MAX_BIGINT:
        return None
    return parsed


def _coerce_integral(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if math.isfinite(value) and value.is_integer():
            return int(value)
        return None
    if isinstance(value, str):
        raw = value.strip()
        if not raw:
            return None
        # int קודם - float מאבד דיוק מעל 2**53
        try:
            return int(raw)
        except ValueError:
            pass
        try:
            number = float(raw)
        except ValueError:
            return None
        if math.isfinite(number) and number.is_integer():
            return int(number)
    return None


def parse_contact_id(value: Any) -> str | None:
    """Contact id as a non-empty string that fits users.external_contact_id."""
    if isinstance(value, bool):
        return None
    if isinstance(value, str):
        contact_id = value.strip()
    elif isinstance(value, (int, float)):
        contact_id = str(value)
    else:
        return None
    if not contact_id:
        return None
    if len(contact_id) > MAX_CONTACT_ID_LENGTH:
        logger.warning(
            "Contact id too long, ignored",
            extra_data={"length": len(contact_id)},
        )
        return None
    return contact_id


def classify_event_type(event_type: str | None) -> EventKind:
    t = (event_type or "").lower()
    if "payment.failed" in t:
        return EventKind.PAYMENT_FAILED
    if "subscription.cancelled" in t or "subscription.canceled" in t:
        return EventKind.SUBSCRIPTION_CANCELLED
    if "subscription.created" in t:
        return EventKind.SUBSCRIPTION_CREATED
    if "subscription.updated" in t:
        return EventKind.SUBSCRIPTION_UPDATED
    return EventKind.UNRECOGNIZED


def normalize_webhook(payload: Any) -> NormalizedWebhook:
    """Best-effort, never-raising extraction of a provider webhook payload."""
    if not isinstance(payload, dict):
        logger.warning(
            "Webhook payload is not an object",
            extra_data={"payload_type": type(payload).__name__},
        )
        return NormalizedWebhook()

    raw_type = first_present(payload, _EVENT_TYPE_PATHS)
    event_type = raw_type if isinstance(raw_type, str) else None
    event_kind = classify_event_type(event_type)

    raw_ts = first_present(payload, _TIMESTAMP_PATHS)
    event_at = parse_event_timestamp(raw_ts)
    if raw_ts is not None and event_at is None:
        logger.info(
            "Webhook timestamp could not be parsed",
            extra_data={"event_type": event_type, "raw_type": type(raw_ts).__name__},
        )

    status = first_present(payload, _STATUS_PATHS)
    normalized_status = status.lower() if isinstance(status, str) else None

    is_active = _first_bool(payload, _ACTIVE_PATHS)
    if is_active is None and normalized_status:
        is_active = normalized_status in _ACTIVE_STATUSES

    ended = _first_bool(payload, _ENDED_PATHS)
    if ended is None and normalized_status:
        ended = normalized_status in _ENDED_STATUSES

    result = NormalizedWebhook(
        event_type=event_type,
        event_kind=event_kind,
        event_at=event_at,
        contact_id=parse_contact_id(first_present(payload, _CONTACT_ID_PATHS)),
        user_id=parse_user_id(first_present(payload, _USER_ID_PATHS)),
        is_active=is_active,
        cancel_at_period_end=_first_bool(payload, _CANCEL_AT_PERIOD_END_PATHS),
        ended=ended,
    )

    if event_kind == EventKind.UNRECOGNIZED:
        logger.info(
            "Webhook event type not recognized",
            extra_data={"event_type": event_type, "top_level_keys": sorted(str(k) for k in payload)[:50]},
        )

    return result
