"""
State Transition Resolver

מיפוי אירוע מנורמל (או snapshot של מנוי מסנכרון) למצב הזכאות הבא.
פונקציות טהורות - ההחלה עצמה (כולל סינון אירועים ישנים) נעשית ב-UserStateService.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from app.core.logging import get_logger, redact
from app.state_machine.states import SubscriptionState

if TYPE_CHECKING:
    from app.domain.services.event_normalizer import NormalizedWebhook

logger = get_logger(__name__)

REASON_PAYMENT_FAILED = "payment_failed_no_state_change"
REASON_CANCELLED_OR_ENDED = "subscription_cancelled_or_ended"
REASON_CREATED = "subscription_created"
REASON_CANCEL_AT_PERIOD_END = "cancel_at_period_end"
REASON_ACTIVE = "active_not_cancel_pending"
REASON_UPDATED_UNCLASSIFIED = "subscription_updated_unclassified"
REASON_UNKNOWN_EVENT = "unknown_event"


@dataclass(frozen=True)
class TransitionDecision:
    next_state: SubscriptionState | None
    reason: str

    @property
    def changes_state(self) -> bool:
        return self.next_state is not None


def derive_next_state(
    normalized: "NormalizedWebhook",
    payload: dict[str, Any] | None = None,
) -> TransitionDecision:
    """
    Decide the next entitlement state for a webhook event.

    Rules are evaluated in order; the first match wins. ``payload`` is only
    used to enrich the log line for events that cannot be classified.
    """
    t = (normalized.event_type or "").lower()

    if "payment.failed" in t:
        return TransitionDecision(None, REASON_PAYMENT_FAILED)

    if (
        "subscription.cancelled" in t
        or "subscription.canceled" in t
        or normalized.ended is True
    ):
        return TransitionDecision(SubscriptionState.CANCELLED, REASON_CANCELLED_OR_ENDED)

    if "subscription.created" in t:
        return TransitionDecision(SubscriptionState.ACTIVE_SUBSCRIBER, REASON_CREATED)

    if "subscription.updated" in t:
        if normalized.cancel_at_period_end is True:
            return TransitionDecision(
                SubscriptionState.CANCEL_PENDING, REASON_CANCEL_AT_PERIOD_END
            )
        # דורש false מפורש - חוסר מידע על cancelAtPeriodEnd לא מספיק להפעלה
        if normalized.is_active is True and normalized.cancel_at_period_end is False:
            return TransitionDecision(SubscriptionState.ACTIVE_SUBSCRIBER, REASON_ACTIVE)

        logger.info(
            "Subscription update could not be classified",
            extra_data={
                "event_type": normalized.event_type,
                "is_active": normalized.is_active,
                "cancel_at_period_end": normalized.cancel_at_period_end,
                "ended": normalized.ended,
            },
        )
        return TransitionDecision(None, REASON_UPDATED_UNCLASSIFIED)

    _log_unknown_event(normalized, payload)
    return TransitionDecision(None, REASON_UNKNOWN_EVENT)


def _log_unknown_event(
    normalized: "NormalizedWebhook", payload: dict[str, Any] | None
) -> None:
    custom_data = payload.get("customData") if isinstance(payload, dict) else None
    source = custom_data if isinstance(custom_data, dict) else payload
    keys = sorted(str(k) for k in source) if isinstance(source, dict) else []
    logger.warning(
        "Webhook received unknown event_type",
        extra_data={
            "event_type": normalized.event_type,
            "custom_data_keys": keys,
            "custom_data": redact(custom_data) if isinstance(custom_data, dict) else None,
        },
    )


def map_subscription_to_state(
    is_active: bool,
    cancel_at_period_end: bool,
    ended: bool,
) -> SubscriptionState | None:
    """מיפוי snapshot של מנוי (מסנכרון) למצב. אין התאמה -> None."""
    if is_active and cancel_at_period_end:
        return SubscriptionState.CANCEL_PENDING
    if is_active:
        return SubscriptionState.ACTIVE_SUBSCRIBER
    if ended:
        return SubscriptionState.CANCELLED
    return None
