"""
Entitlement States for Subscription Sync
"""
from enum import Enum


class SubscriptionState(str, Enum):
    """מצב הזכאות של משתמש צ'אט מול המנוי אצל ספק החיוב"""

    NOT_SUBSCRIBED = "NOT_SUBSCRIBED"
    ACTIVE_SUBSCRIBER = "ACTIVE_SUBSCRIBER"
    # ביטול מתוזמן - הגישה נשמרת עד סוף מחזור החיוב
    CANCEL_PENDING = "CANCEL_PENDING"
    CANCELLED = "CANCELLED"

    @property
    def has_access(self) -> bool:
        return self in (SubscriptionState.ACTIVE_SUBSCRIBER, SubscriptionState.CANCEL_PENDING)


# מצבים שמהם סנכרון מתוזמן מנסה לשחזר מנוי שהוחמץ ב-webhook
RESYNC_CANDIDATE_STATES = (
    SubscriptionState.NOT_SUBSCRIBED,
    SubscriptionState.CANCELLED,
)
