"""
Database Models
"""
from app.db.models.user_state import UserState
from app.db.models.webhook_event import WebhookEvent
from app.db.models.checkout_token import CheckoutToken

__all__ = [
    "UserState",
    "WebhookEvent",
    "CheckoutToken",
]
