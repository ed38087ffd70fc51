"""
Notification Service - הודעות למשתמש דרך Telegram Bot API.

best-effort בלבד: כשל בשליחה נרשם ללוג ולא משפיע על מצב הזכאות.
השליחה מוגנת ע"י ה-circuit breaker של Telegram.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

import httpx

from app.core.circuit_breaker import CircuitBreaker, get_telegram_circuit_breaker
from app.core.config import settings
from app.core.exceptions import TelegramError
from app.core.logging import get_logger
from app.state_machine.states import SubscriptionState

logger = get_logger(__name__)

STATE_CHANGE_MESSAGES: dict[SubscriptionState, str] = {
    SubscriptionState.ACTIVE_SUBSCRIBER: (
        "✅ Subscription active - you now have access to the audio library."
    ),
    SubscriptionState.CANCEL_PENDING: (
        "⚠️ Cancellation scheduled - you will keep access until the end of your billing cycle."
    ),
    SubscriptionState.CANCELLED: "❌ Subscription ended - access has been revoked.",
}

PAYMENT_FAILED_MESSAGE = (
    "Payment failed. Please update your payment method in Manage Subscription "
    "to avoid losing access."
)

RESYNC_MESSAGES: dict[SubscriptionState, str] = {
    SubscriptionState.ACTIVE_SUBSCRIBER: (
        "Subscription detected and synced. You now have access to the audio library."
    ),
    SubscriptionState.CANCEL_PENDING: (
        "Subscription detected and synced. Cancellation is scheduled at period end."
    ),
}
RESYNC_DEFAULT_MESSAGE = "Subscription status synced. Access remains revoked."


@dataclass(frozen=True)
class Notification:
    user_id: int
    text: str
    reason: str


def state_change_notification(user_id: int, state: SubscriptionState) -> Notification | None:
    text = STATE_CHANGE_MESSAGES.get(state)
    if text is None:
        return None
    return Notification(user_id=user_id, text=text, reason=f"state:{state.value}")


def payment_failed_notification(user_id: int) -> Notification:
    return Notification(user_id=user_id, text=PAYMENT_FAILED_MESSAGE, reason="payment_failed")


def resync_notification(user_id: int, state: SubscriptionState) -> Notification:
    return Notification(
        user_id=user_id,
        text=RESYNC_MESSAGES.get(state, RESYNC_DEFAULT_MESSAGE),
        reason=f"resync:{state.value}",
    )


class TelegramNotifier:
    """Sends plain-text messages to a chat user; never raises."""

    def __init__(
        self,
        bot_token: str | None = None,
        api_base_url: str | None = None,
        *,
        circuit_breaker: CircuitBreaker | None = None,
        client_factory: Callable[[], httpx.AsyncClient] | None = None,
        timeout_seconds: float = 30.0,
    ):
        self.bot_token = settings.TELEGRAM_BOT_TOKEN if bot_token is None else bot_token
        self.api_base_url = (api_base_url or settings.TELEGRAM_API_BASE_URL).rstrip("/")
        self.circuit_breaker = circuit_breaker or get_telegram_circuit_breaker()
        self._client_factory = client_factory or httpx.AsyncClient
        self.timeout_seconds = timeout_seconds

    async def send_message(self, chat_id: int, text: str) -> bool:
        if not self.bot_token:
            logger.warning(
                "Telegram bot token not configured",
                extra_data={"chat_id": chat_id},
            )
            return False

        url = f"{self.api_base_url}/bot{self.bot_token}/sendMessage"
        payload = {"chat_id": chat_id, "text": text}

        async def _send() -> None:
            async with self._client_factory() as client:
                response = await client.post(url, json=payload, timeout=self.timeout_seconds)
                if response.status_code != 200:
                    raise TelegramError.from_response("sendMessage", response)

        try:
            await self.circuit_breaker.execute(_send)
        except Exception as e:
            logger.error(
                "Telegram send failed",
                extra_data={"chat_id": chat_id, "error": str(e)},
                exc_info=True,
            )
            return False
        return True

    async def deliver(self, notification: Notification) -> bool:
        delivered = await self.send_message(notification.user_id, notification.text)
        logger.info(
            "Notification processed",
            extra_data={
                "user_id": notification.user_id,
                "reason": notification.reason,
                "delivered": delivered,
            },
        )
        return delivered
