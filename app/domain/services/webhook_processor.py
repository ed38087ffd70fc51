"""
Webhook Processor - צינור העיבוד של webhook מאומת מהספק.

טרנזקציה 1: רישום המשלוח (idempotency) + קישור מקומי (מזהה מוטמע / checkout token).
מחוץ לטרנזקציה: חיפוש איש קשר אצל הספק, אם עדיין לא קושר.
טרנזקציה 2: קישור האירוע למשתמש שנמצא אצל הספק, ואז החלת מעבר המצב.

הודעות למשתמש לא נשלחות כאן - הן מוחזרות ל-route שמתזמן אותן כ-background task.
"""
from __future__ import annotations

import hmac
import json
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import MalformedWebhookError
from app.core.logging import get_logger
from app.domain.services.event_normalizer import EventKind, normalize_webhook
from app.domain.services.identity_resolver import IdentityResolver
from app.domain.services.idempotency_service import (
    IdempotencyService,
    extract_idempotency_key,
    sha256_hex,
)
from app.domain.services.notification_service import (
    Notification,
    payment_failed_notification,
    state_change_notification,
)
from app.domain.services.provider_client import ProviderClient
from app.domain.services.user_state_service import UserStateService
from app.state_machine.transitions import derive_next_state

logger = get_logger(__name__)


@dataclass
class WebhookOutcome:
    body: dict[str, Any]
    notifications: list[Notification] = field(default_factory=list)
    user_id: int | None = None
    reason: str | None = None


def parse_webhook_body(raw_body: bytes) -> Any:
    if not raw_body:
        raise MalformedWebhookError("Expected raw body")
    try:
        return json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        raise MalformedWebhookError("Invalid JSON") from e


class WebhookProcessor:
    def __init__(
        self,
        db: AsyncSession,
        provider: ProviderClient | None = None,
        *,
        provider_name: str | None = None,
        webhook_token: str | None = None,
    ):
        self.db = db
        self.provider_name = provider_name or settings.WEBHOOK_PROVIDER_NAME
        self.webhook_token = settings.WEBHOOK_TOKEN if webhook_token is None else webhook_token
        self.identity = IdentityResolver(db, provider)
        self.users = UserStateService(db)

    def _checkout_query_token(self, query_token: str | None) -> str | None:
        # ?token= שהוא ה-WEBHOOK_TOKEN משמש לאימות, לא לקישור
        if not query_token:
            return None
        if self.webhook_token and hmac.compare_digest(
            query_token.encode("utf-8"), self.webhook_token.encode("utf-8")
        ):
            return None
        return query_token

    async def _link_event(self, idempotency_key: str, user_id: int) -> None:
        # נשמר לפני המעבר - דיכוי אירוע ישן עושה rollback
        try:
            await IdempotencyService(self.db).link_user(
                provider=self.provider_name,
                idempotency_key=idempotency_key,
                user_id=user_id,
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

    async def process(self, raw_body: bytes, query_token: str | None = None) -> WebhookOutcome:
        """
        עיבוד webhook שכבר עבר אימות.

        Raises:
            MalformedWebhookError: גוף ריק או JSON לא תקין (לפני כל כתיבה)
        """
        payload = parse_webhook_body(raw_body)
        payload_hash = sha256_hex(raw_body)
        idempotency_key = extract_idempotency_key(payload, payload_hash)
        normalized = normalize_webhook(payload)

        # טרנזקציה 1 - רישום + קישור מקומי
        try:
            event = await IdempotencyService(self.db).try_record(
                provider=self.provider_name,
                idempotency_key=idempotency_key,
                event_type=normalized.event_type,
                payload_hash=payload_hash,
            )
            if event is None:
                await self.db.rollback()
                return WebhookOutcome(body={"ok": True, "duplicate": True}, reason="duplicate")

            identity = await self.identity.resolve_local(
                normalized, payload, self._checkout_query_token(query_token)
            )
            if identity.resolved:
                event.linked_user_id = identity.user_id
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        if not identity.resolved:
            identity = await self.identity.resolve_remote(normalized)
            if identity.resolved:
                await self._link_event(idempotency_key, identity.user_id)

        if not identity.resolved:
            logger.warning(
                "Webhook stored but unlinked (no user id)",
                extra_data={
                    "idempotency_key": idempotency_key,
                    "contact_id": normalized.contact_id,
                    "event_type": normalized.event_type,
                },
            )
            return WebhookOutcome(body={"ok": True, "unlinked": True}, reason="unlinked")

        user_id = identity.user_id
        decision = derive_next_state(normalized, payload if isinstance(payload, dict) else None)

        if decision.next_state is None:
            # המשתמש נוצר גם אם ה-webhook הגיע לפני שהמשתמש פתח את הבוט
            await self.users.get_or_create(user_id)
            notifications = []
            if normalized.event_kind == EventKind.PAYMENT_FAILED:
                notifications.append(payment_failed_notification(user_id))
            logger.info(
                "Webhook processed (no state change)",
                extra_data={"user_id": user_id, "reason": decision.reason},
            )
            return WebhookOutcome(
                body={"ok": True},
                notifications=notifications,
                user_id=user_id,
                reason=decision.reason,
            )

        # טרנזקציה 2 - החלת המעבר
        outcome = await self.users.apply_transition(
            user_id,
            decision.next_state,
            event_at=normalized.event_at,
            external_contact_id=normalized.contact_id,
        )
        if not outcome.applied:
            return WebhookOutcome(
                body={"ok": True, "suppressed": True},
                user_id=user_id,
                reason="stale_event",
            )

        notifications = []
        if outcome.changed:
            notification = state_change_notification(user_id, decision.next_state)
            if notification is not None:
                notifications.append(notification)

        return WebhookOutcome(
            body={"ok": True},
            notifications=notifications,
            user_id=user_id,
            reason=decision.reason,
        )
