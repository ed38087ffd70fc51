"""
אימות webhook נכנס מספק החיוב.

מדיניות (כשתשלומים פעילים):
1. סוד חתימה מוגדר + כותרת חתימה קיימת -> החתימה קובעת (HMAC-SHA256 על ה-bytes הגולמיים).
2. אחרת, WEBHOOK_TOKEN מוגדר -> ?token= חייב להתאים (השוואה ב-constant time).
3. אחרת -> 401.

כשתשלומים כבויים (מצב בדיקות): token שנשלח חייב להתאים; בלי token הבקשה מתקבלת.

שימוש:
    @router.post("/provider")
    async def provider_webhook(
        raw_body: bytes = Depends(authenticate_provider_webhook),
    ):
        ...
"""
from __future__ import annotations

import hmac
from dataclasses import dataclass

from fastapi import Request

from app.core.config import settings
from app.core.exceptions import WebhookAuthError
from app.core.logging import get_logger
from app.core.signature import verify_hmac_sha256

logger = get_logger(__name__)

REASON_TOKEN_MISMATCH = "token_mismatch"
REASON_NO_CREDENTIALS = "no_credentials"
MODE_SIGNATURE = "signature"
MODE_TOKEN = "token"
MODE_UNAUTHENTICATED = "unauthenticated_testing_mode"


@dataclass(frozen=True)
class WebhookAuthDecision:
    authenticated: bool
    mode: str | None = None
    reason: str | None = None


def _tokens_match(supplied: str, expected: str) -> bool:
    return hmac.compare_digest(supplied.encode("utf-8"), expected.encode("utf-8"))


def evaluate_webhook_auth(
    raw_body: bytes,
    *,
    signature: str | None,
    timestamp: str | None,
    query_token: str | None,
    payments_enabled: bool,
    secret: str,
    webhook_token: str,
    max_skew_seconds: float | None,
    now: float | None = None,
) -> WebhookAuthDecision:
    signature = (signature or "").strip()
    query_token = query_token or ""

    if not payments_enabled:
        if webhook_token and query_token:
            if _tokens_match(query_token, webhook_token):
                return WebhookAuthDecision(True, MODE_TOKEN)
            return WebhookAuthDecision(False, MODE_TOKEN, REASON_TOKEN_MISMATCH)
        return WebhookAuthDecision(True, MODE_UNAUTHENTICATED)

    if secret and signature:
        result = verify_hmac_sha256(
            raw_body,
            secret,
            signature,
            header_timestamp=(timestamp or "").strip() or None,
            max_skew_seconds=max_skew_seconds,
            now=now,
        )
        return WebhookAuthDecision(result.valid, MODE_SIGNATURE, result.reason)

    if webhook_token:
        if query_token and _tokens_match(query_token, webhook_token):
            return WebhookAuthDecision(True, MODE_TOKEN)
        return WebhookAuthDecision(False, MODE_TOKEN, REASON_TOKEN_MISMATCH)

    return WebhookAuthDecision(False, None, REASON_NO_CREDENTIALS)


async def authenticate_provider_webhook(request: Request) -> bytes:
    """
    FastAPI dependency: מאמת את הבקשה ומחזיר את הגוף הגולמי.

    Raises:
        WebhookAuthError: 401, לפני כל כתיבה ל-DB
    """
    raw_body = await request.body()
    decision = evaluate_webhook_auth(
        raw_body,
        signature=request.headers.get(settings.WEBHOOK_SIGNATURE_HEADER),
        timestamp=request.headers.get(settings.WEBHOOK_TIMESTAMP_HEADER),
        query_token=request.query_params.get("token"),
        payments_enabled=settings.ENABLE_PAYMENTS,
        secret=settings.PROVIDER_WEBHOOK_SECRET,
        webhook_token=settings.WEBHOOK_TOKEN,
        max_skew_seconds=settings.WEBHOOK_MAX_SKEW_SECONDS,
    )

    if not decision.authenticated:
        logger.warning(
            "Webhook rejected (auth failed)",
            extra_data={
                "mode": decision.mode,
                "reason": decision.reason,
                "has_signature_header": bool(
                    request.headers.get(settings.WEBHOOK_SIGNATURE_HEADER)
                ),
            },
        )
        raise WebhookAuthError(decision.reason or REASON_NO_CREDENTIALS)

    if decision.mode == MODE_UNAUTHENTICATED:
        logger.info("Webhook accepted without auth (payments disabled - testing mode)")

    return raw_body
