"""
בדיקות checkout tokens - app/domain/services/checkout_token_service.py
"""
from datetime import timedelta
from unittest.mock import patch

import pytest
from sqlalchemy import func, select

from app.core.config import settings
from app.db.database import utcnow
from app.db.models.checkout_token import CheckoutToken
from app.domain.services.checkout_token_service import (
    CheckoutTokenService,
    build_checkout_url,
    generate_token,
)
from app.domain.services.user_state_service import UserStateService


class TestTokenHelpers:
    @pytest.mark.unit
    def test_generated_tokens_are_random_hex(self):
        tokens = {generate_token() for _ in range(50)}
        assert len(tokens) == 50
        assert all(len(t) == 32 and int(t, 16) >= 0 for t in tokens)

    @pytest.mark.unit
    def test_checkout_url_template(self):
        assert build_checkout_url("abc", "https://pay.test/c?t={token}") == "https://pay.test/c?t=abc"

    @pytest.mark.unit
    @pytest.mark.parametrize("template", ["", "https://pay.test/no-placeholder"])
    def test_checkout_url_without_placeholder(self, template):
        assert build_checkout_url("abc", template) is None


class TestIssueAndRedeem:
    """הנפקה ומימוש חד-פעמי"""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_issue_creates_user_lazily(self, db_session):
        issued = await CheckoutTokenService(db_session).issue(777)

        user = await UserStateService(db_session).get_user(777)
        assert user is not None
        assert issued.user_id == 777
        assert issued.expires_at - utcnow() > timedelta(hours=47)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_issue_includes_checkout_url(self, db_session):
        with patch.object(settings, "CHECKOUT_URL_TEMPLATE", "https://pay.test/?token={token}"):
            issued = await CheckoutTokenService(db_session).issue(777)
        assert issued.checkout_url == f"https://pay.test/?token={issued.token}"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_redeem_once(self, db_session):
        service = CheckoutTokenService(db_session)
        issued = await service.issue(777)

        assert await service.redeem(issued.token) == 777
        await db_session.commit()
        assert await service.redeem(issued.token) is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_expired_token_consumed_without_linking(self, db_session):
        service = CheckoutTokenService(db_session)
        issued = await service.issue(777, ttl=timedelta(minutes=5))

        later = utcnow() + timedelta(minutes=10)
        assert await service.redeem(issued.token, now=later) is None
        await db_session.commit()

        remaining = await db_session.scalar(select(func.count()).select_from(CheckoutToken))
        assert remaining == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_multiple_tokens_per_user(self, db_session):
        service = CheckoutTokenService(db_session)
        first = await service.issue(777)
        second = await service.issue(777)

        assert first.token != second.token
        assert await service.redeem(second.token) == 777
        assert await service.redeem(first.token) == 777

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize("token", ["", "   ", "unknown-token"])
    async def test_redeem_unknown(self, db_session, token):
        assert await CheckoutTokenService(db_session).redeem(token) is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_purge_and_revoke(self, db_session):
        service = CheckoutTokenService(db_session)
        await service.issue(1, ttl=timedelta(minutes=1))
        await service.issue(2)
        await service.issue(2)

        assert await service.purge_expired(now=utcnow() + timedelta(minutes=2)) == 1
        assert await service.revoke_for_user(2) == 2
