"""
בדיקות סנכרון יזום - app/domain/services/resync_service.py
"""
from datetime import timedelta

import httpx
import pytest

from app.core.exceptions import ProviderError
from app.db.database import utcnow
from app.domain.services.resync_service import (
    SKIP_ALREADY_ACTIVE,
    SKIP_COOLDOWN,
    SKIP_NO_ACTIVE_SUBSCRIPTION,
    SKIP_NO_API_KEY,
    SKIP_NO_CONTACT,
    SKIP_NO_USER,
    SKIP_PAYMENTS_DISABLED,
    ResyncService,
)
from app.domain.services.user_state_service import UserStateService
from app.state_machine.states import SubscriptionState


def provider_handler(subscriptions: list | None = None, contact_id: str | None = "c-1"):
    """handler שמחזיר contact אחד ורשימת מנויים"""
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/contacts/search":
            contacts = [{"id": contact_id}] if contact_id else []
            return httpx.Response(200, json={"contacts": contacts})
        if request.url.path == "/subscriptions":
            return httpx.Response(200, json={"subscriptions": subscriptions or []})
        return httpx.Response(404)

    return handler


def _service(db_session, provider, **kwargs) -> ResyncService:
    kwargs.setdefault("payments_enabled", True)
    kwargs.setdefault("cooldown", timedelta(minutes=10))
    return ResyncService(db_session, provider, **kwargs)


class TestPreconditions:
    """תנאים מקדימים לפי הסדר"""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_payments_disabled(self, db_session, provider_factory):
        result = await _service(db_session, provider_factory(), payments_enabled=False).resync(1)
        assert result.to_dict() == {"attempted": False, "skipped": SKIP_PAYMENTS_DISABLED, "next_state": None}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_no_api_key(self, db_session, provider_factory):
        result = await _service(db_session, provider_factory(api_key="")).resync(1)
        assert result.skipped == SKIP_NO_API_KEY

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_no_user(self, db_session, provider_factory):
        result = await _service(db_session, provider_factory()).resync(1)
        assert result.skipped == SKIP_NO_USER
        assert await UserStateService(db_session).get_user(1) is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize("state", [SubscriptionState.ACTIVE_SUBSCRIBER, SubscriptionState.CANCEL_PENDING])
    async def test_already_active(self, db_session, provider_factory, user_factory, state):
        await user_factory(user_id=1, state=state)
        result = await _service(db_session, provider_factory()).resync(1)
        assert result.skipped == SKIP_ALREADY_ACTIVE


class TestCooldown:
    """שני ניסיונות בתוך חלון ה-cooldown"""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_second_attempt_skipped(self, db_session, provider_factory, user_factory):
        await user_factory(user_id=1)
        service = _service(db_session, provider_factory(provider_handler()))

        first = await service.resync(1)
        assert first.attempted

        second = await service.resync(1)
        assert second.to_dict() == {"attempted": False, "skipped": SKIP_COOLDOWN, "next_state": None}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_force_bypasses_cooldown(self, db_session, provider_factory, user_factory):
        await user_factory(user_id=1, last_resync_at=utcnow())
        service = _service(db_session, provider_factory(provider_handler()))

        assert (await service.resync(1)).skipped == SKIP_COOLDOWN
        assert (await service.resync(1, force=True)).attempted

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cooldown_expires(self, db_session, provider_factory, user_factory):
        await user_factory(user_id=1, last_resync_at=utcnow() - timedelta(minutes=11))
        result = await _service(db_session, provider_factory(provider_handler())).resync(1)
        assert result.attempted


class TestResyncOutcomes:
    """מיפוי תשובת הספק למצב"""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_active_subscription_applied(self, db_session, provider_factory, user_factory):
        await user_factory(user_id=1, state=SubscriptionState.CANCELLED, last_event_at=1_700_000_000_000)
        provider = provider_factory(provider_handler([{"status": "active"}]))

        result = await _service(db_session, provider).resync(1)

        assert result.attempted
        assert result.next_state == SubscriptionState.ACTIVE_SUBSCRIBER
        user = await UserStateService(db_session).get_user(1)
        assert user.state == SubscriptionState.ACTIVE_SUBSCRIBER
        assert user.external_contact_id == "c-1"
        assert user.last_resync_at is not None
        # snapshot - ה-watermark לא זז
        assert user.last_event_at == 1_700_000_000_000

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cancel_pending_subscription(self, db_session, provider_factory, user_factory):
        await user_factory(user_id=1)
        provider = provider_factory(provider_handler([{"status": "active", "cancelAtPeriodEnd": True}]))
        result = await _service(db_session, provider).resync(1)
        assert result.next_state == SubscriptionState.CANCEL_PENDING

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_no_contact_still_records_attempt(self, db_session, provider_factory, user_factory):
        await user_factory(user_id=1)
        provider = provider_factory(provider_handler(contact_id=None))

        result = await _service(db_session, provider).resync(1)

        assert result.attempted
        assert result.skipped == SKIP_NO_CONTACT
        user = await UserStateService(db_session).get_user(1)
        await db_session.refresh(user)
        assert user.last_resync_at is not None
        assert user.state == SubscriptionState.NOT_SUBSCRIBED

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_no_active_subscription(self, db_session, provider_factory, user_factory):
        await user_factory(user_id=1)
        provider = provider_factory(provider_handler([{"status": "incomplete"}]))
        result = await _service(db_session, provider).resync(1)
        assert result.skipped == SKIP_NO_ACTIVE_SUBSCRIPTION

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_provider_down_leaves_state(self, db_session, provider_factory, user_factory):
        await user_factory(user_id=1, state=SubscriptionState.CANCELLED)
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request.url.path)
            raise httpx.ConnectError("down", request=request)

        service = _service(db_session, provider_factory(handler))
        with pytest.raises(ProviderError):
            await service.resync(1)

        user = await UserStateService(db_session).get_user(1)
        assert user.state == SubscriptionState.CANCELLED
        # ה-cooldown מתחיל גם כשהספק לא זמין
        assert user.last_resync_at is not None

        calls_after_first = len(calls)
        result = await service.resync(1)
        assert result.skipped == SKIP_COOLDOWN
        assert len(calls) == calls_after_first


class TestFindLapsedUsers:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_candidates(self, db_session, provider_factory, user_factory):
        now = utcnow()
        await user_factory(user_id=1, state=SubscriptionState.CANCELLED, external_contact_id="c1")
        await user_factory(user_id=2, state=SubscriptionState.NOT_SUBSCRIBED, external_contact_id="c2",
                           last_resync_at=now - timedelta(hours=1))
        # cooldown פעיל
        await user_factory(user_id=3, state=SubscriptionState.CANCELLED, external_contact_id="c3",
                           last_resync_at=now)
        # בלי contact id
        await user_factory(user_id=4, state=SubscriptionState.CANCELLED)
        # עם גישה
        await user_factory(user_id=5, state=SubscriptionState.ACTIVE_SUBSCRIBER, external_contact_id="c5")

        ids = await _service(db_session, provider_factory()).find_lapsed_user_ids(limit=10, now=now)
        assert ids == [1, 2]
