"""
בדיקות שער ה-idempotency - app/domain/services/idempotency_service.py
"""
import pytest
from sqlalchemy import func, select

from app.db.models.webhook_event import WebhookEvent
from app.domain.services.idempotency_service import (
    IdempotencyService,
    extract_idempotency_key,
    sha256_hex,
)

HASH = sha256_hex(b"{}")


class TestExtractIdempotencyKey:
    """בחירת המפתח"""

    @pytest.mark.unit
    def test_prefers_webhook_id(self):
        assert extract_idempotency_key({"webhookId": "w1", "id": "x"}, HASH) == "w1"

    @pytest.mark.unit
    def test_snake_case_and_id_fallbacks(self):
        assert extract_idempotency_key({"webhook_id": "w2"}, HASH) == "w2"
        assert extract_idempotency_key({"id": "evt_3"}, HASH) == "evt_3"

    @pytest.mark.unit
    def test_numeric_id(self):
        assert extract_idempotency_key({"id": 42}, HASH) == "42"
        assert extract_idempotency_key({"id": 42.0}, HASH) == "42"

    @pytest.mark.unit
    @pytest.mark.parametrize("payload", [{}, {"id": ""}, {"id": "  "}, {"id": True}, {"id": {}}, [], None])
    def test_falls_back_to_payload_hash(self, payload):
        assert extract_idempotency_key(payload, HASH) == HASH

    @pytest.mark.unit
    def test_only_first_non_null_candidate_considered(self):
        """webhookId לא תקין לא גורם לדילוג ל-id"""
        assert extract_idempotency_key({"webhookId": {}, "id": "evt"}, HASH) == HASH

    @pytest.mark.unit
    def test_long_id_is_hashed(self):
        key = extract_idempotency_key({"id": "x" * 500}, HASH)
        assert key.startswith("id-sha256:")
        assert len(key) <= 200


class TestTryRecord:
    """INSERT אופטימיסטי + IntegrityError"""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_first_delivery_recorded(self, db_session):
        service = IdempotencyService(db_session)
        event = await service.try_record(
            provider="GHL", idempotency_key="k1", event_type="subscription.created",
            payload_hash=HASH,
        )
        await db_session.commit()
        assert event is not None

        stored = await db_session.get(WebhookEvent, ("GHL", "k1"))
        assert stored.event_type == "subscription.created"
        assert stored.payload_hash == HASH

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_duplicate_returns_none(self, db_session):
        service = IdempotencyService(db_session)
        await service.try_record(provider="GHL", idempotency_key="k1", event_type=None, payload_hash=HASH)
        await db_session.commit()

        again = await service.try_record(provider="GHL", idempotency_key="k1", event_type=None, payload_hash=HASH)
        assert again is None

        count = await db_session.scalar(select(func.count()).select_from(WebhookEvent))
        assert count == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_same_key_other_provider_is_distinct(self, db_session):
        service = IdempotencyService(db_session)
        assert await service.try_record(provider="A", idempotency_key="k", event_type=None, payload_hash=HASH)
        await db_session.commit()
        assert await service.try_record(provider="B", idempotency_key="k", event_type=None, payload_hash=HASH)
