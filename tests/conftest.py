"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database sessions (async, SQLite in memory)
- Provider API client over httpx.MockTransport
- Fake notification sink
- Webhook request helpers (signed / token)
- Test data factories
"""
import json
from typing import AsyncGenerator, Callable
from unittest.mock import patch

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from app.api.dependencies.services import get_notifier, get_provider_client
from app.core.config import settings
from app.core.http_client import RetryableHttpClient, RetryPolicy
from app.core.rate_limit import FixedWindowRateLimiter
from app.core.signature import sign_hex
from app.db.database import Base, build_engine, get_db
from app.db.models.user_state import UserState
from app.domain.services.notification_service import Notification
from app.domain.services.provider_client import ProviderClient, TenantContext
from app.main import app
from app.state_machine.states import SubscriptionState


# Test database URL (SQLite in memory for fast tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

TEST_WEBHOOK_SECRET = "whsec-test-secret"
TEST_WEBHOOK_TOKEN = "hook-token-test"
TEST_PROVIDER_BASE_URL = "https://provider.test"

# הערה: לא מגדירים event_loop fixture מותאם אישית כי pytest-asyncio 0.23+
# מטפל בזה אוטומטית עם asyncio_mode=auto ו-asyncio_default_fixture_loop_scope=function


@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine (foreign keys enforced)"""
    engine = build_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
async def session_factory(async_engine) -> async_sessionmaker:
    return async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )


@pytest.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async with session_factory() as session:
        yield session
        await session.rollback()


# ============================================================================
# Provider API (MockTransport)
# ============================================================================

async def _no_sleep(_: float) -> None:
    return None


def make_provider_client(
    handler: Callable[[httpx.Request], httpx.Response] | None = None,
    *,
    api_key: str = "provider-test-key",
    location_id: str | None = None,
    max_retries: int = 2,
) -> ProviderClient:
    """ProviderClient אמיתי מעל MockTransport, בלי השהיות backoff."""
    if handler is None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(404, json={"message": "not found"})

    policy = RetryPolicy(
        timeout_seconds=5.0,
        max_retries=max_retries,
        base_delay_seconds=0.0,
        max_delay_seconds=0.0,
        jitter_seconds=0.0,
    )
    http = RetryableHttpClient(
        httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        policy,
        sleep=_no_sleep,
    )
    tenant = TenantContext(
        base_url=TEST_PROVIDER_BASE_URL,
        api_key=api_key,
        api_version="2021-07-28",
        location_id=location_id,
    )
    return ProviderClient(http, tenant)


@pytest.fixture
def provider_client() -> ProviderClient:
    """Provider ללא API key - מצב webhook-only (ברירת מחדל לבדיקות)"""
    return make_provider_client(api_key="")


# ============================================================================
# Notification sink
# ============================================================================

class FakeNotifier:
    """תחליף ל-TelegramNotifier - אוסף את ההודעות במקום לשלוח"""

    def __init__(self) -> None:
        self.delivered: list[Notification] = []

    async def deliver(self, notification: Notification) -> bool:
        self.delivered.append(notification)
        return True

    async def send_message(self, chat_id: int, text: str) -> bool:
        self.delivered.append(Notification(user_id=chat_id, text=text, reason="direct"))
        return True


@pytest.fixture
def fake_notifier() -> FakeNotifier:
    return FakeNotifier()


# ============================================================================
# HTTP test client
# ============================================================================

@pytest.fixture(autouse=True)
def fresh_rate_limiter():
    """limiter חדש לכל בדיקה - דליים לא דולפים בין בדיקות"""
    limiter = FixedWindowRateLimiter(max_requests=1000, window_seconds=60)
    previous = getattr(app.state, "rate_limiter", None)
    app.state.rate_limiter = limiter
    yield limiter
    app.state.rate_limiter = previous


@pytest.fixture(scope="function")
async def test_client(db_session: AsyncSession, provider_client, fake_notifier):
    """Create test client with database, provider and notifier overrides"""
    from httpx import AsyncClient, ASGITransport

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_provider_client] = lambda: provider_client
    app.dependency_overrides[get_notifier] = lambda: fake_notifier

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


def use_provider(client: ProviderClient) -> None:
    """החלפת ה-provider של האפליקציה בתוך בדיקה"""
    app.dependency_overrides[get_provider_client] = lambda: client


# ============================================================================
# Settings
# ============================================================================

@pytest.fixture
def payments_enabled():
    """תשלומים פעילים עם סוד חתימה ו-WEBHOOK_TOKEN"""
    with patch.object(settings, "ENABLE_PAYMENTS", True), \
         patch.object(settings, "PROVIDER_WEBHOOK_SECRET", TEST_WEBHOOK_SECRET), \
         patch.object(settings, "WEBHOOK_TOKEN", TEST_WEBHOOK_TOKEN), \
         patch.object(settings, "PROVIDER_API_KEY", "provider-test-key"):
        yield settings


@pytest.fixture
def admin_api_key():
    with patch.object(settings, "ADMIN_API_KEY", "admin-test-key"):
        yield {"X-Admin-API-Key": "admin-test-key"}


# ============================================================================
# Webhook helpers
# ============================================================================

def encode_payload(payload) -> bytes:
    return json.dumps(payload, separators=(",", ":")).encode("utf-8")


async def post_signed_webhook(
    client: httpx.AsyncClient,
    payload=None,
    *,
    raw: bytes | None = None,
    secret: str = TEST_WEBHOOK_SECRET,
    params: dict | None = None,
    headers: dict | None = None,
) -> httpx.Response:
    body = raw if raw is not None else encode_payload(payload)
    request_headers = {
        "Content-Type": "application/json",
        settings.WEBHOOK_SIGNATURE_HEADER: sign_hex(body, secret),
        **(headers or {}),
    }
    return await client.post(
        "/api/webhooks/provider", content=body, headers=request_headers, params=params
    )


# ============================================================================
# Test Data Factories
# ============================================================================

@pytest.fixture
def user_factory(db_session: AsyncSession):
    """Factory for creating entitlement rows"""
    async def _create_user(
        user_id: int = 111,
        state: SubscriptionState = SubscriptionState.NOT_SUBSCRIBED,
        external_contact_id: str | None = None,
        last_event_at: int | None = None,
        last_resync_at=None,
    ) -> UserState:
        user = UserState(
            user_id=user_id,
            state=state,
            external_contact_id=external_contact_id,
            last_event_at=last_event_at,
            last_resync_at=last_resync_at,
        )
        db_session.add(user)
        await db_session.commit()
        await db_session.refresh(user)
        return user

    return _create_user


# ============================================================================
# Circuit Breaker Reset
# ============================================================================

@pytest.fixture(autouse=True)
def reset_circuit_breakers():
    """Reset circuit breakers between tests"""
    from app.core.circuit_breaker import CircuitBreaker
    CircuitBreaker.reset_all()
    yield
    CircuitBreaker.reset_all()


# ============================================================================
# Helper fixtures
# ============================================================================

@pytest.fixture
def provider_factory():
    """factory ל-ProviderClient מעל MockTransport"""
    return make_provider_client


@pytest.fixture
def install_provider():
    """החלפת ה-provider של האפליקציה בתוך בדיקה"""
    return use_provider


@pytest.fixture
def signed_webhook(test_client):
    """שליחת webhook חתום (hex) ל-/api/webhooks/provider"""
    async def _post(payload=None, **kwargs) -> httpx.Response:
        return await post_signed_webhook(test_client, payload, **kwargs)

    return _post
