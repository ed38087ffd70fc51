"""
Entitlement Sync - Main FastAPI Application
"""
from fastapi import FastAPI
from starlette.responses import JSONResponse

from app.core.config import settings
from app.core.logging import setup_logging, get_logger
from app.core.middleware import setup_middleware, setup_exception_handlers
from app.api.routes import router as api_router
from app.db.database import engine, Base
from app.domain.services.notification_service import TelegramNotifier
from app.domain.services.provider_client import build_provider_client

# Setup logging before anything else
setup_logging(
    level="DEBUG" if settings.DEBUG else "INFO",
    json_format=not settings.DEBUG
)

logger = get_logger(__name__)


_OPENAPI_TAGS = [
    {
        "name": "Webhooks",
        "description": "קבלת אירועי מנוי ותשלום מספק החיוב (חתימה / token, idempotent).",
    },
    {
        "name": "Users",
        "description": "ניהול זכאות: מצב משתמש, checkout tokens, resync יזום. דורש X-Admin-API-Key.",
    },
    {"name": "Health", "description": "Liveness / readiness probes."},
]


app = FastAPI(
    title=settings.APP_NAME,
    version="1.0.0",
    description=(
        "סנכרון זכאות משתמשי צ'אט מול אירועי מנוי של ספק חיוב/CRM. "
        "התיעוד מבוסס OpenAPI ומוצג ב-Swagger UI וב-ReDoc."
    ),
    openapi_tags=_OPENAPI_TAGS,
)

# Setup middleware (correlation ID, request logging, webhook rate limit)
setup_middleware(app)
setup_exception_handlers(app)

app.include_router(api_router, prefix="/api")


@app.on_event("startup")
async def startup() -> None:
    """Initialize database tables and shared clients on startup"""
    logger.info("Starting application", extra_data={"app_name": settings.APP_NAME})
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialized")

    # create_all לא מוסיף עמודות/אינדקסים לטבלאות קיימות.
    # המיגרציות רצות רק על PostgreSQL; ב-SQLite (בדיקות) create_all מספיק.
    if engine.dialect.name == "postgresql":
        from app.db.migrations import run_all_migrations

        async with engine.begin() as conn:
            await run_all_migrations(conn)
        logger.info("Auto-migrations completed")

    provider_client = build_provider_client(settings)
    app.state.provider_client = provider_client
    app.state.notifier = TelegramNotifier()

    logger.info(
        "Provider client ready",
        extra_data={
            "payments_enabled": settings.ENABLE_PAYMENTS,
            "provider_api": "configured" if provider_client.configured else "webhook_only",
            "has_location_id": bool(provider_client.tenant.location_id),
        },
    )


@app.on_event("shutdown")
async def shutdown() -> None:
    """Cleanup on shutdown"""
    logger.info("Shutting down application")
    provider_client = getattr(app.state, "provider_client", None)
    if provider_client is not None:
        await provider_client.http.aclose()
    # סגירת חיבורי מסד הנתונים למניעת connection pool exhaustion
    await engine.dispose()
    logger.info("Database connections disposed")


@app.get(
    "/health",
    summary="בדיקת חיוּת (Liveness Probe)",
    description=(
        "בדיקה קלה שהתהליך חי ומגיב. "
        "לא בודק תלויות חיצוניות - כדי למנוע restart מיותר בגלל כשלון DB/Redis."
    ),
    tags=["Health"],
)
async def health_check() -> dict[str, str]:
    """Liveness probe - התהליך חי ומגיב."""
    return {"status": "healthy"}


@app.get(
    "/health/ready",
    summary="בדיקת מוכנות (Readiness Probe)",
    description=(
        "בדיקת התלויות: DB ו-Celery broker. "
        "מחזיר status=healthy אם הכל תקין, או status=degraded (503) עם פירוט."
    ),
    responses={
        200: {
            "description": "כל התלויות תקינות",
            "content": {
                "application/json": {
                    "example": {
                        "status": "healthy",
                        "db": "ok",
                        "broker": "ok",
                        "provider_api": "configured",
                    }
                }
            },
        },
        503: {"description": "לפחות תלות אחת לא זמינה"},
    },
    tags=["Health"],
)
async def readiness_check() -> JSONResponse:
    """Readiness probe - בדיקת התלויות החיצוניות."""
    from app.domain.services.health_service import check_readiness

    result = await check_readiness()
    status_code = 200 if result["status"] == "healthy" else 503
    return JSONResponse(content=result, status_code=status_code)
