"""
FastAPI Middleware

Provides request/response middleware for:
- Correlation ID injection
- Request logging (credentials in query params are masked)
- Global error handling
- Security headers (HSTS, CSP upgrade-insecure-requests)
- Rate limiting for webhook endpoints
"""
import time
from typing import Callable
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from app.core.logging import (
    get_logger,
    redact,
    set_correlation_id,
    get_correlation_id
)
from app.core.exceptions import (
    AppException,
    ErrorCode,
    MalformedWebhookError,
    WebhookAuthError,
)
from app.core.rate_limit import FixedWindowRateLimiter

logger = get_logger(__name__)


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Middleware to add correlation ID to requests"""

    async def dispatch(
        self,
        request: Request,
        call_next: Callable
    ) -> Response:
        # Get correlation ID from header or generate new one
        correlation_id = request.headers.get("X-Correlation-ID")
        correlation_id = set_correlation_id(correlation_id)

        request.state.correlation_id = correlation_id

        response = await call_next(request)

        response.headers["X-Correlation-ID"] = correlation_id

        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Middleware to log requests and responses (?token= is never logged)"""

    async def dispatch(
        self,
        request: Request,
        call_next: Callable
    ) -> Response:
        start_time = time.time()
        path = request.url.path

        logger.info(
            f"Request started: {request.method} {path}",
            extra_data={
                "method": request.method,
                "path": path,
                "query_params": redact(dict(request.query_params)),
                "client_host": request.client.host if request.client else None,
            }
        )

        try:
            response = await call_next(request)
            duration = time.time() - start_time

            log_level = "info" if response.status_code < 400 else "warning"
            getattr(logger, log_level)(
                f"Request completed: {request.method} {path}",
                extra_data={
                    "method": request.method,
                    "path": path,
                    "status_code": response.status_code,
                    "duration_seconds": round(duration, 4),
                }
            )

            return response
        except Exception as e:
            duration = time.time() - start_time
            logger.error(
                f"Request failed: {request.method} {path}",
                extra_data={
                    "method": request.method,
                    "path": path,
                    "duration_seconds": round(duration, 4),
                    "error": str(e),
                },
                exc_info=True
            )
            raise


async def app_exception_handler(
    request: Request,
    exc: AppException
) -> JSONResponse:
    """Handle application exceptions"""
    logger.warning(
        f"Application exception: {exc.error_code.value}",
        extra_data={
            "error_code": exc.error_code.value,
            "message": exc.message,
            "details": exc.details,
            "path": request.url.path,
        }
    )

    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict(),
        headers={"X-Correlation-ID": get_correlation_id()}
    )


async def webhook_exception_handler(
    request: Request,
    exc: AppException
) -> JSONResponse:
    """Webhook failures answer with the provider-facing {ok: false} shape"""
    logger.warning(
        f"Webhook rejected: {exc.error_code.value}",
        extra_data={
            "error_code": exc.error_code.value,
            "message": exc.message,
            "path": request.url.path,
        }
    )

    content: dict = {"ok": False}
    if isinstance(exc, MalformedWebhookError):
        content["error"] = exc.message

    return JSONResponse(
        status_code=exc.status_code,
        content=content,
        headers={"X-Correlation-ID": get_correlation_id()}
    )


async def generic_exception_handler(
    request: Request,
    exc: Exception
) -> JSONResponse:
    """Handle unexpected exceptions"""
    logger.error(
        f"Unhandled exception: {type(exc).__name__}",
        extra_data={
            "exception_type": type(exc).__name__,
            "message": str(exc),
            "path": request.url.path,
        },
        exc_info=True
    )

    return JSONResponse(
        status_code=500,
        content={
            "error": {
                "code": ErrorCode.INTERNAL_ERROR.value,
                "message": "An unexpected error occurred",
                "details": {}
            }
        },
        headers={"X-Correlation-ID": get_correlation_id()}
    )


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """
    Middleware להוספת כותרות אבטחה לכל תשובה.

    - X-Content-Type-Options: nosniff תמיד.
    - Content-Security-Policy / HSTS רק מחוץ ל-DEBUG, כדי לא לחסום פיתוח מקומי ב-HTTP.
    """

    def __init__(self, app: FastAPI, *, debug: bool = False) -> None:
        super().__init__(app)
        self._debug = debug

    async def dispatch(
        self,
        request: Request,
        call_next: Callable,
    ) -> Response:
        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"

        if not self._debug:
            response.headers["Content-Security-Policy"] = "upgrade-insecure-requests"
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )

        return response


class WebhookRateLimitMiddleware(BaseHTTPMiddleware):
    """
    Rate limiting לנקודות webhook - חלון קבוע לפי IP.

    ה-limiter נוצר פעם אחת ב-setup_middleware ונשמר על app.state.rate_limiter;
    ה-middleware קורא אותו משם בכל בקשה, כך שטסטים יכולים להחליף אותו.

    ממוקם בתוך CorrelationIdMiddleware ב-stack, כך שגם ל-429 יש correlation ID.
    """

    def __init__(
        self,
        app: FastAPI,
        *,
        limiter: FixedWindowRateLimiter,
    ) -> None:
        super().__init__(app)
        self._limiter = limiter

    async def dispatch(
        self,
        request: Request,
        call_next: Callable,
    ) -> Response:
        path = request.url.path
        if "/webhook" not in path:
            return await call_next(request)

        client_ip = request.client.host if request.client else "unknown"
        limiter = getattr(request.app.state, "rate_limiter", None)
        if limiter is None:
            limiter = self._limiter
        decision = limiter.check(f"ip:{client_ip}")

        if not decision.allowed:
            logger.warning(
                "Rate limit exceeded for webhook",
                extra_data={
                    "client_ip": client_ip,
                    "path": path,
                    "limit": limiter.max_requests,
                    "window_seconds": limiter.window_seconds,
                    "retry_after_seconds": decision.retry_after_seconds,
                },
            )
            return JSONResponse(
                status_code=429,
                content={"ok": False, "error": "rate_limited"},
                headers={
                    "Retry-After": str(decision.retry_after_seconds),
                    "X-Correlation-ID": get_correlation_id(),
                },
            )

        return await call_next(request)


def build_rate_limiter() -> FixedWindowRateLimiter:
    from app.core.config import settings

    return FixedWindowRateLimiter(
        max_requests=settings.WEBHOOK_RATE_LIMIT_MAX_REQUESTS,
        window_seconds=settings.WEBHOOK_RATE_LIMIT_WINDOW_SECONDS,
        max_buckets=settings.WEBHOOK_RATE_LIMIT_MAX_BUCKETS,
        prune_interval_seconds=settings.WEBHOOK_RATE_LIMIT_PRUNE_INTERVAL_SECONDS,
    )


def setup_middleware(
    app: FastAPI,
    rate_limiter: FixedWindowRateLimiter | None = None,
) -> None:
    """Setup all middleware for the application"""
    from app.core.config import settings

    limiter = rate_limiter if rate_limiter is not None else build_rate_limiter()
    app.state.rate_limiter = limiter

    # ב-Starlette, ה-middleware האחרון שנוסף הוא ה-outermost.
    # סדר עיבוד בקשה: SecurityHeaders -> CorrelationId -> RequestLogging -> RateLimit -> app
    app.add_middleware(WebhookRateLimitMiddleware, limiter=limiter)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(CorrelationIdMiddleware)
    app.add_middleware(SecurityHeadersMiddleware, debug=settings.DEBUG)


def setup_exception_handlers(app: FastAPI) -> None:
    """Setup exception handlers"""
    app.add_exception_handler(WebhookAuthError, webhook_exception_handler)
    app.add_exception_handler(MalformedWebhookError, webhook_exception_handler)
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
