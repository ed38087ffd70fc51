"""
Custom Exception Hierarchy

Provides structured exceptions for consistent error handling across the application.
"""
from typing import Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for API responses"""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"

    # Webhook ingestion errors (2xxx)
    WEBHOOK_AUTH_FAILED = "ERR_2001"
    WEBHOOK_MALFORMED = "ERR_2002"

    # User / entitlement errors (3xxx)
    USER_NOT_FOUND = "ERR_3001"

    # External service errors (5xxx)
    TELEGRAM_ERROR = "ERR_5001"
    PROVIDER_ERROR = "ERR_5002"
    EXTERNAL_SERVICE_UNAVAILABLE = "ERR_5003"
    EXTERNAL_SERVICE_TIMEOUT = "ERR_5004"
    REQUEST_CANCELLED = "ERR_5005"


class AppException(Exception):
    """Base exception for all application errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        status_code: int = 500,
        details: dict[str, Any] | None = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API response"""
        return {
            "error": {
                "code": self.error_code.value,
                "message": self.message,
                "details": self.details
            }
        }


class WebhookAuthError(AppException):
    """Raised when an inbound webhook fails signature/token authentication"""

    def __init__(self, reason: str):
        super().__init__(
            message="Webhook authentication failed",
            error_code=ErrorCode.WEBHOOK_AUTH_FAILED,
            status_code=401,
            details={"reason": reason}
        )
        self.reason = reason


class MalformedWebhookError(AppException):
    """Raised when an inbound webhook body cannot be parsed"""

    def __init__(self, message: str):
        super().__init__(
            message=message,
            error_code=ErrorCode.WEBHOOK_MALFORMED,
            status_code=400,
        )


class UserNotFoundError(AppException):
    """Raised when an entitlement record does not exist"""

    def __init__(self, user_id: int):
        super().__init__(
            message=f"User not found: {user_id}",
            error_code=ErrorCode.USER_NOT_FOUND,
            status_code=404,
            details={"user_id": user_id}
        )


class ExternalServiceException(AppException):
    """Base exception for external service errors"""

    def __init__(
        self,
        service_name: str,
        message: str,
        error_code: ErrorCode = ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=503,
            details=details
        )
        self.details["service"] = service_name


class TelegramError(ExternalServiceException):
    """Raised when Telegram API fails"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            service_name="telegram",
            message=f"Telegram API error: {message}",
            error_code=ErrorCode.TELEGRAM_ERROR,
            details=details
        )

    @classmethod
    def from_response(
        cls,
        operation: str,
        response: Any,
        *,
        max_response_chars: int = 500
    ) -> "TelegramError":
        status_code = getattr(response, "status_code", None)
        response_text = getattr(response, "text", "") or ""
        return cls(
            message=f"{operation} returned status {status_code}",
            details={
                "operation": operation,
                "status_code": status_code,
                "response_text": response_text[:max_response_chars],
            },
        )


class ProviderError(ExternalServiceException):
    """Raised when the billing/CRM provider API is unreachable after retries"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            service_name="provider",
            message=f"Provider API error: {message}",
            error_code=ErrorCode.PROVIDER_ERROR,
            details=details
        )


class ServiceTimeoutError(ExternalServiceException):
    """Raised when a single outbound attempt exceeds its deadline"""

    def __init__(self, service_name: str, timeout_seconds: float):
        super().__init__(
            service_name=service_name,
            message=f"{service_name} request timed out after {timeout_seconds}s",
            error_code=ErrorCode.EXTERNAL_SERVICE_TIMEOUT,
            details={"timeout_seconds": timeout_seconds}
        )


class RequestCancelledError(ExternalServiceException):
    """Raised when the caller's cancellation signal aborts an outbound request"""

    def __init__(self, service_name: str):
        super().__init__(
            service_name=service_name,
            message=f"{service_name} request cancelled by caller",
            error_code=ErrorCode.REQUEST_CANCELLED,
        )


class CircuitBreakerOpenError(ExternalServiceException):
    """Raised when circuit breaker is open"""

    def __init__(self, service_name: str, retry_after_seconds: float):
        super().__init__(
            service_name=service_name,
            message=f"{service_name} is temporarily unavailable (circuit breaker open)",
            error_code=ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
            details={"retry_after_seconds": retry_after_seconds}
        )
