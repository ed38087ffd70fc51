"""
Dependencies לשירותים חיצוניים שנוצרים פעם אחת ב-startup ונשמרים על app.state.

טסטים מחליפים אותם דרך app.dependency_overrides.
"""
from fastapi import Request

from app.domain.services.notification_service import TelegramNotifier
from app.domain.services.provider_client import ProviderClient


def get_provider_client(request: Request) -> ProviderClient:
    return request.app.state.provider_client


def get_notifier(request: Request) -> TelegramNotifier:
    return request.app.state.notifier
