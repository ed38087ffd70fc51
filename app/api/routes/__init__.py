"""
API Routes
"""
from fastapi import APIRouter

from app.api.routes.users import router as users_router
from app.api.webhooks.provider import router as provider_webhook_router

router = APIRouter()

router.include_router(users_router, prefix="/users", tags=["Users"])
router.include_router(provider_webhook_router, prefix="/webhooks", tags=["Webhooks"])
