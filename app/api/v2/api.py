# Fichier: badgelife/backend/app/api/v2/api.py
from fastapi import APIRouter
from .endpoints import (
    badge_router,
    notification_ws,
)

api_router = APIRouter()

api_router.include_router(badge_router.router, prefix="/badges", tags=["Badges"])
api_router.include_router(notification_ws.router, tags=["Notifications"])
