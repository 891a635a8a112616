"""
Route aggregator.

Webhook and OAuth routers carry their own prefixes because platforms are
configured with those exact URLs. Health is exported separately for
main.py to mount at root.
Version: 1.0.0
"""
from fastapi import APIRouter

from platform_bridge.routes.health import router as health_router
from platform_bridge.routes.oauth import router as oauth_router
from platform_bridge.routes.webhooks import router as webhooks_router

api_router = APIRouter()

api_router.include_router(webhooks_router)
api_router.include_router(oauth_router)

__all__ = ["api_router", "health_router"]
