"""
Health check route.

Provides basic health check endpoint.
Version: 1.0.0
"""
from fastapi import APIRouter

from platform_bridge.adapters.registry import ADAPTERS

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    """Basic health check endpoint."""
    return {"status": "healthy"}


@router.get("/health/platforms")
async def platform_capabilities():
    """Declared capability set of every adapter."""
    return {
        platform.value: sorted(cap.value for cap in adapter.capabilities)
        for platform, adapter in ADAPTERS.items()
    }
