"""Health check routes"""

import time

from fastapi import APIRouter

from volume_radar import __version__
from volume_radar.config import settings

router = APIRouter(tags=["health"])


@router.get("/health")
async def health():
    """Service health, including the configured provider order"""
    return {
        "success": True,
        "data": {
            "status": "ok",
            "version": __version__,
            "timestamp": int(time.time()),
            "service": "Volume Radar",
            "providers": settings.provider_names,
            "twelve_data_enabled": bool(settings.TWELVE_DATA_API_KEY),
        },
        "message": "service running",
    }


@router.get("/healthz")
async def healthz():
    """Kubernetes liveness probe"""
    return {"status": "ok"}


@router.get("/readyz")
async def readyz():
    """Kubernetes readiness probe"""
    return {"ready": True}
