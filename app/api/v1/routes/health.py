"""
Health Routes
Liveness, readiness (Supabase reachable) and service info
"""
import asyncio
import logging
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from supabase import Client

from app.core.config import settings
from app.core.dependencies import get_supabase
from app.models.schemas.sync import Provider

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    return {"status": "healthy", "environment": settings.environment}


@router.get("/health/ready")
async def readiness_check(supabase: Client = Depends(get_supabase)):
    """Ready when the sync_jobs table answers a one-row read."""
    try:
        await asyncio.to_thread(
            lambda: supabase.table("sync_jobs").select("id").limit(1).execute()
        )
    except Exception as e:
        logger.warning(f"Readiness check failed: {e}")
        return JSONResponse(status_code=503, content={"status": "unavailable", "detail": str(e)})
    return {"status": "ready"}


@router.get("/")
async def root():
    return {
        "name": "Communication Sync API",
        "version": "1.0.0",
        "providers": [provider.value for provider in Provider],
        "endpoints": {
            "health": "/health",
            "ready": "/health/ready",
            "sync": "/api/v1/sync/{provider}",
            "test_connection": "/api/v1/sync/{provider}/test",
            "job_status": "/api/v1/sync/jobs/{job_id}"
        }
    }
