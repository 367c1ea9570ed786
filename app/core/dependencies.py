"""
Shared clients and FastAPI dependencies.

The API process holds one Supabase client (service role: communications,
employees, sync_jobs) and one pooled httpx client used for every provider,
Nango and risk-scoring call. Both are created in the lifespan hook and handed
to routes through Depends(); the sync orchestrator is assembled per request
from them.
"""
import logging

import httpx
from supabase import create_client, Client

from app.core.config import settings

logger = logging.getLogger(__name__)

_supabase_client: Client = None
_http_client: httpx.AsyncClient = None

# Inline syncs fan out to sync_principals_per_batch principals at once
HTTP_TIMEOUT = httpx.Timeout(30.0)
HTTP_LIMITS = httpx.Limits(max_keepalive_connections=20, max_connections=50)


async def initialize_clients():
    """Create the process-wide clients. A Supabase failure aborts startup."""
    global _supabase_client, _http_client

    try:
        _supabase_client = create_client(settings.supabase_url, settings.supabase_service_key)
    except Exception as e:
        logger.error(f"❌ Supabase client could not be created: {e}")
        raise
    logger.info("✅ Supabase client ready")

    _http_client = httpx.AsyncClient(timeout=HTTP_TIMEOUT, limits=HTTP_LIMITS)
    logger.info("✅ Provider HTTP client ready")


async def shutdown_clients():
    global _supabase_client, _http_client

    if _http_client is not None:
        try:
            await _http_client.aclose()
        except Exception as e:
            logger.error(f"Error closing provider HTTP client: {e}")
    _http_client = None
    _supabase_client = None
    logger.info("✅ Shared clients released")


def get_supabase() -> Client:
    """
    Supabase client (service role) for route handlers.

    Usage:
        @router.get("/sync/jobs/{job_id}")
        async def job_status(job_id: str, supabase: Client = Depends(get_supabase)):
            ...
    """
    if _supabase_client is None:
        raise RuntimeError("Supabase client not initialized. Call initialize_clients() first.")
    return _supabase_client


def get_http_client() -> httpx.AsyncClient:
    if _http_client is None:
        raise RuntimeError("HTTP client not initialized. Call initialize_clients() first.")
    return _http_client


def get_orchestrator():
    """SyncOrchestrator bound to the shared clients."""
    from app.services.sync.orchestration.message_sync import build_sync_orchestrator

    return build_sync_orchestrator(get_http_client(), get_supabase())
