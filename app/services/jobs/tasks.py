"""
Dramatiq Background Tasks
Long-running provider syncs and downstream compliance analysis requests
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import dramatiq
import httpx
from supabase import Client, create_client

from app.services.jobs.broker import broker  # noqa: F401  (broker must be set before actors are declared)
from app.services.sync.errors import AuthFailure, ConfigurationError

logger = logging.getLogger(__name__)

ANALYSIS_QUEUE_TABLE = "compliance_analysis_queue"
SYNC_JOBS_TABLE = "sync_jobs"


def get_sync_dependencies():
    """
    Create fresh instances of dependencies for background tasks.
    Dramatiq workers run in separate processes, so we can't share global clients.
    """
    from app.core.config import settings

    http_client = httpx.AsyncClient(
        timeout=httpx.Timeout(60.0),  # Longer timeout for background jobs
        limits=httpx.Limits(max_keepalive_connections=5, max_connections=20)
    )
    supabase = create_client(settings.supabase_url, settings.supabase_service_key)
    return http_client, supabase


async def _run_sync_with_cleanup(
    http_client: httpx.AsyncClient,
    supabase: Client,
    provider: str,
    options: Optional[Dict[str, Any]]
) -> Dict[str, Any]:
    """
    Async wrapper that runs a provider sync and closes the HTTP client in the same event loop.
    """
    from app.services.sync.orchestration.message_sync import build_sync_orchestrator, default_sync_options

    try:
        orchestrator = build_sync_orchestrator(http_client, supabase)
        summary = await orchestrator.run_sync(provider, default_sync_options(**(options or {})))
        return summary.model_dump(mode="json")
    finally:
        await http_client.aclose()


@dramatiq.actor(max_retries=3, throws=(AuthFailure, ConfigurationError))
def sync_provider_task(provider: str, job_id: str, options: Optional[Dict[str, Any]] = None):
    """
    Background job for one provider sync.

    Args:
        provider: gmail | office365 | teams
        job_id: sync_jobs row ID for status tracking
        options: SyncOptions overrides (unset keys fall back to settings)
    """
    logger.info(f"🚀 Starting {provider} sync job {job_id}")

    http_client, supabase = get_sync_dependencies()

    try:
        supabase.table(SYNC_JOBS_TABLE).update({
            "status": "running",
            "started_at": datetime.now(timezone.utc).isoformat()
        }).eq("id", job_id).execute()

        result = asyncio.run(_run_sync_with_cleanup(http_client, supabase, provider, options))

        supabase.table(SYNC_JOBS_TABLE).update({
            "status": "completed",
            "completed_at": datetime.now(timezone.utc).isoformat(),
            "result": result
        }).eq("id", job_id).execute()

        logger.info(
            f"✅ {provider} sync job {job_id} complete: "
            f"{result.get('processed_items', 0)} processed, {len(result.get('errors', []))} errors"
        )
        return result

    except Exception as e:
        logger.error(f"❌ {provider} sync job {job_id} failed: {e}")

        supabase.table(SYNC_JOBS_TABLE).update({
            "status": "failed",
            "completed_at": datetime.now(timezone.utc).isoformat(),
            "error_message": str(e)
        }).eq("id", job_id).execute()

        raise  # Re-raise for Dramatiq retry logic


@dramatiq.actor(queue_name="analysis", max_retries=3)
def analyze_employee_task(employee_id: str, reason: str):
    """
    Record a compliance analysis request for an employee.

    The analysis itself runs outside this service and drains
    compliance_analysis_queue.
    """
    from app.core.config import settings

    supabase = create_client(settings.supabase_url, settings.supabase_service_key)
    try:
        supabase.table(ANALYSIS_QUEUE_TABLE).insert({
            "employee_id": employee_id,
            "reason": reason,
            "status": "pending",
            "queued_at": datetime.now(timezone.utc).isoformat()
        }).execute()
        logger.info(f"📋 Queued compliance analysis for employee {employee_id} ({reason})")
    except Exception as e:
        logger.error(f"❌ Failed to queue analysis for employee {employee_id}: {e}", exc_info=True)
        raise  # Let Dramatiq handle retries
