"""
Sync Routes
Inline and background-job sync endpoints for Gmail, Office 365 and Teams
"""
import logging
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Request
from supabase import Client

from app.core.dependencies import get_orchestrator, get_supabase
from app.core.security import verify_api_key
from app.middleware.rate_limit import SYNC_RATE_LIMIT, TEST_RATE_LIMIT, limiter
from app.models.schemas.sync import ConnectionTestResult, Provider, SyncJobResponse, SyncRequest
from app.services.jobs.tasks import SYNC_JOBS_TABLE, sync_provider_task
from app.services.sync.orchestration.message_sync import SyncOrchestrator, default_sync_options

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/sync", tags=["sync"], dependencies=[Depends(verify_api_key)])


def parse_provider(provider: str) -> Provider:
    try:
        return Provider(provider.lower())
    except ValueError:
        raise HTTPException(
            status_code=404,
            detail=f"Unknown provider '{provider}'. Must be one of: {', '.join(p.value for p in Provider)}"
        )


@router.post("/{provider}", response_model=None)
@limiter.limit(SYNC_RATE_LIMIT)
async def trigger_sync(
    provider: str,
    request: Request,
    body: Optional[SyncRequest] = None,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
    supabase: Client = Depends(get_supabase)
):
    """
    Run a provider sync.

    Inline by default: returns the SyncRunSummary when the run finishes.
    With `background: true` a sync_jobs row is created, the run is queued on
    Dramatiq, and the job id is returned immediately.
    """
    selected = parse_provider(provider)
    body = body or SyncRequest()
    overrides = body.model_dump(exclude={"background"}, exclude_none=True)

    if body.background:
        logger.info(f"Enqueueing {selected.value} sync")
        try:
            job = supabase.table(SYNC_JOBS_TABLE).insert({
                "job_type": selected.value,
                "status": "queued",
                "options": overrides
            }).execute()
            job_id = str(job.data[0]["id"])

            sync_provider_task.send(selected.value, job_id, overrides)
        except Exception as e:
            logger.error(f"Error enqueueing {selected.value} sync: {e}")
            raise HTTPException(status_code=500, detail=str(e))

        logger.info(f"✅ {selected.value} sync job {job_id} queued")
        return SyncJobResponse(job_id=job_id, status="queued", provider=selected)

    options = default_sync_options(**overrides)
    logger.info(f"Running {selected.value} sync inline")
    return await orchestrator.run_sync(selected, options)


@router.post("/{provider}/test", response_model=ConnectionTestResult)
@limiter.limit(TEST_RATE_LIMIT)
async def test_provider_connection(
    provider: str,
    request: Request,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator)
):
    """Probe provider credentials; failures are reported in the body, not as errors."""
    selected = parse_provider(provider)
    return await orchestrator.test_connection(selected)


@router.get("/jobs/{job_id}")
async def get_job_status(
    job_id: str,
    supabase: Client = Depends(get_supabase)
):
    """
    The sync_jobs row for a background run: queued / running / completed / failed,
    with the SyncRunSummary under `result` once completed or `error_message`
    when the actor gave up.
    """
    try:
        result = supabase.table(SYNC_JOBS_TABLE).select("*").eq("id", job_id).limit(1).execute()
    except Exception as e:
        logger.error(f"❌ sync_jobs lookup failed for {job_id}: {e}")
        raise HTTPException(status_code=500, detail=str(e))

    if not result.data:
        raise HTTPException(status_code=404, detail="Job not found")

    return result.data[0]
