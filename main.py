"""
Communication Sync API
======================

Entry point for the HTTP surface of the sync service. Runs Gmail, Office 365
and Teams syncs inline or hands them to the Dramatiq worker (worker.py).

Layout:
- app/core/: settings, shared clients, API key check, retry policies
- app/middleware/: sync error mapping, request logging, rate limits
- app/models/schemas/: canonical message, run summary, API bodies
- app/services/sync/: providers, normalizer, scheduler, orchestrator, storage
- app/services/jobs/: broker and actors
- app/api/v1/routes/: health + sync endpoints
"""
import sys
import logging
import traceback
from contextlib import asynccontextmanager
from fastapi import FastAPI

try:
    from app.core.config import settings
    from app.core.dependencies import initialize_clients, shutdown_clients
    from app.middleware.error_handler import ErrorHandlerMiddleware
    from app.middleware.logging import RequestLoggingMiddleware
    from app.middleware.rate_limit import limiter
    from app.models.schemas.sync import Provider
    from app.api.v1.routes.health import router as health_router
    from app.api.v1.routes.sync import router as sync_router
except Exception as e:
    # Settings validation errors land here (missing SUPABASE_URL etc.)
    print(f"🚨 Sync API failed to import: {e}", file=sys.stderr)
    print(traceback.format_exc(), file=sys.stderr)
    sys.exit(1)

logging.basicConfig(
    level=logging.INFO if settings.environment == "production" else logging.DEBUG,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
# One line per provider request is too much at INFO during a full sync
for noisy in ("httpx", "httpcore", "hpack"):
    logging.getLogger(noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


def init_sentry() -> None:
    if not settings.sentry_dsn:
        logger.info("ℹ️  Sentry not configured (SENTRY_DSN not set)")
        return
    try:
        import sentry_sdk
        from sentry_sdk.integrations.fastapi import FastApiIntegration
        from sentry_sdk.integrations.logging import LoggingIntegration

        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            environment=settings.environment,
            traces_sample_rate=0.1,
            integrations=[
                FastApiIntegration(),
                LoggingIntegration(level=logging.INFO, event_level=logging.ERROR)
            ]
        )
        sentry_sdk.set_tag("service", "sync-api")
        logger.info("✅ Sentry error tracking initialized")
    except Exception as e:
        logger.warning(f"⚠️  Failed to initialize Sentry: {e}")


def log_provider_status() -> None:
    """Which providers have a Nango connection configured."""
    connections = {
        Provider.GMAIL: settings.nango_connection_id_gmail,
        Provider.OFFICE365: settings.nango_connection_id_office365,
        Provider.TEAMS: settings.nango_connection_id_teams,
    }
    for provider, connection_id in connections.items():
        state = "✅ connection configured" if connection_id and settings.nango_secret else "❌ not configured"
        logger.info(f"   {provider.value}: {state}")


init_sentry()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("=" * 80)
    logger.info(f"Communication Sync API ({settings.environment}) on port {settings.port}")
    log_provider_status()
    logger.info(
        f"   window={settings.sync_window_days}d, budget={settings.sync_max_items_per_principal}/principal, "
        f"batch={settings.sync_principals_per_batch}, pacing={settings.sync_batch_delay_seconds}s"
    )
    if not settings.api_key:
        logger.warning("⚠️  API_KEY not set - sync endpoints are unauthenticated")
    logger.info("=" * 80)

    await initialize_clients()
    yield

    logger.info("Shutting down Communication Sync API...")
    await shutdown_clients()
    logger.info("✅ Shutdown complete")


app = FastAPI(
    title="Communication Sync API",
    description="Multi-provider communication sync (Gmail, Office 365, Teams)",
    version="1.0.0",
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
    lifespan=lifespan
)

# Rate limits (slowapi reads the limiter from app.state)
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Added last = outermost: sync errors raised anywhere below become JSON
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(ErrorHandlerMiddleware)

app.include_router(health_router)
app.include_router(sync_router)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=settings.port,
        reload=settings.debug,
        log_level="info"
    )
