"""
Dramatiq worker entry point.

    dramatiq worker -p 4 -t 4

Runs queued provider syncs (sync_provider_task) and records compliance
analysis requests (analyze_employee_task). Needs the same environment as the
API plus REDIS_URL; without it the broker is a StubBroker and nothing arrives.
"""
import logging

from app.core.config import settings

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
for noisy in ("httpx", "httpcore"):
    logging.getLogger(noisy).setLevel(logging.WARNING)
logger = logging.getLogger("sync.worker")


def _init_sentry() -> None:
    if not settings.sentry_dsn:
        return
    try:
        import sentry_sdk
        from sentry_sdk.integrations.dramatiq import DramatiqIntegration
        from sentry_sdk.integrations.logging import LoggingIntegration

        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            environment=settings.environment,
            traces_sample_rate=0.1,
            integrations=[
                DramatiqIntegration(),
                LoggingIntegration(level=logging.INFO, event_level=logging.ERROR)
            ]
        )
        sentry_sdk.set_tag("service", "sync-worker")
    except Exception as e:
        logger.warning(f"⚠️  Sentry disabled in worker: {e}")


_init_sentry()

if not settings.redis_url:
    logger.warning("⚠️  REDIS_URL not set - the worker has no queue to consume")

# Importing the actors registers them on the broker the CLI picks up
from app.services.jobs.broker import broker  # noqa: E402,F401
from app.services.jobs.tasks import analyze_employee_task, sync_provider_task  # noqa: E402

logger.info(
    f"✅ Sync worker ready: {sync_provider_task.actor_name} ({sync_provider_task.queue_name}), "
    f"{analyze_employee_task.actor_name} ({analyze_employee_task.queue_name})"
)
