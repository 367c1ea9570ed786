"""
Dramatiq Broker Configuration
Redis in deployed environments, in-memory stub when REDIS_URL is unset
"""
import logging

import dramatiq
from dramatiq.brokers.redis import RedisBroker
from dramatiq.brokers.stub import StubBroker
from dramatiq.middleware import (
    AgeLimit, Callbacks, Pipelines,
    Retries, ShutdownNotifications
)

from app.core.config import settings

logger = logging.getLogger(__name__)


def _middleware():
    # TimeLimit intentionally excluded - Python 3.13 incompatibility
    return [
        AgeLimit(),
        Retries(max_retries=3),
        Callbacks(),
        Pipelines(),
        ShutdownNotifications(),
    ]


if settings.redis_url:
    broker = RedisBroker(url=settings.redis_url, middleware=_middleware())
    logger.info(f"✅ Redis broker initialized: {settings.redis_url[:20]}...")
else:
    logger.warning("⚠️  REDIS_URL not set - using in-memory stub broker (jobs are not processed out of process)")
    broker = StubBroker(middleware=_middleware())

dramatiq.set_broker(broker)
