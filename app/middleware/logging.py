"""
Request Logging Middleware
Timing for every request; sync runs also log their provider and outcome
"""
import logging
import time
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)

# Load balancer health checks
QUIET_PATHS = {"/health"}
SYNC_PREFIX = "/api/v1/sync/"


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Inline sync runs hold the request open for the whole run, so durations on
    /api/v1/sync/{provider} are run durations and are logged in seconds.
    """

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        started = time.perf_counter()

        response = await call_next(request)

        elapsed = time.perf_counter() - started
        extra = {
            "method": request.method,
            "path": path,
            "status_code": response.status_code,
            "duration_ms": round(elapsed * 1000, 2),
        }

        if path in QUIET_PATHS:
            logger.debug(f"{request.method} {path} - {response.status_code}", extra=extra)
        elif path.startswith(SYNC_PREFIX) and request.method == "POST":
            provider = path[len(SYNC_PREFIX):].split("/", 1)[0]
            logger.info(
                f"🔁 {provider} sync request finished: {response.status_code} in {elapsed:.1f}s",
                extra=extra
            )
        else:
            logger.info(f"{request.method} {path} - {response.status_code} ({elapsed * 1000:.2f}ms)", extra=extra)

        return response
