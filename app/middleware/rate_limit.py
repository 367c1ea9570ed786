"""
Rate Limiting Middleware
Prevents abuse of the sync API using slowapi

RATE LIMITS:
- Global: 100 requests/minute per client (default)
- Sync runs: 10/hour per client (each run fans out to provider APIs)
- Connection tests: 30/hour per client

Clients are keyed by API key when one is presented, otherwise by IP.
"""
import hashlib
import logging
from slowapi import Limiter
from slowapi.util import get_remote_address
from fastapi import Request

from app.core.config import settings

logger = logging.getLogger(__name__)

SYNC_RATE_LIMIT = "10/hour"
TEST_RATE_LIMIT = "30/hour"


def rate_limit_key_func(request: Request) -> str:
    """
    Determine rate limit key.

    STRATEGY:
    - Bearer key present: hashed key (callers can't bypass via IP switching)
    - Otherwise: IP address
    """
    authorization = request.headers.get("authorization", "")
    if authorization.lower().startswith("bearer "):
        digest = hashlib.sha256(authorization[7:].encode()).hexdigest()[:16]
        return f"key:{digest}"

    ip = get_remote_address(request)
    logger.debug(f"Rate limit key: ip={ip}")
    return f"ip:{ip}"


# Initialize rate limiter with smart key function
limiter = Limiter(
    key_func=rate_limit_key_func,
    default_limits=["100/minute"],  # Global default for all endpoints
    storage_uri=settings.redis_url or "memory://",
)
