"""
Security and Authentication
API key authentication for the sync API

SECURITY FEATURES:
- Bearer API key (Authorization: Bearer <API_KEY>) when API_KEY is set
- Timing-safe comparison
- Open access when API_KEY is unset (local development only; warned at startup)
"""
import hmac
import logging
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.core.config import settings

logger = logging.getLogger(__name__)

# Security scheme (auto_error off so an unset API_KEY leaves routes open)
bearer_scheme = HTTPBearer(auto_error=False)


async def verify_api_key(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme)
) -> bool:
    """
    Verify the bearer API key.

    Uses timing-safe comparison to prevent timing attacks.

    Returns:
        True if the key is valid or no key is configured

    Raises:
        HTTPException if the key is missing or invalid
    """
    if not settings.api_key:
        return True

    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="API key required (Authorization: Bearer <key>)"
        )

    # Timing-safe comparison (prevents timing attacks)
    if not hmac.compare_digest(credentials.credentials, settings.api_key):
        logger.warning(f"Invalid API key attempt: {credentials.credentials[:4]}...")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key"
        )

    return True
