"""
Nango token provider
Supplies provider access tokens (Graph, Google) to the provider clients

Token issuance itself lives in Nango; this module only retrieves and caches
the current access token for a connection.
"""
import asyncio
import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol

import httpx

from app.core.config import settings
from app.services.sync.errors import AuthFailure, ConfigurationError

logger = logging.getLogger(__name__)

NANGO_BASE_URL = "https://api.nango.dev"

# Refresh a little before the provider-side expiry
_EXPIRY_MARGIN = timedelta(minutes=2)


class TokenProvider(Protocol):
    async def get_token(self, force_refresh: bool = False) -> str:
        ...


class StaticTokenProvider:
    """Fixed token (tests, local scripts)."""

    def __init__(self, token: str):
        self.token = token

    async def get_token(self, force_refresh: bool = False) -> str:
        return self.token


class NangoTokenProvider:
    """
    Access token for one Nango connection, cached until shortly before expiry.

    Args:
        http_client: Async HTTP client instance
        provider_key: Nango provider configuration key
        connection_id: Nango connection ID
        secret: Nango secret (defaults to settings.nango_secret)
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        provider_key: str,
        connection_id: Optional[str],
        secret: Optional[str] = None,
        base_url: str = NANGO_BASE_URL
    ):
        self.http_client = http_client
        self.provider_key = provider_key
        self.connection_id = connection_id
        self.secret = secret or settings.nango_secret
        self.base_url = base_url
        self._token: Optional[str] = None
        self._expires_at: Optional[datetime] = None
        self._lock = asyncio.Lock()

    def _is_fresh(self) -> bool:
        if not self._token:
            return False
        if self._expires_at is None:
            return True
        return datetime.now(timezone.utc) + _EXPIRY_MARGIN < self._expires_at

    async def get_token(self, force_refresh: bool = False) -> str:
        """
        Get the current access token for this connection.

        Raises:
            ConfigurationError: If the Nango secret or connection ID is missing
            AuthFailure: If Nango refuses the request or returns no token
        """
        if not self.secret or not self.connection_id:
            raise ConfigurationError(
                f"Nango secret / connection id not configured for {self.provider_key}"
            )

        async with self._lock:
            if not force_refresh and self._is_fresh():
                return self._token

            url = f"{self.base_url}/connection/{self.connection_id}"
            params = {"provider_config_key": self.provider_key}
            if force_refresh:
                params["force_refresh"] = "true"
            headers = {"Authorization": f"Bearer {self.secret}"}

            try:
                response = await self.http_client.get(url, headers=headers, params=params)
                response.raise_for_status()
                data = response.json()
            except httpx.HTTPStatusError as e:
                logger.error(f"Failed to get Nango token: {e.response.status_code} - {e.response.text[:200]}")
                raise AuthFailure(f"Nango token retrieval failed for {self.provider_key}: HTTP {e.response.status_code}") from e
            except (httpx.TransportError, json.JSONDecodeError) as e:
                logger.error(f"Error getting Nango token: {e}")
                raise AuthFailure(f"Nango token retrieval failed for {self.provider_key}: {e}") from e

            credentials = data.get("credentials") or {}
            token = credentials.get("access_token")
            if not token:
                raise AuthFailure(f"Nango returned no access token for {self.provider_key}")

            self._token = token
            self._expires_at = None
            expires_at = credentials.get("expires_at")
            if expires_at:
                try:
                    self._expires_at = datetime.fromisoformat(expires_at.replace("Z", "+00:00"))
                except ValueError:
                    logger.warning(f"Unparseable Nango expires_at: {expires_at}")

            logger.info(f"🔐 Retrieved {self.provider_key} access token via Nango")
            return token
