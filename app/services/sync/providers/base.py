"""
Provider client contract and shared HTTP plumbing

A provider client enumerates principals and fetches one page of raw activity
at a time; the orchestrator drives pagination through `fetch_page` so it can
bound total items per principal.
"""
import logging
from typing import Any, Dict, List, Optional, Protocol

import httpx

from app.core.circuit_breakers import with_provider_retry
from app.models.schemas.sync import (
    FOLDER_INBOX,
    FOLDER_SENT,
    ActivityPage,
    ConnectionTestResult,
    FetchContext,
    Principal,
    Provider,
)
from app.services.sync.errors import AuthFailure, TransientFetchError
from app.services.sync.oauth import TokenProvider

logger = logging.getLogger(__name__)


class ProviderClient(Protocol):
    """What the orchestrator needs from a provider."""

    provider: Provider

    async def list_principals(self) -> List[Principal]:
        ...

    def fetch_contexts(self, principal: Principal, base: FetchContext, include_outbound: bool) -> List[FetchContext]:
        ...

    async def fetch_page(self, principal: Principal, context: FetchContext, cursor: Optional[str]) -> ActivityPage:
        ...

    async def test_connection(self) -> ConnectionTestResult:
        ...


def mailbox_contexts(base: FetchContext, include_outbound: bool) -> List[FetchContext]:
    """
    Inbox (+ sent) contexts for a mailbox principal.
    The per-principal budget is split so inbox + sent never exceeds it.
    """
    if not include_outbound:
        return [base.model_copy(update={"folder": FOLDER_INBOX})]

    sent_budget = base.max_items // 2
    inbox_budget = base.max_items - sent_budget
    contexts = [base.model_copy(update={"folder": FOLDER_INBOX, "max_items": inbox_budget})]
    if sent_budget:
        contexts.append(base.model_copy(update={"folder": FOLDER_SENT, "max_items": sent_budget}))
    return contexts


class ProviderHttpClient:
    """
    Authenticated JSON GETs with retry and error mapping.

    ERROR MAPPING:
    - 401 → token refreshed once, then AuthFailure
    - 403 → AuthFailure
    - 429 / 5xx / transport errors → retried, then TransientFetchError
    - anything else → TransientFetchError
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        token_provider: TokenProvider,
        max_attempts: int = 4,
        min_wait: float = 1,
        max_wait: float = 30
    ):
        self.http_client = http_client
        self.token_provider = token_provider
        self.max_attempts = max_attempts
        self.min_wait = min_wait
        self.max_wait = max_wait

    async def _send(self, url: str, params: Optional[Dict[str, Any]], force_refresh: bool) -> httpx.Response:
        token = await self.token_provider.get_token(force_refresh=force_refresh)
        response = await self.http_client.get(
            url,
            params=params,
            headers={"Authorization": f"Bearer {token}"}
        )
        response.raise_for_status()
        return response

    async def get_response(self, url: str, params: Optional[Dict[str, Any]] = None) -> httpx.Response:
        send = with_provider_retry(self.max_attempts, self.min_wait, self.max_wait)(self._send)
        try:
            try:
                return await send(url, params, False)
            except httpx.HTTPStatusError as e:
                if e.response.status_code != 401:
                    raise
                logger.warning(f"401 from {e.request.url.host}, refreshing token and retrying once")
                return await send(url, params, True)
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            detail = e.response.text[:300]
            if status in (401, 403):
                logger.error(f"❌ Provider rejected credentials: {status} {e.request.url}")
                raise AuthFailure(f"HTTP {status} from {e.request.url.host}: {detail}") from e
            logger.error(f"❌ Provider error {status} for {e.request.url}")
            logger.error(f"   Response: {detail}")
            raise TransientFetchError(f"HTTP {status} from {e.request.url.host}") from e
        except httpx.TransportError as e:
            raise TransientFetchError(f"transport error: {type(e).__name__}: {e}") from e

    async def get_json(self, url: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        response = await self.get_response(url, params)
        try:
            return response.json()
        except ValueError as e:
            raise TransientFetchError(f"invalid JSON from {url}: {e}") from e
