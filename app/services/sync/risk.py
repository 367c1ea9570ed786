"""
Risk scoring adapter
Scores a canonical message before it is stored

The scoring model itself lives outside this service. When no scoring
endpoint is configured every message is stored with score 0.
"""
import logging
from typing import Optional, Protocol

import httpx

from app.core.circuit_breakers import with_retry
from app.core.config import settings
from app.models.schemas.sync import CanonicalMessage, ResolvedIdentity, RiskAssessment

logger = logging.getLogger(__name__)


class RiskAnalyzer(Protocol):
    async def score(self, message: CanonicalMessage, identity: ResolvedIdentity) -> RiskAssessment:
        ...


class NullRiskAnalyzer:
    """Scores everything 0 / not flagged."""

    async def score(self, message: CanonicalMessage, identity: ResolvedIdentity) -> RiskAssessment:
        return RiskAssessment()


class HttpRiskAnalyzer:
    """
    Posts messages to an external scoring service.

    Request body: the canonical message (JSON) plus employee_id.
    Response: {"risk_score": 0-100, "flagged": bool?, "category": str?}

    Failures are logged and yield score 0 so the message is still stored.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        url: str,
        flag_threshold: Optional[int] = None,
        timeout: float = 30.0
    ):
        self.http_client = http_client
        self.url = url
        self.flag_threshold = settings.risk_flag_threshold if flag_threshold is None else flag_threshold
        self.timeout = timeout

    @with_retry(max_attempts=3, min_wait=1, max_wait=8)
    async def _post(self, payload: dict) -> dict:
        response = await self.http_client.post(self.url, json=payload, timeout=self.timeout)
        response.raise_for_status()
        return response.json()

    async def score(self, message: CanonicalMessage, identity: ResolvedIdentity) -> RiskAssessment:
        payload = message.model_dump(mode="json", exclude={"risk_score", "flagged", "category"})
        payload["employee_id"] = identity.employee_id

        try:
            data = await self._post(payload)
            risk_score = max(0, min(100, int(data.get("risk_score", 0))))
            flagged = data.get("flagged")
            return RiskAssessment(
                risk_score=risk_score,
                flagged=bool(flagged) if flagged is not None else risk_score >= self.flag_threshold,
                category=data.get("category"),
            )
        except (httpx.HTTPError, ValueError, TypeError, AttributeError) as e:
            logger.error(f"❌ Risk scoring failed for {message.provider_message_id}: {e}")
            return RiskAssessment()


def build_risk_analyzer(http_client: httpx.AsyncClient) -> RiskAnalyzer:
    if settings.risk_analyzer_url:
        return HttpRiskAnalyzer(http_client, settings.risk_analyzer_url)
    return NullRiskAnalyzer()
