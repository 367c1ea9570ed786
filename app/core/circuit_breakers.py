"""
Circuit Breakers and Retry Logic
Prevents one flaky provider call from failing a whole principal

Provider APIs (Graph, Gmail, Admin Directory) answer quota pressure with 429 +
Retry-After and occasional 5xx; both are retried with exponential backoff.
Everything else (401/403/404, malformed requests) fails immediately.
"""
import logging
from functools import wraps

import httpx
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception,
    before_sleep_log,
)
from tenacity.wait import wait_base

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}


def is_retryable_http_error(exc: BaseException) -> bool:
    """True for rate limits, server errors and transport failures."""
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in RETRYABLE_STATUS_CODES
    return isinstance(exc, httpx.TransportError)


class wait_retry_after(wait_base):
    """
    Honor a Retry-After header (seconds) when the provider sends one,
    otherwise fall back to exponential backoff.
    """

    def __init__(self, fallback: wait_base, max_wait: float = 60.0):
        self.fallback = fallback
        self.max_wait = max_wait

    def __call__(self, retry_state) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(exc, httpx.HTTPStatusError):
            retry_after = exc.response.headers.get("Retry-After")
            if retry_after:
                try:
                    return min(float(retry_after), self.max_wait)
                except ValueError:
                    pass
        return self.fallback(retry_state)


# ============================================================================
# PROVIDER CIRCUIT BREAKER
# ============================================================================

def with_provider_retry(max_attempts: int = 4, min_wait: float = 1, max_wait: float = 30):
    """
    Decorator for async provider HTTP calls.

    Retries on:
    - Rate limit errors (429, Retry-After honored)
    - Server errors (5xx)
    - Connection / timeout errors

    Usage:
        @with_provider_retry(max_attempts=3)
        async def get_page(url):
            ...
    """
    def decorator(func):
        @retry(
            retry=retry_if_exception(is_retryable_http_error),
            stop=stop_after_attempt(max_attempts),
            wait=wait_retry_after(wait_exponential(multiplier=1, min=min_wait, max=max_wait), max_wait=max_wait),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True
        )
        @wraps(func)
        async def async_wrapper(*args, **kwargs):
            return await func(*args, **kwargs)

        return async_wrapper

    return decorator


# ============================================================================
# GENERIC CIRCUIT BREAKER
# ============================================================================

def with_retry(max_attempts=3, min_wait=1, max_wait=10):
    """
    Generic retry decorator for async collaborator calls (risk scoring, etc.).

    Usage:
        @with_retry(max_attempts=3, min_wait=2, max_wait=8)
        async def my_api_call():
            ...
    """
    def decorator(func):
        @retry(
            stop=stop_after_attempt(max_attempts),
            wait=wait_exponential(multiplier=1, min=min_wait, max=max_wait),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True
        )
        @wraps(func)
        async def async_wrapper(*args, **kwargs):
            return await func(*args, **kwargs)

        return async_wrapper

    return decorator
