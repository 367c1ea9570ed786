"""
Global Error Handler Middleware
Catches all unhandled exceptions and returns structured error responses

STATUS MAPPING:
- ConfigurationError              → 500 (with error code)
- EnumerationFailure, AuthFailure → 502 (provider side)
- SyncCancelled                   → 504 (deadline / operator stop)
- other SyncError                 → 500 (with error code)
- anything else                   → 500
"""
import logging
from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from app.services.sync.errors import (
    AuthFailure,
    EnumerationFailure,
    SyncCancelled,
    SyncError,
)

logger = logging.getLogger(__name__)


def status_for_sync_error(exc: SyncError) -> int:
    if isinstance(exc, (EnumerationFailure, AuthFailure)):
        return 502
    if isinstance(exc, SyncCancelled):
        return 504
    return 500


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """Sync errors become JSON with an error_code; anything else is a bare 500."""

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except SyncError as exc:
            status_code = status_for_sync_error(exc)
            logger.error(
                f"Sync failed: {exc.code}: {exc.message}",
                extra={"path": request.url.path, "method": request.method}
            )
            return JSONResponse(
                status_code=status_code,
                content={
                    "detail": exc.message,
                    "error_code": exc.code,
                    "path": request.url.path
                }
            )
        except Exception as exc:
            # Log the full exception with traceback
            logger.error(
                "Unhandled exception during request",
                exc_info=True,
                extra={
                    "path": request.url.path,
                    "method": request.method,
                    "client_host": request.client.host if request.client else None
                }
            )

            # Return structured error response
            return JSONResponse(
                status_code=500,
                content={
                    "detail": "Internal server error",
                    "error_type": type(exc).__name__,
                    "path": request.url.path
                }
            )
