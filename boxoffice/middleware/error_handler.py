"""
Error handling middleware that turns engine exceptions into JSON responses.
"""

import logging
import traceback
from datetime import datetime, timezone
from uuid import uuid4

from fastapi import Request, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from sqlalchemy.exc import IntegrityError, OperationalError, TimeoutError as SQLTimeoutError

from ..utils.exceptions import (
    BoxofficeError,
    ErrorCode,
    ValidationError,
    NotFoundError,
    ConcurrencyError,
    ExternalServiceError,
    InventoryInconsistencyError,
)

logger = logging.getLogger(__name__)


STATUS_MAP = {
    ErrorCode.VALIDATION_ERROR: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorCode.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.UNAUTHORIZED: status.HTTP_401_UNAUTHORIZED,
    ErrorCode.FORBIDDEN: status.HTTP_403_FORBIDDEN,
    ErrorCode.INSUFFICIENT_CAPACITY: status.HTTP_409_CONFLICT,
    ErrorCode.INVALID_EVENT_STATE: status.HTTP_409_CONFLICT,
    ErrorCode.INVALID_BOOKING_STATE: status.HTTP_409_CONFLICT,
    ErrorCode.ALREADY_TERMINAL: status.HTTP_409_CONFLICT,
    ErrorCode.POLICY_DENIED: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorCode.BACKGROUND_JOBS_DISABLED: status.HTTP_409_CONFLICT,
    ErrorCode.CONCURRENCY_CONFLICT: status.HTTP_409_CONFLICT,
    ErrorCode.INVENTORY_INCONSISTENCY: status.HTTP_500_INTERNAL_SERVER_ERROR,
    ErrorCode.EXTERNAL_SERVICE_ERROR: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorCode.EMAIL_SERVICE_ERROR: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def status_code_for(exc: BoxofficeError) -> int:
    """Map error codes to HTTP status codes."""
    return STATUS_MAP.get(exc.error_code, status.HTTP_500_INTERNAL_SERVER_ERROR)


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """Middleware for error handling and response formatting."""

    def __init__(self, app, debug: bool = False):
        super().__init__(app)
        self.debug = debug

    async def dispatch(self, request: Request, call_next):
        error_id = str(uuid4())

        try:
            return await call_next(request)
        except Exception as exc:
            return self._handle_exception(request, exc, error_id)

    def _handle_exception(self, request: Request, exc: Exception, error_id: str) -> JSONResponse:
        self._log_error(request, exc, error_id)

        if isinstance(exc, BoxofficeError):
            return self._error_response(exc, error_id, status_code_for(exc))
        elif isinstance(exc, IntegrityError):
            error = ConcurrencyError("The request conflicted with a concurrent change")
            return self._error_response(error, error_id, status.HTTP_409_CONFLICT)
        elif isinstance(exc, (OperationalError, SQLTimeoutError)):
            error = ExternalServiceError("database", "Database service temporarily unavailable")
            return self._error_response(
                error, error_id, status.HTTP_503_SERVICE_UNAVAILABLE, headers={"Retry-After": "30"}
            )

        error = BoxofficeError(
            "An unexpected error occurred",
            error_code=ErrorCode.INTERNAL_ERROR,
            details={"error_type": type(exc).__name__} if self.debug else None
        )
        response = self._error_response(error, error_id, status.HTTP_500_INTERNAL_SERVER_ERROR)
        return response

    def _error_response(self, exc: BoxofficeError, error_id: str, status_code: int, headers=None) -> JSONResponse:
        headers = dict(headers or {})
        if exc.retry_after:
            headers["Retry-After"] = str(exc.retry_after)

        return JSONResponse(
            status_code=status_code,
            content={
                "error": exc.to_dict(),
                "error_id": error_id,
                "timestamp": datetime.now(timezone.utc).isoformat()
            },
            headers=headers
        )

    def _log_error(self, request: Request, exc: Exception, error_id: str):
        request_info = {
            "method": request.method,
            "path": request.url.path,
            "client_ip": request.client.host if request.client else None,
        }

        if isinstance(exc, BoxofficeError):
            extra = {
                "error_id": error_id,
                "error_code": exc.error_code.value,
                "request": request_info,
                "details": exc.details
            }
            if isinstance(exc, (ValidationError, NotFoundError)):
                logger.warning(f"Client error [{error_id}]: {exc.message}", extra=extra)
            elif isinstance(exc, (ConcurrencyError, ExternalServiceError, InventoryInconsistencyError)):
                logger.error(f"System error [{error_id}]: {exc.message}", extra=extra)
            else:
                logger.info(f"Business rule rejection [{error_id}]: {exc.message}", extra=extra)
        else:
            logger.error(
                f"Unexpected error [{error_id}]: {exc}",
                extra={
                    "error_id": error_id,
                    "error_type": type(exc).__name__,
                    "request": request_info,
                    "traceback": traceback.format_exc()
                }
            )
