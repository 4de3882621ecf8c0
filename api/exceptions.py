"""
API Exception Handlers: Domain Error → HTTP Error Mapping

Centralized exception handling for clean error responses.
Maps domain-specific exceptions to appropriate HTTP status codes.
"""

from datetime import datetime, timezone

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from core.exceptions import (
    AdvisoryException,
    BatchJobValidationError,
    EntityNotFoundError,
    PermissionDeniedError,
    RateLimitExceededError,
    SecurityGateError,
    TokenLimitExceededError,
    VendorError,
)
from infrastructure.monitoring import get_logger

logger = get_logger(__name__)

# Most specific first; the first isinstance match wins
STATUS_BY_ERROR = (
    (SecurityGateError, status.HTTP_400_BAD_REQUEST, "Request Rejected"),
    (BatchJobValidationError, status.HTTP_400_BAD_REQUEST, "Validation Error"),
    (TokenLimitExceededError, status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, "Token Limit Exceeded"),
    (RateLimitExceededError, status.HTTP_429_TOO_MANY_REQUESTS, "Rate Limit Exceeded"),
    (PermissionDeniedError, status.HTTP_403_FORBIDDEN, "Permission Denied"),
    (EntityNotFoundError, status.HTTP_404_NOT_FOUND, "Not Found"),
    (VendorError, status.HTTP_502_BAD_GATEWAY, "Upstream Error"),
)


def status_for(exc: AdvisoryException) -> tuple[int, str]:
    for error_type, status_code, title in STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code, title
    return status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal Error"


def _body(request: Request, error: str, detail) -> dict:
    return {
        "error": error,
        "detail": detail,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "request_id": getattr(request.state, "request_id", None),
    }


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle Pydantic validation errors."""
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=_body(request, "Validation Error", exc.errors()),
    )


async def advisory_exception_handler(request: Request, exc: AdvisoryException):
    """Map the domain taxonomy onto HTTP; messages are surfaced verbatim."""
    status_code, title = status_for(exc)
    headers = {}
    if isinstance(exc, RateLimitExceededError) and exc.retry_after is not None:
        headers["Retry-After"] = str(exc.retry_after)

    log = logger.error if status_code >= 500 else logger.warning
    log("request_failed", error_type=type(exc).__name__, error_code=exc.error_code, status=status_code)

    body = _body(request, title, exc.message)
    body["error_code"] = exc.error_code
    return JSONResponse(status_code=status_code, content=body, headers=headers)


def add_exception_handlers(app: FastAPI):
    """Add all exception handlers to the FastAPI app."""
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(AdvisoryException, advisory_exception_handler)
