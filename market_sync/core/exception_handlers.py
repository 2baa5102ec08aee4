"""
Exception handlers for FastAPI.

Centralized exception handling with structured error responses and logging.
"""
import logging
import uuid
from typing import Any, Dict

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from market_sync.core.config import get_settings
from market_sync.core.exceptions import (
    MarketSyncError,
    ProviderAPIError,
    RateLimitError,
)

settings = get_settings()
logger = logging.getLogger(__name__)


def get_trace_id(request: Request) -> str:
    """Extract trace ID from request headers or generate one."""
    trace_id = (
        request.headers.get("X-Trace-Id")
        or request.headers.get("X-Request-Id")
        or request.headers.get("X-Correlation-Id")
    )
    return trace_id or str(uuid.uuid4())


def _error_response(exc: MarketSyncError, trace_id: str, headers: Dict[str, str]) -> JSONResponse:
    response_data = exc.to_dict()
    response_data["error"]["trace_id"] = trace_id
    return JSONResponse(
        status_code=exc.status_code,
        content=response_data,
        headers={"X-Trace-Id": trace_id, **headers},
    )


async def market_sync_error_handler(
    request: Request,
    exc: MarketSyncError,
) -> JSONResponse:
    """Handle MarketSyncError exceptions."""
    trace_id = get_trace_id(request)

    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        f"MarketSyncError: {exc.error_code} - {exc.detail}",
        extra={
            "trace_id": trace_id,
            "error_code": exc.error_code,
            "status_code": exc.status_code,
            "context": exc.context,
            "path": request.url.path,
            "method": request.method,
        },
        exc_info=settings.DEBUG,
    )

    return _error_response(exc, trace_id, {})


async def provider_api_error_handler(
    request: Request,
    exc: ProviderAPIError,
) -> JSONResponse:
    """Handle ProviderAPIError exceptions."""
    trace_id = get_trace_id(request)

    logger.warning(
        f"Provider API Error: {exc.error_code} - {exc.detail}",
        extra={
            "trace_id": trace_id,
            "error_code": exc.error_code,
            "status_code": exc.status_code,
            "context": exc.context,
            "path": request.url.path,
            "method": request.method,
            "service": exc.provider,
        },
    )

    return _error_response(exc, trace_id, {})


async def rate_limit_error_handler(
    request: Request,
    exc: RateLimitError,
) -> JSONResponse:
    """Handle RateLimitError exceptions, exposing Retry-After."""
    trace_id = get_trace_id(request)

    logger.warning(
        f"Rate limit exceeded: {exc.detail}",
        extra={
            "trace_id": trace_id,
            "error_code": exc.error_code,
            "retry_after": exc.retry_after,
            "service": exc.provider,
            "path": request.url.path,
            "method": request.method,
        },
    )

    headers = {}
    if exc.retry_after:
        headers["Retry-After"] = str(int(exc.retry_after))

    return _error_response(exc, trace_id, headers)


async def validation_error_handler(
    request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    """Handle request validation errors raised by FastAPI."""
    trace_id = get_trace_id(request)

    errors = []
    for error in exc.errors():
        field = ".".join(str(loc) for loc in error.get("loc", []))
        errors.append({
            "field": field,
            "message": error.get("msg"),
            "type": error.get("type"),
        })

    logger.warning(
        f"Validation error: {len(errors)} field(s) failed validation",
        extra={
            "trace_id": trace_id,
            "errors": errors,
            "path": request.url.path,
            "method": request.method,
        },
    )

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error": {
                "code": "VALIDATION_ERROR",
                "message": "Request validation failed",
                "errors": errors,
                "trace_id": trace_id,
            }
        },
        headers={"X-Trace-Id": trace_id},
    )


async def generic_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """Handle unexpected exceptions."""
    trace_id = get_trace_id(request)

    logger.error(
        f"Unhandled exception: {type(exc).__name__}: {str(exc)}",
        extra={
            "trace_id": trace_id,
            "exception_type": type(exc).__name__,
            "path": request.url.path,
            "method": request.method,
        },
        exc_info=True,
    )

    error_detail = str(exc) if settings.DEBUG else "An internal error occurred"

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": {
                "code": "INTERNAL_SERVER_ERROR",
                "message": error_detail,
                "trace_id": trace_id,
            }
        },
        headers={"X-Trace-Id": trace_id},
    )


# Starlette resolves handlers by walking the exception's MRO,
# so subclasses pick the most specific entry.
EXCEPTION_HANDLERS: Dict[Any, Any] = {
    MarketSyncError: market_sync_error_handler,
    ProviderAPIError: provider_api_error_handler,
    RateLimitError: rate_limit_error_handler,
    RequestValidationError: validation_error_handler,
    Exception: generic_exception_handler,
}
