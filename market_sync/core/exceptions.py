"""
Exception hierarchy for the Market Sync service.

All exceptions inherit from MarketSyncError and carry structured error
information for consistent API responses and logging.
"""
from typing import Any, Dict, Optional

# Errors with this prefix fail a sync job permanently, without retries.
MISSING_MAPPING_PREFIX = "MISSING_MAPPING:"


class MarketSyncError(Exception):
    """
    Base exception for all Market Sync errors.

    Attributes:
        status_code: HTTP status code for API responses
        error_code: Machine-readable error code
        detail: Human-readable error message
        context: Additional context (style_id, provider, job_id, ...)
    """

    def __init__(
        self,
        detail: str,
        status_code: int = 500,
        error_code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(detail)
        self.detail = detail
        self.status_code = status_code
        self.error_code = error_code or self.__class__.__name__
        self.context = context or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for JSON responses."""
        return {
            "error": {
                "code": self.error_code,
                "message": self.detail,
                "context": self.context,
            }
        }


# Sync queue exceptions

class SyncJobError(MarketSyncError):
    """Base exception for sync-job errors."""

    def __init__(
        self,
        detail: str,
        status_code: int = 500,
        error_code: str = "SYNC_JOB_ERROR",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(detail, status_code, error_code, context)


class SyncJobNotFoundError(SyncJobError):
    """Sync job not found."""

    def __init__(
        self,
        job_id: int,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            detail=f"Sync job {job_id} not found",
            status_code=404,
            error_code="SYNC_JOB_NOT_FOUND",
            context={"job_id": job_id, **(context or {})},
        )


class StyleNotFoundError(SyncJobError):
    """Style id not present in the style catalog."""

    def __init__(
        self,
        style_id: str,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            detail=f"Style {style_id} not found in catalog",
            status_code=404,
            error_code="STYLE_NOT_FOUND",
            context={"style_id": style_id, **(context or {})},
        )


class MissingMappingError(SyncJobError):
    """Style has no id for the provider; retrying cannot help."""

    def __init__(
        self,
        detail: str,
        style_id: Optional[str] = None,
        provider: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        if not detail.startswith(MISSING_MAPPING_PREFIX):
            detail = f"{MISSING_MAPPING_PREFIX} {detail}"
        super().__init__(
            detail=detail,
            status_code=422,
            error_code="MISSING_MAPPING",
            context={"style_id": style_id, "provider": provider, **(context or {})},
        )


# Provider API exceptions

class ProviderAPIError(MarketSyncError):
    """Base exception for marketplace API errors."""

    def __init__(
        self,
        detail: str,
        provider: Optional[str] = None,
        status_code: int = 502,  # Bad Gateway
        error_code: str = "PROVIDER_API_ERROR",
        upstream_status: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        self.provider = provider
        self.upstream_status = upstream_status
        super().__init__(
            detail,
            status_code,
            error_code,
            {"provider": provider, "upstream_status": upstream_status, **(context or {})},
        )


class ProductNotFoundError(ProviderAPIError):
    """Provider search returned no product."""

    def __init__(
        self,
        detail: str,
        provider: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            detail=detail,
            provider=provider,
            status_code=404,
            error_code="PRODUCT_NOT_FOUND",
            context=context,
        )


class RateLimitError(ProviderAPIError):
    """Rate limit exceeded (429)."""

    def __init__(
        self,
        detail: str = "Rate limit exceeded",
        retry_after: Optional[float] = None,
        provider: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        if retry_after:
            detail += f". Please retry after {retry_after:.2f} seconds"
        self.retry_after = retry_after
        super().__init__(
            detail=detail,
            provider=provider,
            status_code=429,
            error_code="RATE_LIMIT_EXCEEDED",
            upstream_status=429,
            context={"retry_after": retry_after, **(context or {})},
        )


class ProviderUnavailableError(ProviderAPIError):
    """Provider temporarily unavailable (circuit breaker open)."""

    def __init__(
        self,
        detail: str = "Provider temporarily unavailable",
        provider: Optional[str] = None,
        timeout: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        if timeout:
            detail += f". Retry in {timeout} seconds"
        super().__init__(
            detail=detail,
            provider=provider,
            status_code=503,
            error_code="PROVIDER_UNAVAILABLE",
            context={"timeout": timeout, **(context or {})},
        )


# Generic exceptions

class ValidationError(MarketSyncError):
    """Input validation error."""

    def __init__(
        self,
        detail: str,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            detail=detail,
            status_code=400,
            error_code="VALIDATION_ERROR",
            context={"field": field, "value": value, **(context or {})},
        )


class DatabaseError(MarketSyncError):
    """Database operation error."""

    def __init__(
        self,
        detail: str,
        operation: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            detail=detail,
            status_code=500,
            error_code="DATABASE_ERROR",
            context={"operation": operation, **(context or {})},
        )


class ConfigurationError(MarketSyncError):
    """Configuration error."""

    def __init__(
        self,
        detail: str,
        setting: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            detail=detail,
            status_code=500,
            error_code="CONFIGURATION_ERROR",
            context={"setting": setting, **(context or {})},
        )


class AuthenticationError(MarketSyncError):
    """Missing or invalid credentials on a protected endpoint."""

    def __init__(
        self,
        detail: str = "Unauthorized",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            detail=detail,
            status_code=401,
            error_code="UNAUTHORIZED",
            context=context or {},
        )
