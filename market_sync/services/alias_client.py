"""
Alias (GOAT) API client with adaptive pacing and 5xx retry.
"""
import asyncio
import logging
import random
import time
from typing import Any, Dict, List, Optional

import httpx
from redis.exceptions import RedisError

from market_sync.core.config import get_settings
from market_sync.core.exceptions import (
    ConfigurationError,
    ProviderAPIError,
    ProviderUnavailableError,
    RateLimitError,
)
from market_sync.core.prometheus_metrics import (
    provider_request_duration_seconds,
    provider_requests_total,
)
from market_sync.services.adaptive_rate_limiter import get_adaptive_rate_limiter
from market_sync.services.circuit_breaker import get_circuit_breaker
from market_sync.services.market_normalizer import ALIAS_GOOD_PACKAGING, ALIAS_NEW_CONDITION

settings = get_settings()
logger = logging.getLogger(__name__)

PROVIDER = "alias"
RETRY_MAX_ATTEMPTS = 5
RETRY_BASE_DELAY_MS = 1000
RETRY_MAX_DELAY_MS = 16000
RETRY_JITTER_FACTOR = 0.2
MAX_PACING_DELAY_MS = 5000
MAX_429_PER_REQUEST = 10
RETRYABLE_STATUS_CODES = (502, 503, 504)
RECENT_SALES_LIMIT = 200


def get_retry_delay_ms(attempt: int) -> int:
    """Exponential backoff with ±20% jitter: 1s, 2s, 4s, 8s, 16s."""
    base_delay = min(RETRY_BASE_DELAY_MS * (2 ** attempt), RETRY_MAX_DELAY_MS)
    jitter = base_delay * RETRY_JITTER_FACTOR * (random.random() * 2 - 1)
    return round(base_delay + jitter)


class AliasClient:
    """Client for the Alias catalog and pricing insights API."""

    def __init__(
        self,
        token: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize Alias client.

        Args:
            token: Alias personal access token (defaults to ALIAS_PAT)
            transport: Optional httpx transport (tests)
        """
        self.token = token or settings.ALIAS_PAT
        if not self.token:
            raise ConfigurationError("ALIAS_PAT not configured", setting="ALIAS_PAT")

        self.base_url = settings.ALIAS_API_BASE_URL.rstrip("/")
        self.rate_limiter = get_adaptive_rate_limiter(PROVIDER)
        self.circuit_breaker = get_circuit_breaker(PROVIDER)

        # Pacing between requests, slowed down on 429
        self.current_delay_ms: float = float(settings.ALIAS_RATE_LIMIT_MS)
        self.consecutive_429s = 0

        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(30.0, connect=10.0),
            headers={
                "Authorization": f"Bearer {self.token}",
                "Accept": "application/json",
            },
            transport=transport,
        )

    @property
    def pacing_delay(self) -> float:
        """Current delay between requests, in seconds."""
        return self.current_delay_ms / 1000

    def _breaker_allows(self) -> bool:
        try:
            return self.circuit_breaker.allow_request()
        except RedisError as e:
            logger.debug(f"Circuit breaker unavailable: {e}")
            return True

    def _record_failure(self, error_type: str) -> None:
        try:
            self.circuit_breaker.record_failure(error_type)
        except RedisError as e:
            logger.debug(f"Circuit breaker unavailable: {e}")

    def _record_success(self) -> None:
        try:
            self.circuit_breaker.record_success()
        except RedisError as e:
            logger.debug(f"Circuit breaker unavailable: {e}")
        self.rate_limiter.record_success(PROVIDER)

    async def _make_request(
        self,
        endpoint: str,
        metric_endpoint: str,
        params: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """
        GET an Alias endpoint.

        429 responses slow the client down and do not use up an attempt, up to
        MAX_429_PER_REQUEST per call.
        502/503/504 and network errors are retried with backoff.

        Raises:
            ProviderUnavailableError: Circuit breaker is open
            RateLimitError: Still rate limited after MAX_429_PER_REQUEST responses
            ProviderAPIError: Non-retryable status or retries exhausted
        """
        if not self._breaker_allows():
            raise ProviderUnavailableError(
                "Alias temporarily unavailable. Circuit breaker is OPEN",
                provider=PROVIDER,
                timeout=self.circuit_breaker.timeout,
            )

        last_error: Optional[ProviderAPIError] = None
        attempt = 0
        rate_limited = 0

        while attempt < RETRY_MAX_ATTEMPTS:
            await self.rate_limiter.acquire(PROVIDER)

            start = time.monotonic()
            try:
                response = await self.client.get(endpoint, params=params)
            except httpx.RequestError as e:
                delay_ms = get_retry_delay_ms(attempt)
                logger.warning(
                    f"Alias network error on {endpoint} (attempt {attempt + 1}/{RETRY_MAX_ATTEMPTS}). "
                    f"Retrying in {delay_ms}ms: {e}"
                )
                self._record_failure("network_error")
                last_error = ProviderAPIError(f"Alias request error: {e}", provider=PROVIDER)
                attempt += 1
                await asyncio.sleep(delay_ms / 1000)
                continue
            finally:
                provider_request_duration_seconds.labels(
                    provider=PROVIDER, endpoint=metric_endpoint
                ).observe(time.monotonic() - start)

            provider_requests_total.labels(
                provider=PROVIDER, endpoint=metric_endpoint, status_code=str(response.status_code)
            ).inc()

            if response.status_code == 429:
                self.consecutive_429s += 1
                rate_limited += 1
                self.current_delay_ms = min(self.current_delay_ms * 1.5, MAX_PACING_DELAY_MS)
                self.rate_limiter.record_429_response(PROVIDER)
                if rate_limited >= MAX_429_PER_REQUEST:
                    self._record_failure("rate_limit")
                    raise RateLimitError(
                        f"Alias still rate limited after {rate_limited} 429 responses",
                        retry_after=self.current_delay_ms * 2 / 1000,
                        provider=PROVIDER,
                    )
                logger.warning(
                    f"Alias 429 on {endpoint}. Slowing to "
                    f"{60000 / self.current_delay_ms:.1f} req/min"
                )
                await asyncio.sleep(self.current_delay_ms * 2 / 1000)
                continue

            if response.status_code in RETRYABLE_STATUS_CODES:
                delay_ms = get_retry_delay_ms(attempt)
                logger.warning(
                    f"Alias API {response.status_code} on {endpoint} "
                    f"(attempt {attempt + 1}/{RETRY_MAX_ATTEMPTS}). Retrying in {delay_ms}ms"
                )
                self._record_failure("api_error")
                last_error = ProviderAPIError(
                    f"Alias API error: {response.status_code} {response.reason_phrase}",
                    provider=PROVIDER,
                    upstream_status=response.status_code,
                )
                attempt += 1
                await asyncio.sleep(delay_ms / 1000)
                continue

            if response.status_code >= 400:
                raise ProviderAPIError(
                    f"Alias API error: {response.status_code} {response.reason_phrase}",
                    provider=PROVIDER,
                    upstream_status=response.status_code,
                )

            self.consecutive_429s = 0
            self._record_success()
            return response.json()

        raise last_error or ProviderAPIError(
            f"Alias API failed after {RETRY_MAX_ATTEMPTS} attempts", provider=PROVIDER
        )

    async def get_catalog(self, catalog_id: str) -> Dict[str, Any]:
        """
        Catalog item (GET /catalog/{id}).

        Raises:
            ProviderAPIError: Response has no catalog_item.catalog_id
        """
        response = await self._make_request(f"/catalog/{catalog_id}", "catalog")
        if not (response or {}).get("catalog_item", {}).get("catalog_id"):
            raise ProviderAPIError(f"Invalid catalog response for {catalog_id}", provider=PROVIDER)
        return response

    async def get_availabilities(
        self,
        catalog_id: str,
        region_id: str,
        consigned: Optional[bool] = None,
    ) -> List[Dict[str, Any]]:
        """Per-size availability (prices in cents) for one region."""
        params = {"region_id": region_id}
        if consigned is not None:
            params["consigned"] = "true" if consigned else "false"

        response = await self._make_request(
            f"/pricing_insights/availabilities/{catalog_id}", "availabilities", params=params
        )
        return (response or {}).get("variants") or []

    async def get_recent_sales(
        self,
        catalog_id: str,
        size: str,
        region_id: str,
    ) -> List[Dict[str, Any]]:
        """Recent NEW/GOOD_CONDITION sales for one size and region."""
        response = await self._make_request(
            "/pricing_insights/recent_sales",
            "recent_sales",
            params={
                "catalog_id": catalog_id,
                "size": size,
                "region_id": region_id,
                "product_condition": ALIAS_NEW_CONDITION,
                "packaging_condition": ALIAS_GOOD_PACKAGING,
                "limit": str(RECENT_SALES_LIMIT),
            },
        )
        return (response or {}).get("recent_sales") or []

    async def close(self) -> None:
        """Close HTTP client."""
        await self.client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
