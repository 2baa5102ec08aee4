"""
StockX catalog API client with OAuth, rate limiting and error handling.
"""
import asyncio
import json
import logging
import math
import time
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, List, Optional

import httpx
from redis.exceptions import RedisError

from market_sync.core.config import get_settings
from market_sync.core.crypto import get_encryption_manager
from market_sync.core.exceptions import (
    ConfigurationError,
    ProductNotFoundError,
    ProviderAPIError,
    ProviderUnavailableError,
    RateLimitError,
)
from market_sync.core.prometheus_metrics import (
    provider_request_duration_seconds,
    provider_requests_total,
)
from market_sync.core.redis_client import get_redis_sync
from market_sync.services.adaptive_rate_limiter import get_adaptive_rate_limiter
from market_sync.services.circuit_breaker import get_circuit_breaker

settings = get_settings()
logger = logging.getLogger(__name__)

PROVIDER = "stockx"
TOKEN_CACHE_KEY = "provider_token:stockx"
TOKEN_REFRESH_MARGIN_SECONDS = 60
MAX_429_RETRIES = 3
MAX_RETRY_AFTER_SECONDS = 30.0
DEFAULT_RETRY_AFTER_SECONDS = 5.0


def parse_retry_after(value: Optional[str]) -> float:
    """
    Seconds to wait from a Retry-After header (delta-seconds or HTTP-date),
    capped at MAX_RETRY_AFTER_SECONDS.
    """
    if not value:
        return DEFAULT_RETRY_AFTER_SECONDS
    try:
        seconds = float(value)
    except ValueError:
        try:
            retry_at = parsedate_to_datetime(value)
        except (TypeError, ValueError):
            logger.warning(f"Unparseable Retry-After header: {value!r}")
            return DEFAULT_RETRY_AFTER_SECONDS
        if retry_at.tzinfo is None:
            retry_at = retry_at.replace(tzinfo=timezone.utc)
        seconds = (retry_at - datetime.now(timezone.utc)).total_seconds()
    if math.isnan(seconds):
        return DEFAULT_RETRY_AFTER_SECONDS
    return min(max(seconds, 0.0), MAX_RETRY_AFTER_SECONDS)


class StockxClient:
    """Client for the StockX v2 catalog API."""

    def __init__(
        self,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        api_key: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize StockX client.

        Args:
            client_id: OAuth client id (defaults to STOCKX_CLIENT_ID)
            client_secret: OAuth client secret (defaults to STOCKX_CLIENT_SECRET)
            api_key: x-api-key header value (defaults to STOCKX_API_KEY)
            transport: Optional httpx transport (tests)
        """
        self.client_id = client_id or settings.STOCKX_CLIENT_ID
        self.client_secret = client_secret or settings.STOCKX_CLIENT_SECRET
        self.api_key = api_key or settings.STOCKX_API_KEY
        self.base_url = settings.STOCKX_API_BASE_URL.rstrip("/")
        self.rate_limiter = get_adaptive_rate_limiter(PROVIDER)
        self.circuit_breaker = get_circuit_breaker(PROVIDER)
        self.encryption_manager = get_encryption_manager()

        self._access_token: Optional[str] = None
        self._token_expires_at: float = 0.0
        self._token_lock = asyncio.Lock()

        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["x-api-key"] = self.api_key

        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(settings.STOCKX_REQUEST_TIMEOUT, connect=10.0),
            headers=headers,
            transport=transport,
        )

    # Access token

    def _token_is_fresh(self) -> bool:
        return (
            self._access_token is not None
            and self._token_expires_at - TOKEN_REFRESH_MARGIN_SECONDS > time.time()
        )

    def _load_cached_token(self) -> bool:
        """Load a token another worker cached in Redis. Returns True when usable."""
        if self.encryption_manager is None:
            return False
        try:
            cached = get_redis_sync().get(TOKEN_CACHE_KEY)
        except RedisError as e:
            logger.debug(f"StockX token cache unavailable: {e}")
            return False
        if not cached:
            return False

        plaintext = self.encryption_manager.decrypt(cached)
        if plaintext is None:
            return False
        payload = json.loads(plaintext)
        self._access_token = payload["access_token"]
        self._token_expires_at = float(payload["expires_at"])
        return self._token_is_fresh()

    def _store_cached_token(self) -> None:
        if self.encryption_manager is None:
            return
        ttl = int(self._token_expires_at - time.time() - TOKEN_REFRESH_MARGIN_SECONDS)
        if ttl <= 0:
            return
        payload = json.dumps({"access_token": self._access_token, "expires_at": self._token_expires_at})
        try:
            get_redis_sync().setex(TOKEN_CACHE_KEY, ttl, self.encryption_manager.encrypt(payload))
        except RedisError as e:
            logger.debug(f"Could not cache StockX token: {e}")

    async def _get_access_token(self) -> str:
        """Return a valid access token, requesting a new one when it expires within 60s."""
        if self._token_is_fresh():
            return self._access_token

        async with self._token_lock:
            if self._token_is_fresh() or self._load_cached_token():
                return self._access_token

            if not self.client_id or not self.client_secret:
                raise ConfigurationError(
                    "StockX credentials not configured",
                    setting="STOCKX_CLIENT_ID",
                )

            try:
                response = await self.client.post(
                    "/oauth/token",
                    data={
                        "grant_type": "client_credentials",
                        "client_id": self.client_id,
                        "client_secret": self.client_secret,
                    },
                )
            except httpx.RequestError as e:
                raise ProviderAPIError(f"StockX token request failed: {e}", provider=PROVIDER) from e

            if response.status_code != 200:
                raise ProviderAPIError(
                    f"StockX token request failed with {response.status_code}: {response.text[:200]}",
                    provider=PROVIDER,
                    upstream_status=response.status_code,
                )

            body = response.json()
            self._access_token = body["access_token"]
            self._token_expires_at = time.time() + float(body.get("expires_in", 3600))
            self._store_cached_token()
            logger.info("Obtained new StockX access token")
            return self._access_token

    # Circuit breaker helpers (Redis outages must not block requests)

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
        method: str,
        endpoint: str,
        metric_endpoint: str,
        **kwargs,
    ) -> Any:
        """
        Make an authenticated request with rate limiting and error handling.

        Args:
            method: HTTP method
            endpoint: API path (without base URL)
            metric_endpoint: Low-cardinality endpoint label for metrics
            **kwargs: Additional arguments for httpx request

        Returns:
            Response JSON data

        Raises:
            RateLimitError: 429 after all retries
            ProviderUnavailableError: Circuit breaker is open
            ProviderAPIError: Any other API or network error
        """
        if not self._breaker_allows():
            raise ProviderUnavailableError(
                "StockX temporarily unavailable. Circuit breaker is OPEN",
                provider=PROVIDER,
                timeout=self.circuit_breaker.timeout,
            )

        attempt = 0
        while True:
            attempt += 1
            await self.rate_limiter.acquire(PROVIDER)
            token = await self._get_access_token()

            start = time.monotonic()
            try:
                response = await self.client.request(
                    method,
                    endpoint,
                    headers={"Authorization": f"Bearer {token}"},
                    **kwargs,
                )
            except httpx.TimeoutException as e:
                self._record_failure("timeout")
                raise ProviderAPIError(f"StockX request timed out: {endpoint}", provider=PROVIDER) from e
            except httpx.RequestError as e:
                self._record_failure("network_error")
                raise ProviderAPIError(f"StockX request error: {e}", provider=PROVIDER) from e
            finally:
                provider_request_duration_seconds.labels(
                    provider=PROVIDER, endpoint=metric_endpoint
                ).observe(time.monotonic() - start)

            provider_requests_total.labels(
                provider=PROVIDER, endpoint=metric_endpoint, status_code=str(response.status_code)
            ).inc()

            if response.status_code == 429:
                self.rate_limiter.record_429_response(PROVIDER)
                retry_after = parse_retry_after(response.headers.get("Retry-After"))
                if attempt >= MAX_429_RETRIES:
                    self._record_failure("rate_limit")
                    raise RateLimitError(
                        f"StockX 429 rate limit after {MAX_429_RETRIES} attempts",
                        retry_after=retry_after,
                        provider=PROVIDER,
                    )
                logger.warning(
                    f"StockX 429 on {endpoint} (attempt {attempt}/{MAX_429_RETRIES}), "
                    f"waiting {retry_after:.1f}s"
                )
                await asyncio.sleep(retry_after)
                continue

            if response.status_code == 401 and attempt == 1:
                # Token revoked early: drop it and retry once
                self._access_token = None
                self._token_expires_at = 0.0
                continue

            if response.status_code >= 400:
                if response.status_code >= 500:
                    self._record_failure("api_error")
                raise ProviderAPIError(
                    f"StockX API error {response.status_code} on {endpoint}: {response.text[:200]}",
                    provider=PROVIDER,
                    upstream_status=response.status_code,
                )

            self._record_success()
            return response.json()

    async def search_catalog(self, query: str) -> Dict[str, Any]:
        """Search the catalog (GET /v2/catalog/search)."""
        return await self._make_request(
            "GET", "/v2/catalog/search", "catalog_search", params={"query": query}
        )

    async def find_product_id(self, sku: str) -> str:
        """
        Resolve a SKU to a StockX product id (first search hit).

        Raises:
            ProductNotFoundError: Search returned no product
        """
        response = await self.search_catalog(sku)
        products = (response or {}).get("products") or []
        if not products or not products[0].get("productId"):
            raise ProductNotFoundError(f"Product not found for SKU: {sku}", provider=PROVIDER)
        return products[0]["productId"]

    async def get_product(self, product_id: str) -> Dict[str, Any]:
        """Product details (GET /v2/catalog/products/{id})."""
        response = await self._make_request(
            "GET", f"/v2/catalog/products/{product_id}", "product"
        )
        if not response:
            raise ProviderAPIError(
                f"Failed to fetch product details for {product_id}", provider=PROVIDER
            )
        return response

    async def get_variants(self, product_id: str) -> List[Dict[str, Any]]:
        """Variants of a product (GET /v2/catalog/products/{id}/variants)."""
        response = await self._make_request(
            "GET", f"/v2/catalog/products/{product_id}/variants", "variants"
        )
        if not isinstance(response, list):
            raise ProviderAPIError(f"Failed to fetch variants for {product_id}", provider=PROVIDER)
        return response

    async def get_market_data(
        self,
        product_id: str,
        variant_id: str,
        currency_code: str = "GBP",
    ) -> Dict[str, Any]:
        """Market data for one variant in one currency."""
        response = await self._make_request(
            "GET",
            f"/v2/catalog/products/{product_id}/variants/{variant_id}/market-data",
            "market_data",
            params={"currencyCode": currency_code},
        )
        if not response:
            raise ProviderAPIError(f"Failed to fetch market data for {variant_id}", provider=PROVIDER)
        return response

    async def close(self) -> None:
        """Close HTTP client."""
        await self.client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
