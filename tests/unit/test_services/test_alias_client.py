"""
Unit tests for the Alias API client (HTTP mocked with httpx.MockTransport).
"""
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from market_sync.core.exceptions import ConfigurationError, ProviderAPIError, RateLimitError
from market_sync.services import alias_client as alias_module
from market_sync.services.alias_client import (
    MAX_429_PER_REQUEST,
    MAX_PACING_DELAY_MS,
    RETRY_MAX_ATTEMPTS,
    AliasClient,
    get_retry_delay_ms,
)

CATALOG = {"catalog_item": {"catalog_id": "cat-1", "name": "Air Jordan 1"}}


@pytest.fixture
def client_factory(mock_rate_limiter, mock_circuit_breaker):
    with patch("market_sync.services.alias_client.get_adaptive_rate_limiter", return_value=mock_rate_limiter), \
            patch("market_sync.services.alias_client.get_circuit_breaker", return_value=mock_circuit_breaker):

        def _build(responses, calls=None):
            def handler(request):
                if calls is not None:
                    calls.append(request)
                return responses.pop(0)

            return AliasClient(token="pat-1", transport=httpx.MockTransport(handler))

        yield _build


@pytest.fixture
def mock_sleep():
    with patch("market_sync.services.alias_client.asyncio.sleep", new_callable=AsyncMock) as sleep:
        yield sleep


@pytest.mark.parametrize("attempt, base", [(0, 1000), (1, 2000), (3, 8000), (4, 16000), (6, 16000)])
def test_retry_delay_has_bounded_jitter(attempt, base):
    for _ in range(20):
        delay = get_retry_delay_ms(attempt)
        assert base * 0.8 <= delay <= base * 1.2


def test_requires_token(mock_rate_limiter, mock_circuit_breaker):
    with patch.object(alias_module.settings, "ALIAS_PAT", None):
        with pytest.raises(ConfigurationError):
            AliasClient(token=None)


async def test_get_catalog_sends_bearer(client_factory, mock_sleep):
    calls = []
    client = client_factory([httpx.Response(200, json=CATALOG)], calls)

    async with client:
        assert await client.get_catalog("cat-1") == CATALOG

    assert calls[0].headers["Authorization"] == "Bearer pat-1"
    assert calls[0].url.path.endswith("/catalog/cat-1")


async def test_get_catalog_validates_response(client_factory, mock_sleep):
    client = client_factory([httpx.Response(200, json={"catalog_item": {}})])

    async with client:
        with pytest.raises(ProviderAPIError) as exc_info:
            await client.get_catalog("cat-1")

    assert exc_info.value.detail == "Invalid catalog response for cat-1"


async def test_get_availabilities_params(client_factory, mock_sleep):
    calls = []
    client = client_factory([httpx.Response(200, json={"variants": [{"size": 10}]})], calls)

    async with client:
        variants = await client.get_availabilities("cat-1", "3", consigned=True)

    assert variants == [{"size": 10}]
    assert calls[0].url.params["region_id"] == "3"
    assert calls[0].url.params["consigned"] == "true"


async def test_retries_gateway_errors(client_factory, mock_sleep, mock_circuit_breaker):
    client = client_factory([
        httpx.Response(503),
        httpx.Response(502),
        httpx.Response(200, json={"recent_sales": [{"price_cents": "1000"}]}),
    ])

    async with client:
        sales = await client.get_recent_sales("cat-1", "10", "1")

    assert sales == [{"price_cents": "1000"}]
    assert mock_sleep.await_count == 2
    assert mock_circuit_breaker.record_failure.call_count == 2


async def test_gives_up_after_max_attempts(client_factory, mock_sleep):
    client = client_factory([httpx.Response(504) for _ in range(RETRY_MAX_ATTEMPTS)])

    async with client:
        with pytest.raises(ProviderAPIError) as exc_info:
            await client.get_catalog("cat-1")

    assert exc_info.value.upstream_status == 504
    assert mock_sleep.await_count == RETRY_MAX_ATTEMPTS


async def test_429_slows_down_without_using_attempts(client_factory, mock_sleep, mock_rate_limiter):
    responses = [httpx.Response(429) for _ in range(RETRY_MAX_ATTEMPTS + 3)]
    responses.append(httpx.Response(200, json=CATALOG))
    client = client_factory(responses)

    async with client:
        await client.get_catalog("cat-1")

        assert client.current_delay_ms == MAX_PACING_DELAY_MS
        assert client.consecutive_429s == 0
        assert mock_rate_limiter.record_429_response.call_count == RETRY_MAX_ATTEMPTS + 3
        # First 429 sleeps twice the slowed delay: 1000 * 1.5 * 2 ms
        assert mock_sleep.await_args_list[0].args[0] == pytest.approx(3.0)


async def test_persistent_429_raises_rate_limit(client_factory, mock_sleep, mock_circuit_breaker):
    responses = [httpx.Response(429) for _ in range(MAX_429_PER_REQUEST + 2)]
    client = client_factory(responses)

    async with client:
        with pytest.raises(RateLimitError) as exc_info:
            await client.get_catalog("cat-1")

    assert exc_info.value.retry_after == pytest.approx(MAX_PACING_DELAY_MS * 2 / 1000)
    assert mock_sleep.await_count == MAX_429_PER_REQUEST - 1
    assert len(responses) == 2
    mock_circuit_breaker.record_failure.assert_called_once_with("rate_limit")


async def test_client_errors_are_not_retried(client_factory, mock_sleep):
    client = client_factory([httpx.Response(404)])

    async with client:
        with pytest.raises(ProviderAPIError) as exc_info:
            await client.get_catalog("missing")

    assert exc_info.value.upstream_status == 404
    mock_sleep.assert_not_awaited()
