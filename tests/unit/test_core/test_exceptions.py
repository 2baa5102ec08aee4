"""
Unit tests for the exception hierarchy and FastAPI exception handlers.
"""
from fastapi import FastAPI
from fastapi.testclient import TestClient

from market_sync.core.exception_handlers import EXCEPTION_HANDLERS
from market_sync.core.exceptions import (
    MISSING_MAPPING_PREFIX,
    MissingMappingError,
    ProviderAPIError,
    RateLimitError,
    StyleNotFoundError,
)


def _app_raising(exc: Exception) -> TestClient:
    app = FastAPI()
    for exception_type, handler in EXCEPTION_HANDLERS.items():
        app.add_exception_handler(exception_type, handler)

    @app.get("/boom")
    async def boom():
        raise exc

    return TestClient(app, raise_server_exceptions=False)


def test_missing_mapping_error_adds_prefix_once():
    error = MissingMappingError("No alias_catalog_id for DD1391-100", style_id="DD1391-100")
    assert error.detail == f"{MISSING_MAPPING_PREFIX} No alias_catalog_id for DD1391-100"

    again = MissingMappingError(error.detail)
    assert again.detail.count(MISSING_MAPPING_PREFIX) == 1


def test_to_dict_shape():
    body = StyleNotFoundError("DD1391-100").to_dict()
    assert body["error"]["code"] == "STYLE_NOT_FOUND"
    assert body["error"]["context"] == {"style_id": "DD1391-100"}


def test_handler_renders_error_with_trace_id():
    client = _app_raising(StyleNotFoundError("DD1391-100"))
    response = client.get("/boom", headers={"X-Trace-Id": "trace-123"})

    assert response.status_code == 404
    assert response.headers["X-Trace-Id"] == "trace-123"
    body = response.json()
    assert body["error"]["code"] == "STYLE_NOT_FOUND"
    assert body["error"]["trace_id"] == "trace-123"


def test_rate_limit_handler_sets_retry_after():
    client = _app_raising(RateLimitError("StockX 429", retry_after=12.5, provider="stockx"))
    response = client.get("/boom")

    assert response.status_code == 429
    assert response.headers["Retry-After"] == "12"
    assert response.headers["X-Trace-Id"]


def test_provider_error_is_bad_gateway():
    client = _app_raising(ProviderAPIError("Alias API error: 500", provider="alias"))
    response = client.get("/boom")
    assert response.status_code == 502


def test_unexpected_error_is_hidden():
    client = _app_raising(RuntimeError("secret internals"))
    response = client.get("/boom")

    assert response.status_code == 500
    assert response.json()["error"]["message"] == "An internal error occurred"
