"""
Unit tests for the sync job processor.
"""
from contextlib import asynccontextmanager
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from market_sync.core.exceptions import RateLimitError
from market_sync.models.alias import AliasProduct
from market_sync.models.catalog import StyleCatalog
from market_sync.models.sync_queue import SyncJob
from market_sync.services import sync_processor
from market_sync.services.sync_result import SyncResult


def _job(job_id, style_id, provider):
    return SimpleNamespace(id=job_id, style_id=style_id, provider=provider, attempts=1, max_attempts=3)


def _style(style_id, alias_catalog_id=None):
    return SimpleNamespace(
        style_id=style_id,
        alias_catalog_id=alias_catalog_id,
        brand=None,
        name="Existing name",
        product_category=None,
        colorway=None,
    )


@pytest.fixture
def session_scope(mock_session):
    @asynccontextmanager
    async def scope():
        yield mock_session

    return scope


@pytest.fixture
def queue_ops():
    with patch("market_sync.services.sync_processor.recover_stale_jobs", new_callable=AsyncMock,
               return_value=0) as recover, \
            patch("market_sync.services.sync_processor.claim_jobs", new_callable=AsyncMock,
                  return_value=[]) as claim, \
            patch("market_sync.services.sync_processor.complete_job", new_callable=AsyncMock) as complete, \
            patch("market_sync.services.sync_processor.fail_job", new_callable=AsyncMock,
                  return_value="pending") as fail, \
            patch("market_sync.services.sync_processor.backfill_style", new_callable=AsyncMock) as backfill:
        yield {"recover": recover, "claim": claim, "complete": complete, "fail": fail, "backfill": backfill}


async def test_empty_queue(session_scope, queue_ops):
    queue_ops["recover"].return_value = 2

    summary = await sync_processor.process_sync_batch(limit=5, session_scope=session_scope)

    assert summary == {"processed": 0, "successful": 0, "failed": 0, "recovered": 2, "errors": []}
    queue_ops["claim"].assert_awaited_once()
    assert queue_ops["claim"].await_args.kwargs == {"limit": 5, "provider": None}


async def test_batch_with_success_and_missing_mapping(mock_session, session_scope, queue_ops):
    styles = {"A-1": _style("A-1"), "B-2": _style("B-2")}
    mock_session.get.side_effect = lambda model, key: styles.get(key) if model is StyleCatalog else None
    queue_ops["claim"].return_value = [_job(1, "A-1", "stockx"), _job(2, "B-2", "alias")]

    with patch("market_sync.services.sync_processor.sync_stockx_product_by_sku", new_callable=AsyncMock,
               return_value=SyncResult(provider="stockx", success=True)):
        summary = await sync_processor.process_sync_batch(job_delay=0, session_scope=session_scope)

    assert summary["processed"] == 2
    assert summary["successful"] == 1
    assert summary["failed"] == 1
    assert summary["errors"] == [{
        "jobId": 2,
        "styleId": "B-2",
        "provider": "alias",
        "error": "MISSING_MAPPING: No alias_catalog_id for B-2",
    }]
    queue_ops["complete"].assert_awaited_once_with(mock_session, 1)
    queue_ops["fail"].assert_awaited_once_with(mock_session, 2, "MISSING_MAPPING: No alias_catalog_id for B-2")


async def test_unexpected_error_fails_job(mock_session, session_scope, queue_ops):
    mock_session.get.return_value = _style("A-1")
    queue_ops["claim"].return_value = [_job(7, "A-1", "stockx")]

    with patch("market_sync.services.sync_processor.sync_stockx_product_by_sku", new_callable=AsyncMock,
               side_effect=RuntimeError("boom")):
        summary = await sync_processor.process_sync_batch(job_delay=0, session_scope=session_scope)

    assert summary["failed"] == 1
    assert summary["errors"][0]["error"] == "RuntimeError: boom"
    queue_ops["fail"].assert_awaited_once_with(mock_session, 7, "RuntimeError: boom")


async def test_rate_limit_is_recorded_on_job(mock_session, session_scope, queue_ops):
    mock_session.get.return_value = _style("A-1")
    queue_ops["claim"].return_value = [_job(8, "A-1", "stockx")]
    error = RateLimitError(retry_after=12, provider="stockx")

    with patch("market_sync.services.sync_processor.sync_stockx_product_by_sku", new_callable=AsyncMock,
               side_effect=error):
        summary = await sync_processor.process_sync_batch(job_delay=0, session_scope=session_scope)

    assert summary["failed"] == 1
    assert summary["errors"][0]["error"] == error.detail
    queue_ops["fail"].assert_awaited_once_with(mock_session, 8, error.detail)


async def test_failed_result_reports_stored_error(mock_session, session_scope, queue_ops):
    stored = SimpleNamespace(last_error="[catalog_fetch] Invalid catalog response for cat-1")

    def get(model, key):
        if model is StyleCatalog:
            return _style("C-3", alias_catalog_id="cat-1")
        if model is SyncJob:
            return stored
        return None

    mock_session.get.side_effect = get
    queue_ops["claim"].return_value = [_job(3, "C-3", "alias")]
    failed = SyncResult(provider="alias")
    failed.add_error("catalog_fetch", "Invalid catalog response for cat-1")

    with patch("market_sync.services.sync_processor.sync_alias_product", new_callable=AsyncMock,
               return_value=failed) as sync_alias:
        summary = await sync_processor.process_sync_batch(job_delay=0, session_scope=session_scope)

    sync_alias.assert_awaited_once_with(mock_session, "cat-1", style_id="C-3")
    queue_ops["fail"].assert_awaited_once_with(
        mock_session, 3, "[catalog_fetch] Invalid catalog response for cat-1"
    )
    assert summary["errors"][0]["error"] == stored.last_error
    queue_ops["backfill"].assert_not_awaited()


async def test_run_job_style_not_found(mock_session, queue_ops):
    mock_session.get.return_value = None

    status = await sync_processor.run_job(mock_session, _job(9, "GONE-1", "stockx"))

    assert status == "pending"
    queue_ops["fail"].assert_awaited_once_with(mock_session, 9, sync_processor.STYLE_NOT_FOUND_ERROR)


async def test_backfill_alias_fills_empty_fields(mock_session):
    style = _style("D-4", alias_catalog_id="cat-4")
    product = SimpleNamespace(brand="Nike", name="Other name", product_category="sneakers")
    mock_session.get.side_effect = lambda model, key: product if model is AliasProduct else None

    await sync_processor.backfill_style(mock_session, style, "alias")

    assert style.brand == "Nike"
    assert style.name == "Existing name"
    assert style.product_category == "sneakers"
    mock_session.flush.assert_awaited_once()


async def test_backfill_stockx_without_product(mock_session):
    result = MagicMock()
    result.scalar_one_or_none.return_value = None
    mock_session.execute.return_value = result
    style = _style("E-5")

    await sync_processor.backfill_style(mock_session, style, "stockx")

    assert style.brand is None
    mock_session.flush.assert_not_awaited()
