"""
Unit tests for per-style sync status and retry logic.
"""
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from market_sync.core.exceptions import StyleNotFoundError
from market_sync.models.catalog import StyleCatalog
from market_sync.models.sync_queue import SyncJob
from market_sync.services.sync_status import (
    NOT_MAPPED,
    derive_overall_status,
    enqueue_for_style,
    provider_status,
    retry_sync,
)


def _scalars_result(rows):
    result = MagicMock()
    result.scalars.return_value = rows
    return result


@pytest.mark.parametrize(
    "stockx, alias, expected",
    [
        ("pending", "completed", "syncing"),
        ("completed", "processing", "syncing"),
        ("completed", "completed", "ready"),
        ("not_mapped", "not_mapped", "not_mapped"),
        ("completed", "not_mapped", "partial"),
        ("failed", "completed", "partial"),
        ("failed", "not_mapped", "failed"),
        ("failed", "failed", "failed"),
    ],
)
def test_derive_overall_status(stockx, alias, expected):
    assert derive_overall_status(stockx, alias) == expected


def test_provider_status_prefers_job():
    style = StyleCatalog(style_id="DD1391-100", stockx_url_key="nike-dunk")
    retry_at = datetime(2026, 1, 1, tzinfo=timezone.utc)
    job = SyncJob(status="pending", attempts=2, last_error="boom", next_retry_at=retry_at)

    status = provider_status("stockx", style, job, has_data=True)

    assert status == {
        "status": "pending",
        "attempts": 2,
        "lastError": "boom",
        "nextRetryAt": retry_at.isoformat(),
    }


def test_provider_status_without_job():
    mapped = StyleCatalog(style_id="A", stockx_product_id="uuid-1", alias_catalog_id="cat-1")
    unmapped = StyleCatalog(style_id="B")

    assert provider_status("stockx", None, None, False)["status"] == NOT_MAPPED
    assert provider_status("alias", unmapped, None, False)["status"] == NOT_MAPPED
    assert provider_status("stockx", mapped, None, True)["status"] == "completed"
    assert provider_status("alias", mapped, None, False)["status"] == "pending"


async def test_retry_sync_requires_style(mock_session):
    mock_session.execute.return_value = _scalars_result([])

    with pytest.raises(StyleNotFoundError):
        await retry_sync(mock_session, "dd1391-100")


@patch("market_sync.services.sync_status.enqueue_job", new_callable=AsyncMock)
async def test_retry_sync_skips_active_and_unmapped(mock_enqueue, mock_session):
    mock_session.execute.side_effect = [
        _scalars_result([StyleCatalog(style_id="DD1391-100")]),
        _scalars_result([SyncJob(style_id="DD1391-100", provider="stockx", status="processing")]),
        _scalars_result([]),
    ]

    result = await retry_sync(mock_session, "dd1391-100")

    assert result == {
        "styleId": "DD1391-100",
        "jobsCreated": 0,
        "errors": ["No Alias catalog ID for DD1391-100 - cannot sync"],
    }
    mock_enqueue.assert_not_awaited()


@patch("market_sync.services.sync_status.enqueue_job", new_callable=AsyncMock)
async def test_retry_sync_requeues_failed_jobs(mock_enqueue, mock_session):
    mock_session.execute.side_effect = [
        _scalars_result([StyleCatalog(style_id="DD1391-100", alias_catalog_id="cat-1")]),
        _scalars_result([
            SyncJob(style_id="DD1391-100", provider="stockx", status="failed"),
            SyncJob(style_id="DD1391-100", provider="alias", status="completed"),
        ]),
        _scalars_result([]),
        _scalars_result([]),
    ]

    result = await retry_sync(mock_session, "DD1391-100")

    assert result["jobsCreated"] == 1
    mock_enqueue.assert_awaited_once_with(mock_session, "DD1391-100", "stockx")


@patch("market_sync.services.sync_status.enqueue_job", new_callable=AsyncMock)
async def test_retry_sync_skips_synced_data_without_job(mock_enqueue, mock_session):
    mock_session.execute.side_effect = [
        _scalars_result([
            StyleCatalog(style_id="DD1391-100", stockx_url_key="nike-dunk", alias_catalog_id="cat-1"),
        ]),
        _scalars_result([]),
        _scalars_result(["DD1391-100"]),
        _scalars_result(["cat-1"]),
    ]

    result = await retry_sync(mock_session, "DD1391-100")

    assert result == {"styleId": "DD1391-100", "jobsCreated": 0, "errors": []}
    mock_enqueue.assert_not_awaited()


@patch("market_sync.services.sync_status.enqueue_job", new_callable=AsyncMock)
async def test_retry_sync_alias_with_job_is_not_reported_unmapped(mock_enqueue, mock_session):
    mock_session.execute.side_effect = [
        _scalars_result([StyleCatalog(style_id="DD1391-100")]),
        _scalars_result([SyncJob(style_id="DD1391-100", provider="alias", status="failed")]),
        _scalars_result([]),
    ]

    result = await retry_sync(mock_session, "DD1391-100", provider="alias")

    assert result == {"styleId": "DD1391-100", "jobsCreated": 1, "errors": []}
    mock_enqueue.assert_awaited_once_with(mock_session, "DD1391-100", "alias")


@patch("market_sync.services.sync_status.enqueue_job", new_callable=AsyncMock)
async def test_retry_sync_queues_unmapped_stockx(mock_enqueue, mock_session):
    mock_session.execute.side_effect = [
        _scalars_result([StyleCatalog(style_id="DD1391-100")]),
        _scalars_result([]),
        _scalars_result([]),
    ]

    result = await retry_sync(mock_session, "DD1391-100", provider="stockx")

    assert result == {"styleId": "DD1391-100", "jobsCreated": 1, "errors": []}
    mock_enqueue.assert_awaited_once_with(mock_session, "DD1391-100", "stockx")


@patch("market_sync.services.sync_status.enqueue_job", new_callable=AsyncMock)
async def test_enqueue_for_style_queues_alias_only_when_mapped(mock_enqueue, mock_session):
    mock_enqueue.side_effect = [11, 12]
    mock_session.get.return_value = StyleCatalog(style_id="DD1391-100")

    assert await enqueue_for_style(mock_session, "DD1391-100") == {"stockx": 11}

    mock_session.get.return_value = StyleCatalog(style_id="DD1391-100", alias_catalog_id="cat-1")
    mock_enqueue.side_effect = [21, 22]
    assert await enqueue_for_style(mock_session, "DD1391-100") == {"stockx": 21, "alias": 22}
