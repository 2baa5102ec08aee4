"""
Unit tests for the sync queue primitives.
"""
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from sqlalchemy.dialects import postgresql

from market_sync.core.exceptions import MISSING_MAPPING_PREFIX, SyncJobNotFoundError
from market_sync.models.sync_queue import SyncJob
from market_sync.services.sync_queue import (
    MAX_ERROR_LENGTH,
    claim_jobs,
    complete_job,
    compute_retry_delay,
    enqueue_job,
    fail_job,
    get_queue_stats,
    is_permanent_error,
    recover_stale_jobs,
    truncate_error,
)


def _compiled(stmt) -> str:
    return str(stmt.compile(dialect=postgresql.dialect()))


def _result(scalar=None, scalars=None):
    result = MagicMock()
    result.scalar_one_or_none.return_value = scalar
    result.scalar_one.return_value = scalar
    result.scalars.return_value.all.return_value = scalars or []
    return result


def _job(**overrides) -> SyncJob:
    values = dict(
        id=7,
        style_id="DD1391-100",
        provider="stockx",
        status="processing",
        attempts=1,
        max_attempts=3,
    )
    values.update(overrides)
    return SyncJob(**values)


@pytest.mark.parametrize(
    "attempts, minutes",
    [(1, 1), (2, 4), (3, 16), (0, 1)],
)
def test_compute_retry_delay(attempts, minutes):
    assert compute_retry_delay(attempts) == timedelta(minutes=minutes)


def test_is_permanent_error():
    assert is_permanent_error(f"{MISSING_MAPPING_PREFIX} No alias_catalog_id for X")
    assert not is_permanent_error("[market_data] StockX API error 500")
    assert not is_permanent_error(None)
    assert not is_permanent_error(f"prefix {MISSING_MAPPING_PREFIX}")


def test_truncate_error():
    assert len(truncate_error("x" * 5000)) == MAX_ERROR_LENGTH
    assert truncate_error("short") == "short"
    assert truncate_error(None) is None


async def test_enqueue_job_returns_upserted_id(mock_session):
    mock_session.execute.return_value = _result(scalar=42)

    job_id = await enqueue_job(mock_session, "DD1391-100", "stockx")

    assert job_id == 42
    sql = _compiled(mock_session.execute.call_args.args[0])
    assert "ON CONFLICT ON CONSTRAINT uq_sync_queue_style_provider DO UPDATE" in sql
    assert "WHERE inventory_v4_sync_queue.status IN" in sql


async def test_enqueue_job_keeps_active_job(mock_session):
    mock_session.execute.side_effect = [_result(scalar=None), _result(scalar=5)]

    job_id = await enqueue_job(mock_session, "DD1391-100", "alias")

    assert job_id == 5
    assert mock_session.execute.await_count == 2


async def test_claim_jobs_uses_skip_locked(mock_session):
    now = datetime.now(timezone.utc)
    jobs = [_job(id=2, created_at=now), _job(id=1, created_at=now - timedelta(minutes=1))]
    mock_session.execute.return_value = _result(scalars=jobs)

    claimed = await claim_jobs(mock_session, limit=5, provider="stockx")

    assert [job.id for job in claimed] == [1, 2]
    sql = _compiled(mock_session.execute.call_args.args[0])
    assert "FOR UPDATE SKIP LOCKED" in sql
    assert "attempts + " in sql
    assert "RETURNING" in sql


async def test_complete_job_missing_raises(mock_session):
    mock_session.execute.return_value = _result(scalar=None)

    with pytest.raises(SyncJobNotFoundError):
        await complete_job(mock_session, 99)


async def test_fail_job_schedules_retry(mock_session):
    job = _job(attempts=1)
    mock_session.get.return_value = job

    status = await fail_job(mock_session, job.id, "[market_data] StockX API error 500")

    assert status == "pending"
    assert job.next_retry_at is not None
    assert job.last_error == "[market_data] StockX API error 500"
    mock_session.flush.assert_awaited_once()


async def test_fail_job_after_max_attempts(mock_session):
    job = _job(attempts=3)
    mock_session.get.return_value = job

    status = await fail_job(mock_session, job.id, "still broken")

    assert status == "failed"
    assert job.next_retry_at is None
    assert job.completed_at is not None


async def test_fail_job_missing_mapping_is_permanent(mock_session):
    job = _job(provider="alias", attempts=1)
    mock_session.get.return_value = job

    status = await fail_job(mock_session, job.id, f"{MISSING_MAPPING_PREFIX} No alias_catalog_id for X")

    assert status == "failed"


async def test_fail_job_truncates_error(mock_session):
    job = _job(attempts=1)
    mock_session.get.return_value = job

    await fail_job(mock_session, job.id, "e" * 2000)

    assert len(job.last_error) == MAX_ERROR_LENGTH


async def test_fail_job_missing_raises(mock_session):
    mock_session.get.return_value = None

    with pytest.raises(SyncJobNotFoundError):
        await fail_job(mock_session, 1, "error")


async def test_recover_stale_jobs_counts_rows(mock_session):
    mock_session.execute.return_value = _result(scalars=[1, 2, 3])

    recovered = await recover_stale_jobs(mock_session, stale_minutes=5)

    assert recovered == 3
    sql = _compiled(mock_session.execute.call_args.args[0])
    assert "inventory_v4_sync_queue.status = " in sql


def test_style_id_references_catalog_with_cascade():
    (fk,) = SyncJob.__table__.c.style_id.foreign_keys

    assert fk.target_fullname == "inventory_v4_style_catalog.style_id"
    assert fk.ondelete == "CASCADE"


async def test_recover_stale_jobs_resets_to_pending(mock_session):
    mock_session.execute.return_value = _result(scalars=[4])

    await recover_stale_jobs(mock_session, stale_minutes=5)

    stmt = mock_session.execute.call_args.args[0]
    params = stmt.compile(dialect=postgresql.dialect()).params
    assert "Timeout: job processing exceeded 5 minutes" in params.values()
    assert timedelta(minutes=5) in params.values()
    assert "next_retry_at=" in _compiled(stmt)
    assert params.get("next_retry_at") is None


async def test_recover_stale_jobs_zero_minutes_is_honoured(mock_session):
    mock_session.execute.return_value = _result(scalars=[])

    assert await recover_stale_jobs(mock_session, stale_minutes=0) == 0

    params = mock_session.execute.call_args.args[0].compile(dialect=postgresql.dialect()).params
    assert "Timeout: job processing exceeded 0 minutes" in params.values()
    assert timedelta(0) in params.values()


def _stats_result(rows):
    result = MagicMock()
    result.all.return_value = rows
    return result


async def test_get_queue_stats_zero_fills_providers(mock_session):
    mock_session.execute.return_value = _stats_result([
        ("stockx", "pending", 3, 2, 0),
        ("stockx", "processing", 1, 0, 1),
    ])

    stats = await get_queue_stats(mock_session)

    assert stats["stockx"] == {
        "pending": 3, "processing": 1, "completed": 0, "failed": 0, "due": 2, "stale": 1,
    }
    assert stats["alias"] == {
        "pending": 0, "processing": 0, "completed": 0, "failed": 0, "due": 0, "stale": 0,
    }
    sql = _compiled(mock_session.execute.call_args.args[0])
    assert "FILTER (WHERE" in sql
    assert "GROUP BY inventory_v4_sync_queue.provider, inventory_v4_sync_queue.status" in sql


async def test_get_queue_stats_single_provider(mock_session):
    mock_session.execute.return_value = _stats_result([("alias", "failed", 2, 0, 0)])

    stats = await get_queue_stats(mock_session, provider="alias")

    assert list(stats) == ["alias"]
    assert stats["alias"]["failed"] == 2
    assert "WHERE inventory_v4_sync_queue.provider = " in _compiled(mock_session.execute.call_args.args[0])
