"""
Unit tests for the sync worker CLI.
"""
from unittest.mock import AsyncMock, patch

import pytest

from market_sync import worker
from market_sync.core.exceptions import DatabaseError


def _summary(processed, failed=0, errors=None):
    return {
        "processed": processed,
        "successful": processed - failed,
        "failed": failed,
        "recovered": 0,
        "errors": errors or [],
    }


def test_parser_defaults():
    args = worker.build_parser().parse_args([])

    assert not args.watch and not args.drain
    assert args.provider is None
    assert args.limit == 10


def test_parser_modes_are_exclusive():
    with pytest.raises(SystemExit):
        worker.build_parser().parse_args(["--watch", "--drain"])


def test_parser_rejects_unknown_provider():
    with pytest.raises(SystemExit):
        worker.build_parser().parse_args(["--provider", "goat"])


def test_format_summary_lists_errors():
    text = worker.format_summary(_summary(2, failed=1, errors=[
        {"jobId": 4, "styleId": "A-1", "provider": "alias", "error": "boom"},
    ]))

    assert text.splitlines() == [
        "Processed: 2  Successful: 1  Failed: 1  Recovered: 0",
        "  - job 4 A-1/alias: boom",
    ]


@pytest.fixture
def mock_sleep():
    with patch("market_sync.worker.asyncio.sleep", new_callable=AsyncMock) as sleep:
        yield sleep


async def test_batch_mode_runs_once(mock_sleep):
    with patch("market_sync.worker.process_sync_batch", new_callable=AsyncMock,
               return_value=_summary(3)) as process:
        summaries = await worker.run_batches("batch", 5, "stockx", 1000)

    assert len(summaries) == 1
    assert process.await_args.kwargs["limit"] == 5
    assert process.await_args.kwargs["provider"] == "stockx"
    mock_sleep.assert_not_awaited()


async def test_drain_stops_after_empty_batches(mock_sleep):
    results = [_summary(2), _summary(0), _summary(0), _summary(0)]
    with patch("market_sync.worker.process_sync_batch", new_callable=AsyncMock, side_effect=results):
        summaries = await worker.run_batches("drain", 10, None, 1000)

    assert len(summaries) == 4
    assert mock_sleep.await_count == 2


async def test_drain_resets_empty_count(mock_sleep):
    results = [_summary(0), _summary(0), _summary(1), _summary(0), _summary(0), _summary(0)]
    with patch("market_sync.worker.process_sync_batch", new_callable=AsyncMock, side_effect=results):
        summaries = await worker.run_batches("drain", 10, None, 0)

    assert len(summaries) == 6


async def test_watch_sleeps_between_batches(mock_sleep):
    with patch("market_sync.worker.process_sync_batch", new_callable=AsyncMock, return_value=_summary(0)):
        summaries = await worker.run_batches("watch", 10, None, 2500, max_batches=3)

    assert len(summaries) == 3
    mock_sleep.assert_awaited_with(2.5)
    assert mock_sleep.await_count == 2


def test_main_rejects_bad_limit():
    assert worker.main(["--limit", "0"]) == 2


def test_main_success():
    with patch("market_sync.worker._main", new_callable=AsyncMock) as run:
        assert worker.main(["--drain", "--provider", "alias"]) == 0

    args = run.await_args.args[0]
    assert args.drain is True
    assert args.provider == "alias"


def test_main_fatal_error():
    with patch("market_sync.worker._main", new_callable=AsyncMock,
               side_effect=DatabaseError("Deadlock persisted after 3 attempts")):
        assert worker.main([]) == 1
