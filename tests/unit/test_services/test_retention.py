"""
Unit tests for history retention pruning.
"""
from datetime import timedelta
from unittest.mock import MagicMock

from market_sync.services.retention import prune_market_history, settings


async def test_prune_returns_counts_per_table(mock_session):
    mock_session.execute.side_effect = [
        MagicMock(rowcount=5),
        MagicMock(rowcount=0),
        MagicMock(rowcount=None),
    ]

    counts = await prune_market_history(mock_session)

    assert counts == {
        "inventory_v4_stockx_price_history": 5,
        "inventory_v4_alias_price_history": 0,
        "inventory_v4_alias_sales_history": 0,
    }
    assert mock_session.execute.await_count == 3


async def test_prune_uses_given_windows(mock_session):
    mock_session.execute.return_value = MagicMock(rowcount=1)

    await prune_market_history(mock_session, price_history_days=7, sales_history_days=14)

    sales_stmt = mock_session.execute.await_args_list[2].args[0]
    assert "inventory_v4_alias_sales_history.purchased_at" in str(sales_stmt)


def _windows(mock_session):
    return [
        next(v for v in call.args[0].compile().params.values() if isinstance(v, timedelta))
        for call in mock_session.execute.await_args_list
    ]


async def test_prune_zero_day_window_is_honoured(mock_session):
    mock_session.execute.return_value = MagicMock(rowcount=1)

    await prune_market_history(mock_session, price_history_days=0)

    assert _windows(mock_session) == [
        timedelta(0),
        timedelta(0),
        timedelta(days=settings.SALES_HISTORY_RETENTION_DAYS),
    ]
