"""
Retention pruning for price and sales history tables.
"""
import logging
from datetime import timedelta
from typing import Dict, Optional

from sqlalchemy import delete, func
from sqlalchemy.ext.asyncio import AsyncSession

from market_sync.core.config import get_settings
from market_sync.core.logging import log_operation
from market_sync.core.prometheus_metrics import history_rows_pruned_total
from market_sync.models.alias import AliasPriceHistory, AliasSalesHistory
from market_sync.models.stockx import StockxPriceHistory

settings = get_settings()
logger = logging.getLogger(__name__)


async def _prune(session: AsyncSession, model, column, days: int) -> int:
    result = await session.execute(
        delete(model).where(column < func.now() - timedelta(days=days))
    )
    deleted = result.rowcount or 0
    history_rows_pruned_total.labels(table=model.__tablename__).inc(deleted)
    return deleted


async def prune_market_history(
    session: AsyncSession,
    price_history_days: Optional[int] = None,
    sales_history_days: Optional[int] = None,
) -> Dict[str, int]:
    """
    Delete price history older than 30 days and Alias sales older than 90 days.

    Returns:
        Deleted row count per table
    """
    price_days = settings.PRICE_HISTORY_RETENTION_DAYS if price_history_days is None else price_history_days
    sales_days = settings.SALES_HISTORY_RETENTION_DAYS if sales_history_days is None else sales_history_days

    counts = {
        StockxPriceHistory.__tablename__: await _prune(
            session, StockxPriceHistory, StockxPriceHistory.recorded_at, price_days
        ),
        AliasPriceHistory.__tablename__: await _prune(
            session, AliasPriceHistory, AliasPriceHistory.recorded_at, price_days
        ),
        AliasSalesHistory.__tablename__: await _prune(
            session, AliasSalesHistory, AliasSalesHistory.purchased_at, sales_days
        ),
    }
    log_operation(logger, "prune_market_history", deleted=counts)
    return counts
