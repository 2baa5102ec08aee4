"""
Celery tasks for the market data sync queue.
"""
import asyncio
import logging
from typing import Any, Dict, Optional

from market_sync.core.database import get_isolated_db_session
from market_sync.core.exceptions import StyleNotFoundError
from market_sync.core.validators import normalize_style_id, validate_provider
from market_sync.models.catalog import StyleCatalog
from market_sync.services import retention, stockx_sync, sync_processor, sync_queue, sync_status
from market_sync.tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


def run_async(coro):
    """
    Run async code in a Celery task.

    asyncio.run() gives every task a fresh event loop and closes it, so
    sessions must come from get_isolated_db_session (engine per loop).
    """
    return asyncio.run(coro)


@celery_app.task
def process_sync_batch(limit: Optional[int] = None, provider: Optional[str] = None) -> Dict[str, Any]:
    """
    Claim and process one batch of sync jobs.

    Provider errors are recorded on the failing job with a backoff, so the
    batch itself never raises them.

    Args:
        limit: Jobs to claim (defaults to SYNC_BATCH_SIZE)
        provider: stockx, alias, or None for both
    """
    return run_async(sync_processor.process_sync_batch(limit=limit, provider=provider))


async def _recover_stale_sync_jobs_async(stale_minutes: Optional[int]) -> int:
    async with get_isolated_db_session() as session:
        return await sync_queue.recover_stale_jobs(session, stale_minutes)


@celery_app.task
def recover_stale_sync_jobs(stale_minutes: Optional[int] = None) -> Dict[str, int]:
    """Return stuck processing jobs to pending."""
    return {"recovered": run_async(_recover_stale_sync_jobs_async(stale_minutes))}


async def _enqueue_sync_job_async(style_id: str, provider: str) -> int:
    async with get_isolated_db_session() as session:
        if await session.get(StyleCatalog, style_id) is None:
            raise StyleNotFoundError(style_id)
        return await sync_queue.enqueue_job(session, style_id, provider)


@celery_app.task
def enqueue_sync_job(style_id: str, provider: str) -> Dict[str, Any]:
    """
    Queue a sync job for one style and provider.

    Raises:
        ValidationError: Malformed style id or unknown provider
        StyleNotFoundError: Style not in the catalog
    """
    style_id = normalize_style_id(style_id)
    provider = validate_provider(provider, allow_none=False)
    job_id = run_async(_enqueue_sync_job_async(style_id, provider))
    logger.info(f"Queued {provider} sync job {job_id} for {style_id}")
    return {"jobId": job_id, "styleId": style_id, "provider": provider}


async def _retry_style_sync_async(style_id: str, provider: Optional[str]) -> Dict[str, Any]:
    async with get_isolated_db_session() as session:
        return await sync_status.retry_sync(session, style_id, provider)


@celery_app.task
def retry_style_sync(style_id: str, provider: Optional[str] = None) -> Dict[str, Any]:
    """Re-queue a style's failed or pending provider syncs."""
    return run_async(_retry_style_sync_async(style_id, provider))


async def _refresh_stale_stockx_async(max_age_hours: Optional[int], limit: Optional[int]) -> Dict[str, Any]:
    async with get_isolated_db_session() as session:
        return await stockx_sync.refresh_stale_stockx_products(
            session, max_age_hours=max_age_hours, limit=limit
        )


@celery_app.task
def refresh_stale_stockx_products(
    max_age_hours: Optional[int] = None,
    limit: Optional[int] = None,
) -> Dict[str, Any]:
    """Refresh StockX market data older than STOCKX_STALE_HOURS."""
    return run_async(_refresh_stale_stockx_async(max_age_hours, limit))


async def _prune_market_history_async() -> Dict[str, int]:
    async with get_isolated_db_session() as session:
        return await retention.prune_market_history(session)


@celery_app.task
def prune_market_history() -> Dict[str, int]:
    """Delete price and sales history past its retention window."""
    return run_async(_prune_market_history_async())
