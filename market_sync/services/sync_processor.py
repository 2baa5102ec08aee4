"""
Sync job processor: claims a batch from the queue and runs each job.

Claiming and each job run in their own transactions, so a crash halfway
through a batch leaves finished jobs completed and the rest in processing
until stale recovery returns them to the queue.
"""
import asyncio
import logging
import time
import uuid
from typing import Any, AsyncContextManager, Callable, Dict, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from market_sync.core.config import get_settings
from market_sync.core.database import execute_with_deadlock_retry, get_isolated_db_session
from market_sync.core.exceptions import MarketSyncError, MissingMappingError
from market_sync.core.logging import LogContext, log_performance
from market_sync.core.prometheus_metrics import sync_job_duration_seconds
from market_sync.models.alias import AliasProduct
from market_sync.models.catalog import StyleCatalog
from market_sync.models.stockx import StockxProduct
from market_sync.models.sync_queue import SyncJob, SyncJobStatus
from market_sync.services.alias_sync import sync_alias_product
from market_sync.services.stockx_sync import sync_stockx_product_by_sku
from market_sync.services.sync_queue import (
    claim_jobs,
    complete_job,
    fail_job,
    recover_stale_jobs,
)

settings = get_settings()
logger = logging.getLogger(__name__)

SessionScope = Callable[[], AsyncContextManager[AsyncSession]]

STYLE_NOT_FOUND_ERROR = "Style not found in catalog"

# Style catalog columns filled from provider data when still empty
_STOCKX_BACKFILL = {"brand": "brand", "name": "title", "colorway": "colorway"}
_ALIAS_BACKFILL = {"brand": "brand", "name": "name", "product_category": "product_category"}


async def backfill_style(session: AsyncSession, style: StyleCatalog, provider: str) -> None:
    """Copy brand/name (and colorway or category) onto the style where it has none."""
    if provider == "stockx":
        product = (
            await session.execute(
                select(StockxProduct).where(StockxProduct.style_id == style.style_id).limit(1)
            )
        ).scalar_one_or_none()
        fields = _STOCKX_BACKFILL
    else:
        product = await session.get(AliasProduct, style.alias_catalog_id) if style.alias_catalog_id else None
        fields = _ALIAS_BACKFILL

    if product is None:
        return

    for style_field, product_field in fields.items():
        value = getattr(product, product_field)
        if value and not getattr(style, style_field):
            setattr(style, style_field, value)
    await session.flush()


async def run_job(session: AsyncSession, job: SyncJob) -> str:
    """
    Run one claimed job and record its outcome in the same transaction.

    Returns:
        The job's new status

    Raises:
        MissingMappingError: Alias job for a style without alias_catalog_id
    """
    style = await session.get(StyleCatalog, job.style_id)
    if style is None:
        return await fail_job(session, job.id, STYLE_NOT_FOUND_ERROR)

    if job.provider == "stockx":
        result = await sync_stockx_product_by_sku(session, style.style_id)
    else:
        if not style.alias_catalog_id:
            raise MissingMappingError(
                f"No alias_catalog_id for {style.style_id}",
                style_id=style.style_id,
                provider="alias",
            )
        result = await sync_alias_product(session, style.alias_catalog_id, style_id=style.style_id)

    if not result.success:
        return await fail_job(session, job.id, result.error_summary())

    await backfill_style(session, style, job.provider)
    await complete_job(session, job.id)
    return SyncJobStatus.COMPLETED.value


async def _process_one(job: SyncJob, session_scope: SessionScope) -> Optional[str]:
    """Run a job; returns the error text when it did not complete."""
    try:
        async with session_scope() as session:
            status = await run_job(session, job)
            if status == SyncJobStatus.COMPLETED.value:
                return None
            refreshed = await session.get(SyncJob, job.id)
            return refreshed.last_error if refreshed else status
    except MarketSyncError as e:
        error = e.detail
    except Exception as e:
        logger.error(f"Unexpected error in sync job {job.id}: {e}", exc_info=True)
        error = f"{type(e).__name__}: {e}"

    # The job's transaction was rolled back; record the failure separately
    async with session_scope() as session:
        await fail_job(session, job.id, error)
    return error


async def process_sync_batch(
    limit: Optional[int] = None,
    provider: Optional[str] = None,
    job_delay: Optional[float] = None,
    session_scope: SessionScope = get_isolated_db_session,
) -> Dict[str, Any]:
    """
    Recover stale jobs, claim a batch and process it sequentially.

    Args:
        limit: Jobs to claim (defaults to SYNC_BATCH_SIZE)
        provider: Only claim jobs for this provider
        job_delay: Seconds between jobs (defaults to SYNC_JOB_DELAY_MS)
        session_scope: Session factory (isolated sessions for Celery)

    Returns:
        {"processed", "successful", "failed", "recovered", "errors": [...]}
    """
    limit = limit or settings.SYNC_BATCH_SIZE
    if job_delay is None:
        job_delay = settings.SYNC_JOB_DELAY_MS / 1000

    summary: Dict[str, Any] = {
        "processed": 0,
        "successful": 0,
        "failed": 0,
        "recovered": 0,
        "errors": [],
    }

    async def _recover_and_claim():
        async with session_scope() as session:
            recovered = await recover_stale_jobs(session)
            return recovered, await claim_jobs(session, limit=limit, provider=provider)

    summary["recovered"], jobs = await execute_with_deadlock_retry(_recover_and_claim)

    if not jobs:
        logger.info(f"No sync jobs to process ({provider or 'all providers'})")
        return summary

    batch_start = time.monotonic()
    for index, job in enumerate(jobs):
        if index and job_delay:
            await asyncio.sleep(job_delay)

        with LogContext(trace_id=str(uuid.uuid4()), job_id=str(job.id), style_id=job.style_id):
            logger.info(
                f"Processing {job.provider} sync for {job.style_id} "
                f"(attempt {job.attempts}/{job.max_attempts})"
            )
            start = time.monotonic()
            error = await _process_one(job, session_scope)
            sync_job_duration_seconds.labels(provider=job.provider).observe(time.monotonic() - start)

        summary["processed"] += 1
        if error is None:
            summary["successful"] += 1
        else:
            summary["failed"] += 1
            summary["errors"].append({
                "jobId": job.id,
                "styleId": job.style_id,
                "provider": job.provider,
                "error": error,
            })

    log_performance(
        logger,
        "process_sync_batch",
        time.monotonic() - batch_start,
        processed=summary["processed"],
        successful=summary["successful"],
        failed=summary["failed"],
    )
    return summary
