"""
API endpoints for sync status, retries and queue operations.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from market_sync.api.dependencies import get_current_user_id, verify_cron_secret
from market_sync.api.v1.schemas import (
    BatchStatusRequest,
    BatchStatusResponse,
    EnqueueRequest,
    EnqueueResponse,
    ProcessBatchResponse,
    QueueStatsResponse,
    RecoverResponse,
    RetrySyncResponse,
    StaleRefreshResponse,
    StyleSyncStatusResponse,
)
from market_sync.core.database import get_db_session, get_db_session_context
from market_sync.core.exceptions import MissingMappingError, StyleNotFoundError
from market_sync.core.validators import (
    normalize_style_id,
    validate_batch_limit,
    validate_provider,
)
from market_sync.models.catalog import StyleCatalog
from market_sync.services import stockx_sync, sync_processor, sync_queue, sync_status

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/sync", tags=["sync"])


@router.get("/status/{style_id}", response_model=StyleSyncStatusResponse)
async def get_style_status(
    style_id: str,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
) -> StyleSyncStatusResponse:
    """Sync status of one style for StockX, Alias and overall."""
    return StyleSyncStatusResponse(**await sync_status.get_sync_status(session, style_id))


@router.post("/status/batch", response_model=BatchStatusResponse)
async def get_batch_status(
    request: BatchStatusRequest,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
) -> BatchStatusResponse:
    """Sync status for up to 200 styles."""
    statuses = await sync_status.get_sync_status_batch(session, request.style_ids)
    return BatchStatusResponse(statuses=statuses)


@router.post("/retry/{style_id}", response_model=RetrySyncResponse)
async def retry_style_sync(
    style_id: str,
    provider: Optional[str] = None,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
) -> RetrySyncResponse:
    """
    Re-queue syncs for a style.

    Providers with a processing or completed job are skipped.
    """
    result = await sync_status.retry_sync(session, style_id, validate_provider(provider))
    logger.info(f"User {user_id} retried sync for {result['styleId']}: {result['jobsCreated']} job(s)")
    return RetrySyncResponse(**result)


@router.post("/enqueue", response_model=EnqueueResponse, status_code=status.HTTP_202_ACCEPTED)
async def enqueue_style_sync(
    request: EnqueueRequest,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
) -> EnqueueResponse:
    """
    Queue a sync for a catalogued style.

    Without a provider, StockX is queued and Alias too when the style has an
    alias_catalog_id.
    """
    style_id = normalize_style_id(request.style_id)

    if request.provider is None:
        job_ids = await sync_status.enqueue_for_style(session, style_id)
        return EnqueueResponse(style_id=style_id, job_ids=job_ids)

    style = await session.get(StyleCatalog, style_id)
    if style is None:
        raise StyleNotFoundError(style_id)
    if request.provider == "alias" and not style.is_mapped("alias"):
        raise MissingMappingError(
            f"No alias_catalog_id for {style_id}", style_id=style_id, provider="alias"
        )

    job_id = await sync_queue.enqueue_job(session, style_id, request.provider)
    return EnqueueResponse(style_id=style_id, job_ids={request.provider: job_id})


@router.get("/queue/stats", response_model=QueueStatsResponse)
async def get_queue_stats(
    provider: Optional[str] = None,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
) -> QueueStatsResponse:
    """Job counts per provider and status."""
    stats = await sync_queue.get_queue_stats(session, validate_provider(provider))
    return QueueStatsResponse(providers=stats)


# Cron triggers (Authorization: Bearer <CRON_SECRET>)

@router.post(
    "/cron/process",
    response_model=ProcessBatchResponse,
    dependencies=[Depends(verify_cron_secret)],
)
async def cron_process_batch(
    limit: int = 10,
    provider: Optional[str] = None,
) -> ProcessBatchResponse:
    """Recover stale jobs, then claim and process one batch."""
    summary = await sync_processor.process_sync_batch(
        limit=validate_batch_limit(limit),
        provider=validate_provider(provider),
        session_scope=get_db_session_context,
    )
    return ProcessBatchResponse(**summary)


@router.post(
    "/cron/recover",
    response_model=RecoverResponse,
    dependencies=[Depends(verify_cron_secret)],
)
async def cron_recover_stale(
    session: AsyncSession = Depends(get_db_session),
) -> RecoverResponse:
    """Return stuck processing jobs to pending."""
    return RecoverResponse(recovered=await sync_queue.recover_stale_jobs(session))


@router.post(
    "/cron/refresh-stockx",
    response_model=StaleRefreshResponse,
    dependencies=[Depends(verify_cron_secret)],
)
async def cron_refresh_stockx(
    max_age_hours: Optional[int] = None,
    limit: Optional[int] = None,
    session: AsyncSession = Depends(get_db_session),
) -> StaleRefreshResponse:
    """Refresh StockX products whose market data is older than the threshold."""
    summary = await stockx_sync.refresh_stale_stockx_products(
        session, max_age_hours=max_age_hours, limit=limit
    )
    return StaleRefreshResponse(**summary)
