"""
Per-style sync status across providers, and manual retry / enqueue helpers.
"""
import logging
from typing import Any, Dict, Iterable, List, Optional, Set

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from market_sync.core.exceptions import StyleNotFoundError
from market_sync.core.validators import PROVIDERS, normalize_style_id, normalize_style_ids
from market_sync.models.alias import AliasProduct
from market_sync.models.catalog import StyleCatalog
from market_sync.models.stockx import StockxProduct
from market_sync.models.sync_queue import SyncJob, SyncJobStatus
from market_sync.services.sync_queue import enqueue_job

logger = logging.getLogger(__name__)

NOT_MAPPED = "not_mapped"
ACTIVE_STATUSES = (SyncJobStatus.PENDING.value, SyncJobStatus.PROCESSING.value)
RETRY_SKIP_STATUSES = (SyncJobStatus.PROCESSING.value, SyncJobStatus.COMPLETED.value)


def derive_overall_status(stockx: str, alias: str) -> str:
    """
    Combine both provider statuses into one.

    syncing > ready > not_mapped > partial (one completed) > failed > partial.
    """
    statuses = (stockx, alias)
    if any(s in ACTIVE_STATUSES for s in statuses):
        return "syncing"
    if stockx == SyncJobStatus.COMPLETED.value and alias == SyncJobStatus.COMPLETED.value:
        return "ready"
    if stockx == NOT_MAPPED and alias == NOT_MAPPED:
        return NOT_MAPPED
    if SyncJobStatus.COMPLETED.value in statuses:
        return "partial"
    if SyncJobStatus.FAILED.value in statuses:
        return "failed"
    return "partial"


def provider_status(
    provider: str,
    style: Optional[StyleCatalog],
    job: Optional[SyncJob],
    has_data: bool,
) -> Dict[str, Any]:
    """Status entry for one provider of one style."""
    if job is not None:
        status = job.status
    elif style is None or not style.is_mapped(provider):
        status = NOT_MAPPED
    elif has_data:
        status = SyncJobStatus.COMPLETED.value
    else:
        status = SyncJobStatus.PENDING.value

    return {
        "status": status,
        "attempts": job.attempts if job else 0,
        "lastError": job.last_error if job else None,
        "nextRetryAt": job.next_retry_at.isoformat() if job and job.next_retry_at else None,
    }


def _style_status(
    style_id: str,
    style: Optional[StyleCatalog],
    jobs: Dict[str, SyncJob],
    stockx_skus: Set[str],
    alias_catalog_ids: Set[str],
) -> Dict[str, Any]:
    stockx = provider_status("stockx", style, jobs.get("stockx"), style_id in stockx_skus)
    alias = provider_status(
        "alias",
        style,
        jobs.get("alias"),
        bool(style and style.alias_catalog_id in alias_catalog_ids),
    )
    return {
        "styleId": style_id,
        "stockx": stockx,
        "alias": alias,
        "overall": derive_overall_status(stockx["status"], alias["status"]),
    }


async def _load_status_inputs(session: AsyncSession, style_ids: List[str]):
    styles = {
        style.style_id: style
        for style in (
            await session.execute(select(StyleCatalog).where(StyleCatalog.style_id.in_(style_ids)))
        ).scalars()
    }

    jobs: Dict[str, Dict[str, SyncJob]] = {}
    for job in (await session.execute(select(SyncJob).where(SyncJob.style_id.in_(style_ids)))).scalars():
        jobs.setdefault(job.style_id, {})[job.provider] = job

    stockx_skus = set(
        (
            await session.execute(
                select(StockxProduct.style_id).where(StockxProduct.style_id.in_(style_ids))
            )
        ).scalars()
    )

    catalog_ids = [s.alias_catalog_id for s in styles.values() if s.alias_catalog_id]
    alias_catalog_ids: Set[str] = set()
    if catalog_ids:
        alias_catalog_ids = set(
            (
                await session.execute(
                    select(AliasProduct.alias_catalog_id).where(
                        AliasProduct.alias_catalog_id.in_(catalog_ids)
                    )
                )
            ).scalars()
        )

    return styles, jobs, stockx_skus, alias_catalog_ids


async def get_sync_status(session: AsyncSession, style_id: str) -> Dict[str, Any]:
    """
    Sync status of one style.

    Returns:
        {"styleId", "stockx": {...}, "alias": {...}, "overall"}
    """
    return (await get_sync_status_batch(session, [style_id]))[normalize_style_id(style_id)]


async def get_sync_status_batch(session: AsyncSession, style_ids: Iterable[str]) -> Dict[str, Dict[str, Any]]:
    """Sync status for many styles with one query per table."""
    normalized = normalize_style_ids(style_ids)
    if not normalized:
        return {}

    styles, jobs, stockx_skus, alias_catalog_ids = await _load_status_inputs(session, normalized)
    return {
        style_id: _style_status(
            style_id, styles.get(style_id), jobs.get(style_id, {}), stockx_skus, alias_catalog_ids
        )
        for style_id in normalized
    }


async def retry_sync(
    session: AsyncSession,
    style_id: str,
    provider: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Re-queue sync jobs for a style.

    Providers whose status is processing or completed (a finished job, or
    synced data with no job) are skipped. StockX is queued even when not
    mapped since it syncs by SKU search. An unmapped Alias provider is
    reported in errors instead.

    Raises:
        StyleNotFoundError: Style not in the catalog
    """
    style_id = normalize_style_id(style_id)
    styles, jobs, stockx_skus, alias_catalog_ids = await _load_status_inputs(session, [style_id])
    style = styles.get(style_id)
    if style is None:
        raise StyleNotFoundError(style_id)

    status = _style_status(style_id, style, jobs.get(style_id, {}), stockx_skus, alias_catalog_ids)

    jobs_created = 0
    errors: List[str] = []
    for name in [provider] if provider else PROVIDERS:
        current = status[name]["status"]
        if current in RETRY_SKIP_STATUSES:
            logger.info(f"Skipping {name} retry for {style_id}: status is {current}")
            continue
        if name == "alias" and current == NOT_MAPPED:
            errors.append(f"No Alias catalog ID for {style_id} - cannot sync")
            continue

        await enqueue_job(session, style_id, name)
        jobs_created += 1

    return {"styleId": style_id, "jobsCreated": jobs_created, "errors": errors}


async def enqueue_for_style(session: AsyncSession, style_id: str) -> Dict[str, int]:
    """
    Queue syncs for a newly catalogued style: StockX always, Alias when mapped.

    Returns:
        {provider: job_id}

    Raises:
        StyleNotFoundError: Style not in the catalog
    """
    style_id = normalize_style_id(style_id)
    style = await session.get(StyleCatalog, style_id)
    if style is None:
        raise StyleNotFoundError(style_id)

    job_ids = {"stockx": await enqueue_job(session, style_id, "stockx")}
    if style.is_mapped("alias"):
        job_ids["alias"] = await enqueue_job(session, style_id, "alias")

    logger.info(f"Queued {', '.join(job_ids)} sync for {style_id}")
    return job_ids
