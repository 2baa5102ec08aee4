"""
Durable sync queue backed by the inventory_v4_sync_queue table.

Claiming uses FOR UPDATE SKIP LOCKED so several workers can drain the
queue concurrently without handing the same job out twice. Every function
takes the caller's session; the caller owns the transaction.
"""
import logging
from datetime import timedelta
from typing import Dict, List, Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from market_sync.core.config import get_settings
from market_sync.core.exceptions import MISSING_MAPPING_PREFIX, SyncJobNotFoundError
from market_sync.core.prometheus_metrics import (
    sync_jobs_claimed_total,
    sync_jobs_finished_total,
    sync_jobs_recovered_total,
    sync_queue_depth,
)
from market_sync.models.sync_queue import SyncJob, SyncJobStatus, SyncProvider

settings = get_settings()
logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 1000
STALE_JOB_ERROR = "Timeout: job processing exceeded {minutes} minutes"


def compute_retry_delay(attempts: int) -> timedelta:
    """Backoff before the next attempt: 1, 4, 16... minutes."""
    return timedelta(minutes=4 ** max(attempts - 1, 0))


def is_permanent_error(error: Optional[str]) -> bool:
    """Errors that retrying cannot fix (the style has no provider mapping)."""
    return bool(error) and error.startswith(MISSING_MAPPING_PREFIX)


def truncate_error(error: Optional[str]) -> Optional[str]:
    if error is None:
        return None
    return error[:MAX_ERROR_LENGTH]


async def enqueue_job(session: AsyncSession, style_id: str, provider: str) -> int:
    """
    Queue a sync for (style_id, provider) and return the job id.

    A finished job (completed or failed) is reset to pending with a clean
    slate. A pending or processing job is left untouched.
    """
    stmt = insert(SyncJob).values(
        style_id=style_id,
        provider=provider,
        status=SyncJobStatus.PENDING.value,
        attempts=0,
        max_attempts=settings.SYNC_MAX_ATTEMPTS,
    )
    stmt = stmt.on_conflict_do_update(
        constraint="uq_sync_queue_style_provider",
        set_={
            "status": SyncJobStatus.PENDING.value,
            "attempts": 0,
            "next_retry_at": None,
            "last_error": None,
            "completed_at": None,
        },
        where=SyncJob.status.in_([SyncJobStatus.COMPLETED.value, SyncJobStatus.FAILED.value]),
    ).returning(SyncJob.id)

    result = await session.execute(stmt)
    job_id = result.scalar_one_or_none()

    if job_id is None:
        # Conflict with an active job: the WHERE filtered the update out
        result = await session.execute(
            select(SyncJob.id).where(
                SyncJob.style_id == style_id,
                SyncJob.provider == provider,
            )
        )
        job_id = result.scalar_one()
        logger.debug(f"Sync job for {style_id}/{provider} already active (id={job_id})")
    else:
        logger.info(f"Enqueued {provider} sync for {style_id} (job_id={job_id})")

    return job_id


async def claim_jobs(
    session: AsyncSession,
    limit: int = 10,
    provider: Optional[str] = None,
) -> List[SyncJob]:
    """
    Atomically claim up to `limit` due pending jobs, oldest first.

    Claimed jobs move to processing with attempts incremented and
    last_attempt_at stamped.
    """
    candidates = (
        select(SyncJob.id)
        .where(
            SyncJob.status == SyncJobStatus.PENDING.value,
            or_(SyncJob.next_retry_at.is_(None), SyncJob.next_retry_at <= func.now()),
        )
        .order_by(SyncJob.created_at)
        .limit(limit)
        .with_for_update(skip_locked=True)
    )
    if provider:
        candidates = candidates.where(SyncJob.provider == provider)

    stmt = (
        update(SyncJob)
        .where(SyncJob.id.in_(candidates.scalar_subquery()))
        .values(
            status=SyncJobStatus.PROCESSING.value,
            last_attempt_at=func.now(),
            attempts=SyncJob.attempts + 1,
        )
        .returning(SyncJob)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    jobs = sorted(result.scalars().all(), key=lambda job: job.created_at)

    for job in jobs:
        sync_jobs_claimed_total.labels(provider=job.provider).inc()

    if jobs:
        logger.info(f"Claimed {len(jobs)} sync job(s)", extra={"provider": provider or "all"})
    return jobs


async def complete_job(session: AsyncSession, job_id: int) -> None:
    """Mark a job completed and clear its retry state."""
    result = await session.execute(
        update(SyncJob)
        .where(SyncJob.id == job_id)
        .values(
            status=SyncJobStatus.COMPLETED.value,
            completed_at=func.now(),
            last_error=None,
            next_retry_at=None,
        )
        .returning(SyncJob.provider)
    )
    provider = result.scalar_one_or_none()
    if provider is None:
        raise SyncJobNotFoundError(job_id)

    sync_jobs_finished_total.labels(provider=provider, outcome="completed").inc()


async def fail_job(session: AsyncSession, job_id: int, error: str) -> str:
    """
    Record a failed attempt.

    MISSING_MAPPING errors fail the job immediately. Other errors schedule a
    retry with exponential backoff until max_attempts is reached.

    Returns:
        The job's new status (pending or failed)
    """
    job = await session.get(SyncJob, job_id, with_for_update=True)
    if job is None:
        raise SyncJobNotFoundError(job_id)

    job.last_error = truncate_error(error)

    if is_permanent_error(error) or job.attempts >= job.max_attempts:
        job.status = SyncJobStatus.FAILED.value
        job.completed_at = func.now()
        job.next_retry_at = None
        outcome = "failed"
    else:
        job.status = SyncJobStatus.PENDING.value
        job.next_retry_at = func.now() + compute_retry_delay(job.attempts)
        outcome = "retry"

    await session.flush()
    sync_jobs_finished_total.labels(provider=job.provider, outcome=outcome).inc()

    logger.warning(
        f"Sync job {job_id} ({job.style_id}/{job.provider}) attempt "
        f"{job.attempts}/{job.max_attempts} failed -> {job.status}: {job.last_error}"
    )
    return job.status


async def recover_stale_jobs(session: AsyncSession, stale_minutes: Optional[int] = None) -> int:
    """
    Return jobs stuck in processing (worker died mid-job) to pending.

    Returns:
        Number of recovered jobs
    """
    minutes = settings.SYNC_STALE_JOB_MINUTES if stale_minutes is None else stale_minutes
    result = await session.execute(
        update(SyncJob)
        .where(
            SyncJob.status == SyncJobStatus.PROCESSING.value,
            SyncJob.last_attempt_at < func.now() - timedelta(minutes=minutes),
        )
        .values(
            status=SyncJobStatus.PENDING.value,
            last_error=STALE_JOB_ERROR.format(minutes=minutes),
            next_retry_at=None,
        )
        .returning(SyncJob.id)
        .execution_options(synchronize_session=False)
    )
    recovered = len(result.scalars().all())

    if recovered:
        sync_jobs_recovered_total.inc(recovered)
        logger.warning(f"Recovered {recovered} stale sync job(s)")
    return recovered


async def get_queue_stats(
    session: AsyncSession,
    provider: Optional[str] = None,
) -> Dict[str, Dict[str, int]]:
    """
    Job counts per provider: one entry per status plus `due` (pending and
    claimable now) and `stale` (processing past the recovery threshold).

    Returns:
        {"stockx": {"pending": 3, "processing": 0, ..., "due": 2, "stale": 0}, ...}
    """
    due = (
        (SyncJob.status == SyncJobStatus.PENDING.value)
        & or_(SyncJob.next_retry_at.is_(None), SyncJob.next_retry_at <= func.now())
    )
    stale = (
        (SyncJob.status == SyncJobStatus.PROCESSING.value)
        & (SyncJob.last_attempt_at < func.now() - timedelta(minutes=settings.SYNC_STALE_JOB_MINUTES))
    )

    stmt = select(
        SyncJob.provider,
        SyncJob.status,
        func.count(),
        func.count().filter(due),
        func.count().filter(stale),
    ).group_by(SyncJob.provider, SyncJob.status)
    if provider:
        stmt = stmt.where(SyncJob.provider == provider)

    result = await session.execute(stmt)

    def _empty() -> Dict[str, int]:
        counts = {status.value: 0 for status in SyncJobStatus}
        counts.update(due=0, stale=0)
        return counts

    providers = [provider] if provider else [p.value for p in SyncProvider]
    stats: Dict[str, Dict[str, int]] = {name: _empty() for name in providers}
    for row_provider, status, count, due_count, stale_count in result.all():
        counts = stats.setdefault(row_provider, _empty())
        counts[status] = count
        counts["due"] += due_count
        counts["stale"] += stale_count

    for row_provider, counts in stats.items():
        for status in SyncJobStatus:
            sync_queue_depth.labels(provider=row_provider, status=status.value).set(counts[status.value])

    return stats
