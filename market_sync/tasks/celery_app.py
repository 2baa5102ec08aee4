"""
Celery application configuration with sync and maintenance queues.
"""
from celery import Celery
from celery.schedules import crontab

from market_sync.core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "market_sync",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=["market_sync.tasks.sync_tasks"],
)

celery_app.conf.update(
    # Task settings
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    # Queue configuration
    task_routes={
        "market_sync.tasks.sync_tasks.process_sync_batch": {"queue": "sync"},
        "market_sync.tasks.sync_tasks.enqueue_sync_job": {"queue": "sync"},
        "market_sync.tasks.sync_tasks.retry_style_sync": {"queue": "sync"},
        "market_sync.tasks.sync_tasks.refresh_stale_stockx_products": {"queue": "sync"},
        "market_sync.tasks.sync_tasks.recover_stale_sync_jobs": {"queue": "maintenance"},
        "market_sync.tasks.sync_tasks.prune_market_history": {"queue": "maintenance"},
    },
    task_default_queue="sync",

    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_time_limit=900,  # 15 minutes max
    task_soft_time_limit=840,

    # Retry settings
    task_default_retry_delay=60,
    task_max_retries=5,

    # Exponential backoff: 2^retry_count seconds, max 300s
    task_retry_backoff=True,
    task_retry_backoff_max=300,
    task_retry_jitter=True,

    result_expires=3600,

    # One batch at a time per worker process; batches are long-running
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=1000,
)

celery_app.conf.task_queues = {
    "sync": {
        "exchange": "sync",
        "routing_key": "sync",
    },
    "maintenance": {
        "exchange": "maintenance",
        "routing_key": "maintenance",
    },
}

celery_app.conf.beat_schedule = {
    "process-stockx-batch": {
        "task": "market_sync.tasks.sync_tasks.process_sync_batch",
        "schedule": crontab(),
        "kwargs": {"provider": "stockx"},
    },
    "process-alias-batch": {
        "task": "market_sync.tasks.sync_tasks.process_sync_batch",
        "schedule": crontab(),
        "kwargs": {"provider": "alias"},
    },
    "recover-stale-sync-jobs": {
        "task": "market_sync.tasks.sync_tasks.recover_stale_sync_jobs",
        "schedule": crontab(minute="*/5"),
    },
    "refresh-stale-stockx-products": {
        "task": "market_sync.tasks.sync_tasks.refresh_stale_stockx_products",
        "schedule": crontab(minute=0),
    },
    "prune-market-history": {
        "task": "market_sync.tasks.sync_tasks.prune_market_history",
        "schedule": crontab(minute=30, hour=3),
    },
}
