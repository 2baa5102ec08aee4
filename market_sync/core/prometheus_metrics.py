"""
Prometheus metrics for Market Sync.

Exports metrics in Prometheus format for monitoring and alerting.
"""
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

# Sync queue metrics
sync_jobs_claimed_total = Counter(
    "market_sync_jobs_claimed_total",
    "Total sync jobs claimed by workers",
    ["provider"],
)

sync_jobs_finished_total = Counter(
    "market_sync_jobs_finished_total",
    "Total sync jobs finished",
    ["provider", "outcome"],  # outcome: completed, retry, failed
)

sync_jobs_recovered_total = Counter(
    "market_sync_jobs_recovered_total",
    "Total stuck processing jobs returned to pending",
)

sync_job_duration_seconds = Histogram(
    "market_sync_job_duration_seconds",
    "Sync job duration in seconds",
    ["provider"],
    buckets=[1.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0],
)

sync_queue_depth = Gauge(
    "market_sync_queue_depth",
    "Sync jobs per provider and status",
    ["provider", "status"],
)

# Provider API metrics
provider_requests_total = Counter(
    "market_sync_provider_requests_total",
    "Total marketplace API requests",
    ["provider", "endpoint", "status_code"],
)

provider_request_duration_seconds = Histogram(
    "market_sync_provider_request_duration_seconds",
    "Marketplace API request duration in seconds",
    ["provider", "endpoint"],
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
)

provider_rate_limit_hits_total = Counter(
    "market_sync_provider_rate_limit_hits_total",
    "Total 429 responses from marketplace APIs",
    ["provider"],
)

# Circuit breaker metrics
circuit_breaker_state = Gauge(
    "market_sync_circuit_breaker_state",
    "Circuit breaker state (0=CLOSED, 1=OPEN, 2=HALF_OPEN)",
    ["service"],
)

circuit_breaker_failures_total = Counter(
    "market_sync_circuit_breaker_failures_total",
    "Total circuit breaker failures",
    ["service", "error_type"],
)

# Market data metrics
market_rows_written_total = Counter(
    "market_sync_market_rows_written_total",
    "Rows written by product syncs",
    ["provider", "table"],
)

history_rows_pruned_total = Counter(
    "market_sync_history_rows_pruned_total",
    "Rows removed by retention pruning",
    ["table"],
)


def get_metrics_response():
    """
    Get Prometheus metrics in text format.

    Returns:
        Tuple of (metrics_text, content_type)
    """
    return generate_latest(), CONTENT_TYPE_LATEST
