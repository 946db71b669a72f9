"""
Prometheus Metrics for Token Scout

All pipeline components register their metrics here so they can be scraped
from a single /metrics endpoint.

Usage:
    from token_scout.shared.prometheus import (
        ratelimit_retries,
        cache_hits,
        pipeline_jobs_total,
        scheduler_executions_total,
        get_metrics,
    )

    ratelimit_retries.labels(service="rugcheck").inc()
    pipeline_jobs_total.labels(outcome="passed").inc()

    metrics_bytes = get_metrics()
"""

from prometheus_client import Counter, Gauge, Histogram, generate_latest

# =====================================================================
# Rate limiter metrics
# =====================================================================

ratelimit_waits = Counter(
    "ratelimit_waits_total",
    "Times a request had to wait for a free slot",
    ["service"],
)

ratelimit_retries = Counter(
    "ratelimit_retries_total",
    "Retries scheduled after a failed upstream attempt",
    ["service"],
)

ratelimit_exhausted = Counter(
    "ratelimit_exhausted_total",
    "Operations that failed after all retry attempts",
    ["service"],
)

# =====================================================================
# Cache metrics
# =====================================================================

cache_hits = Counter(
    "cache_hits_total",
    "TTL cache lookups that returned a live entry",
)

cache_misses = Counter(
    "cache_misses_total",
    "TTL cache lookups that found nothing or an expired entry",
)

cache_evictions = Counter(
    "cache_evictions_total",
    "Entries evicted because the cache was full",
)

cache_size = Gauge(
    "cache_size",
    "Number of entries currently held in the TTL cache",
)

# =====================================================================
# Pipeline metrics
# =====================================================================

pipeline_jobs_total = Counter(
    "pipeline_jobs_total",
    "Aggregation jobs by final outcome",
    ["outcome"],
)

pipeline_job_duration = Histogram(
    "pipeline_job_duration_seconds",
    "Duration of one aggregation job",
    buckets=[0.1, 0.5, 1, 2, 5, 10, 30, 60, 120],
)

pipeline_source_results = Counter(
    "pipeline_source_results_total",
    "Per-source fetch results by status",
    ["source", "status"],
)

pipeline_jobs_in_flight = Gauge(
    "pipeline_jobs_in_flight",
    "Aggregation jobs currently running",
)

pipeline_tokens_discovered = Counter(
    "pipeline_tokens_discovered_total",
    "New token candidates handed to the pipeline",
)

pipeline_batches_skipped = Counter(
    "pipeline_batches_skipped_total",
    "Scheduled batches skipped because a critical source was unhealthy",
)

# =====================================================================
# Scheduler metrics
# =====================================================================

scheduler_executions_total = Counter(
    "scheduler_executions_total",
    "Scheduled task executions",
    ["task"],
)

scheduler_errors_total = Counter(
    "scheduler_errors_total",
    "Scheduled task executions that raised",
    ["task"],
)

scheduler_task_duration = Histogram(
    "scheduler_task_duration_seconds",
    "Duration of scheduled task executions",
    ["task"],
    buckets=[0.1, 0.5, 1, 5, 10, 30, 60, 300],
)

# =====================================================================
# Output metrics
# =====================================================================

notifier_deliveries_total = Counter(
    "notifier_deliveries_total",
    "Webhook deliveries by status",
    ["status"],
)

store_writes_total = Counter(
    "store_writes_total",
    "Store writes by entity and status",
    ["entity", "status"],
)

# =====================================================================
# Platform-wide metrics
# =====================================================================

platform_db_connected = Gauge(
    "platform_db_connected",
    "Database connection status (1=connected, 0=disconnected)",
)

platform_uptime_seconds = Gauge(
    "platform_uptime_seconds",
    "Process uptime in seconds",
)


# =====================================================================
# Metrics export
# =====================================================================

def get_metrics() -> bytes:
    """Generate the latest Prometheus metrics in the exposition format.

    Returns:
        bytes in the Prometheus text exposition format.
    """
    return generate_latest()
