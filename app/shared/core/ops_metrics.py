"""
Operational Metrics for Nimbus

Prometheus metrics for the ingestion queue, worker pool and provider adapters.
"""

from prometheus_client import Counter, Gauge, Histogram

# --- Queue & Worker Metrics ---
BACKGROUND_JOBS_ENQUEUED = Counter(
    "nimbus_ops_jobs_enqueued_total",
    "Total number of background jobs enqueued",
    ["job_type", "priority"]
)

BACKGROUND_JOBS_FINISHED = Counter(
    "nimbus_ops_jobs_finished_total",
    "Background job runs by final outcome of the attempt",
    ["job_type", "outcome"]  # 'completed', 'retry', 'dead_letter'
)

BACKGROUND_JOB_DURATION_SECONDS = Histogram(
    "nimbus_ops_job_duration_seconds",
    "Wall-clock duration of one background job attempt",
    ["job_type"],
    buckets=(1, 5, 10, 30, 60, 120, 300, 600, 900)
)

WORKERS_BUSY = Gauge(
    "nimbus_ops_workers_busy",
    "Number of workers currently executing a job"
)

RATE_LIMIT_WAIT_SECONDS = Histogram(
    "nimbus_ops_rate_limit_wait_seconds",
    "Time a worker waited for a job-start slot",
    buckets=(0, 0.1, 1, 5, 15, 30, 60)
)

# --- Ingestion Metrics ---
COST_RECORDS_INGESTED = Counter(
    "nimbus_ops_cost_records_ingested_total",
    "FOCUS line items processed by ingestion",
    ["provider", "result"]  # 'inserted', 'duplicate', 'skipped'
)

PROVIDER_FETCH_LATENCY = Histogram(
    "nimbus_ops_provider_fetch_latency_seconds",
    "Latency of adapter get_costs calls",
    ["provider"],
    buckets=(1, 5, 10, 30, 60, 120, 300, 600)
)

PROVIDER_ERRORS = Counter(
    "nimbus_ops_provider_errors_total",
    "Ingestion failures by provider and error kind",
    ["provider", "kind"]
)

# --- Scheduler Metrics ---
SCHEDULER_JOB_RUNS = Counter(
    "nimbus_scheduler_job_runs_total",
    "Scheduler job executions by outcome",
    ["job_name", "status"]
)

SCHEDULER_JOB_DURATION = Histogram(
    "nimbus_scheduler_job_duration_seconds",
    "Duration of scheduler jobs",
    ["job_name"],
    buckets=(0.1, 0.5, 1, 5, 10, 30, 60)
)
