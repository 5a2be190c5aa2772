"""Prometheus instrumentation for the scheduler, rate limiter and API client.

Metrics register with the default ``prometheus_client`` registry; expose them
with ``prometheus_client.start_http_server`` or any ASGI/WSGI exporter.
"""

from __future__ import annotations

from prometheus_client import Counter, Histogram

job_runs = Counter(
    "sentinelkit_job_runs_total",
    "Completed job runs by outcome (success, skipped, error).",
    ["job", "outcome"],
)

job_run_duration = Histogram(
    "sentinelkit_job_run_duration_seconds",
    "Wall-clock duration of job handler invocations.",
    ["job"],
)

scheduler_tick_errors = Counter(
    "sentinelkit_scheduler_tick_errors_total",
    "Poll ticks aborted by an infrastructure error.",
    ["job"],
)

claims_lost = Counter(
    "sentinelkit_claims_lost_total",
    "Due jobs whose claim was won by another process.",
    ["job"],
)

rate_limit_waits = Counter(
    "sentinelkit_rate_limit_waits_total",
    "Number of times a caller slept because its key was saturated.",
)

rate_limit_wait_seconds = Histogram(
    "sentinelkit_rate_limit_wait_seconds",
    "Time spent sleeping in the rate limiter per wait.",
)

api_requests = Counter(
    "sentinelkit_api_requests_total",
    "External API requests by outcome (ok, api_error, transport_error).",
    ["outcome"],
)

batch_items = Counter(
    "sentinelkit_batch_items_total",
    "Batch items by final outcome (success, failed).",
    ["outcome"],
)
