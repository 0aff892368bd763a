"""Prometheus collectors shared by the capture, crawl and sweep paths."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

CAPTURES_TOTAL = Counter(
    "sitesnap_captures_total",
    "Screenshot captures by outcome",
    labelnames=("outcome",),
)
CAPTURE_DURATION_SECONDS = Histogram(
    "sitesnap_capture_duration_seconds",
    "Wall time spent in the capture protocol",
    buckets=(0.5, 1, 2, 5, 10, 20, 30, 60, 120),
)
POOL_ACTIVE_SESSIONS = Gauge(
    "sitesnap_pool_active_sessions",
    "Render sessions currently leased",
)
POOL_QUEUE_LENGTH = Gauge(
    "sitesnap_pool_queue_length",
    "Callers waiting for a render session",
)
SITE_JOBS_TOTAL = Counter(
    "sitesnap_site_jobs_total",
    "Site crawl jobs by terminal status",
    labelnames=("status",),
)
RATE_LIMITED_TOTAL = Counter(
    "sitesnap_rate_limited_total",
    "Requests rejected by the sliding-window limiter",
)
SWEEP_DELETED_TOTAL = Counter(
    "sitesnap_sweep_deleted_total",
    "Records reclaimed by the expiry sweeper",
    labelnames=("kind",),
)
SWEEP_ERRORS_TOTAL = Counter(
    "sitesnap_sweep_errors_total",
    "Blob deletions that failed during a sweep",
)


def record_capture(outcome: str, duration_s: float | None = None) -> None:
    CAPTURES_TOTAL.labels(outcome=outcome).inc()
    if duration_s is not None:
        CAPTURE_DURATION_SECONDS.observe(max(0.0, duration_s))


def record_pool_state(*, active: int, queued: int) -> None:
    POOL_ACTIVE_SESSIONS.set(active)
    POOL_QUEUE_LENGTH.set(queued)


def record_site_job_completion(status: str) -> None:
    SITE_JOBS_TOTAL.labels(status=status).inc()


def record_rate_limited() -> None:
    RATE_LIMITED_TOTAL.inc()


def record_sweep(*, artifacts: int, site_jobs: int, errors: int) -> None:
    if artifacts:
        SWEEP_DELETED_TOTAL.labels(kind="artifact").inc(artifacts)
    if site_jobs:
        SWEEP_DELETED_TOTAL.labels(kind="site_job").inc(site_jobs)
    if errors:
        SWEEP_ERRORS_TOTAL.inc(errors)
