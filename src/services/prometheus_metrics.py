"""
Prometheus metrics for admission control and usage metering.

- Admission decisions (admitted / denied by reason)
- Rate limiting (blocked requests by guard)
- Privileged admissions (admin and test-mode bypasses, audited separately)
- Usage commits (persisted / reconciled / failed)
- Image generation latency and outcome
"""

import logging
import time
from contextlib import contextmanager

from prometheus_client import Counter, Gauge, Histogram, Summary

logger = logging.getLogger(__name__)

# ==================== Admission Metrics ====================
admission_decisions = Counter(
    "admission_decisions_total",
    "Admission decisions by outcome and reason",
    ["outcome", "reason"],
)

rate_limited_requests = Counter(
    "rate_limited_requests_total",
    "Total requests rejected by an admission guard",
    ["limit_type"],
)

privileged_admissions = Counter(
    "privileged_admissions_total",
    "Requests admitted through a privileged bypass",
    ["kind"],
)

global_capacity_used = Gauge(
    "global_capacity_used",
    "Generations admitted in the current global capacity window",
)

# ==================== Usage Metrics ====================
usage_commits = Counter(
    "usage_commits_total",
    "Usage commits after successful generations",
    ["status"],
)

credits_debited = Counter(
    "credits_debited_total",
    "Credits debited for generations",
    ["model_type"],
)

# ==================== Storage Metrics ====================
database_query_count = Counter(
    "database_queries_total",
    "Total Supabase queries",
    ["table", "operation"],
)

database_query_duration = Summary(
    "database_query_duration_seconds",
    "Supabase query latency in seconds",
    ["table"],
)

cache_hits = Counter("cache_hits_total", "Cache hits", ["cache_name"])
cache_misses = Counter("cache_misses_total", "Cache misses", ["cache_name"])

# ==================== Generation Metrics ====================
generation_requests = Counter(
    "image_generation_requests_total",
    "Image generation calls by model type and outcome",
    ["model_type", "status"],
)

generation_duration = Histogram(
    "image_generation_duration_seconds",
    "Image generation latency in seconds",
    ["model_type"],
    buckets=(1, 2.5, 5, 10, 20, 30, 60, 120),
)


def record_admission(outcome: str, reason: str = "none") -> None:
    """Record one admission decision."""
    admission_decisions.labels(outcome=outcome, reason=reason).inc()


@contextmanager
def track_generation(model_type: str):
    """Context manager to time an image generation call."""
    start_time = time.time()
    try:
        yield
    finally:
        generation_duration.labels(model_type=model_type).observe(time.time() - start_time)


@contextmanager
def track_database_query(table: str, operation: str):
    """Context manager to track database query metrics."""
    start_time = time.time()
    try:
        yield
    finally:
        database_query_count.labels(table=table, operation=operation).inc()
        database_query_duration.labels(table=table).observe(time.time() - start_time)


def record_cache_hit(cache_name: str):
    """Record cache hit metric."""
    cache_hits.labels(cache_name=cache_name).inc()


def record_cache_miss(cache_name: str):
    """Record cache miss metric."""
    cache_misses.labels(cache_name=cache_name).inc()
