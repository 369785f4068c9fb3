"""
backend/wagerodds/monitoring/odds_metrics.py

Purpose:
    Prometheus metrics for upstream odds calls, normalization and the
    aggregation cache. Exposed on ``/metrics`` by the FastAPI app.

Dependencies:
    - prometheus_client
"""

from __future__ import annotations

from contextlib import contextmanager
from time import perf_counter

from prometheus_client import Counter, Histogram

METRIC_UPSTREAM_REQUESTS = Counter(
    "odds_upstream_requests_total",
    "Upstream odds API calls by provider and outcome.",
    ["provider", "outcome"],
)
METRIC_UPSTREAM_LATENCY = Histogram(
    "odds_upstream_latency_seconds",
    "Latency of one upstream odds API call.",
    ["provider"],
)
METRIC_NORMALIZATION_FAILURES = Counter(
    "odds_normalization_failures_total",
    "Payloads discarded because they violated a normalization invariant.",
    ["provider"],
)
METRIC_CACHE_LOOKUPS = Counter(
    "odds_cache_lookups_total",
    "Aggregation cache lookups per provider slot.",
    ["result"],
)
METRIC_RESOLVE_OUTCOMES = Counter(
    "odds_resolve_outcomes_total",
    "resolve_odds results by aggregation status.",
    ["status"],
)
METRIC_RESOLVE_LATENCY = Histogram(
    "odds_resolve_latency_seconds",
    "End-to-end latency of resolve_odds.",
)


@contextmanager
def observe_latency(metric):
    start = perf_counter()
    try:
        yield
    finally:
        metric.observe(perf_counter() - start)
