"""Prometheus metrics."""
from prometheus_client import Counter, Histogram

# Completed calls (cache hits and upstream calls)
requests_total = Counter(
    "tollgate_requests_total",
    "Total completed proxy requests",
    ["provider", "status", "cache"],
)

request_latency_ms = Histogram(
    "tollgate_request_latency_ms",
    "Request latency in milliseconds",
    ["provider", "cache"],
    buckets=[1, 10, 50, 100, 200, 500, 1000, 2000, 5000, 10000, 30000],
)

# Requests rejected before any upstream call
rejections_total = Counter(
    "tollgate_rejections_total",
    "Requests rejected by the gateway",
    ["code"],
)

rate_limit_rejections_total = Counter(
    "tollgate_rate_limit_rejections_total",
    "Requests denied by an admission strategy",
    ["strategy"],
)

rate_limit_fail_open_total = Counter(
    "tollgate_rate_limit_fail_open_total",
    "Admission checks that failed open because the counter store was unavailable",
    ["strategy"],
)

cache_hits_total = Counter(
    "tollgate_cache_hits_total",
    "Total cache hits",
    ["provider"],
)

cache_misses_total = Counter(
    "tollgate_cache_misses_total",
    "Total cache misses",
    ["provider"],
)

cost_usd_total = Counter(
    "tollgate_cost_usd_total",
    "Attributed cost in USD (cumulative)",
    ["provider", "model"],
)

tokens_total = Counter(
    "tollgate_tokens_total",
    "Tokens used (cumulative)",
    ["provider", "model"],
)

unpriced_responses_total = Counter(
    "tollgate_unpriced_responses_total",
    "AI responses for models missing from the pricing table",
    ["provider"],
)

upstream_failures_total = Counter(
    "tollgate_upstream_failures_total",
    "Upstream calls that could not be completed",
    ["provider"],
)

# Best-effort stage failures (budget, metrics, cache_store)
side_effect_failures_total = Counter(
    "tollgate_side_effect_failures_total",
    "Best-effort stage failures",
    ["stage"],
)

budget_alerts_total = Counter(
    "tollgate_budget_alerts_total",
    "Budget alerts fired",
    ["alert_type"],
)
