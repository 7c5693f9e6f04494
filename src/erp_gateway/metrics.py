"""Prometheus metrics for the gateway."""

from prometheus_client import Counter

CACHE_LOOKUPS = Counter(
    "gateway_cache_lookups_total",
    "Cache lookups by namespace and result",
    ["namespace", "result"],
)
RATE_LIMIT_DECISIONS = Counter(
    "gateway_rate_limit_decisions_total",
    "Rate limit decisions by policy",
    ["policy", "decision"],
)
STORE_ERRORS = Counter(
    "gateway_store_errors_total",
    "Key-value store command failures",
    ["operation"],
)
LOGIN_ATTEMPTS = Counter(
    "gateway_login_attempts_total",
    "Login attempts by outcome",
    ["outcome"],
)
