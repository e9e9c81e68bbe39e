"""Prometheus metrics and a tiny HTTP server to expose them.

Call `start_metrics_server(port)` once in a process to expose /metrics.
"""

from __future__ import annotations

from prometheus_client import Counter, Histogram, start_http_server


# Publisher metrics
QUEUE_PUBLISH_TOTAL = Counter(
    "queue_publish_total", "Total publish attempts", ["queue", "result"]
)
QUEUE_PUBLISH_LATENCY_SECONDS = Histogram(
    "queue_publish_latency_seconds",
    "Time from publish call to broker confirmation",
    ["queue"],
    buckets=(0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1, 2, 5),
)

# Connection lifecycle metrics
QUEUE_CONNECTION_ESTABLISHED_TOTAL = Counter(
    "queue_connection_established_total", "Total broker connections established", ["queue"]
)
QUEUE_CONNECTION_RESET_TOTAL = Counter(
    "queue_connection_reset_total",
    "Total times cached connection state was discarded",
    ["queue", "reason"],  # closed | failed | cancelled
)

# Rate limiting metrics
RATE_LIMIT_THROTTLED_TOTAL = Counter(
    "rate_limit_throttled_total", "Total times a task waited for the rate limit window", ["limiter"]
)
RATE_LIMIT_WAIT_SECONDS = Histogram(
    "rate_limit_wait_seconds",
    "Seconds waited due to fixed-window limiting",
    ["limiter"],
    buckets=(0.001, 0.01, 0.05, 0.1, 0.5, 1, 2, 5, 10, 30, 60),
)


def start_metrics_server(port: int = 9000) -> None:
    start_http_server(port)
