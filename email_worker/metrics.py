"""Prometheus metrics and a tiny HTTP server to expose them.

Call `start_metrics_server(port)` once in a process to expose /metrics.
"""

from __future__ import annotations

from prometheus_client import Counter, Histogram, Gauge, start_http_server


WORKER_MESSAGE_TOTAL = Counter(
    "email_worker_message_total", "Total deliveries handled by the worker", ["outcome"]
)
WORKER_PROCESS_LATENCY_SECONDS = Histogram(
    "email_worker_process_latency_seconds",
    "Time from slot acquisition to settlement for a single delivery",
    buckets=(0.01, 0.05, 0.1, 0.5, 1, 2, 3, 5),
)
WORKER_IN_FLIGHT = Gauge(
    "email_worker_in_flight", "Deliveries currently holding the processing slot"
)
QUEUE_BACKLOG_AT_START = Gauge(
    "email_worker_queue_backlog_at_start", "Ready messages reported by the passive queue declare"
)


def start_metrics_server(port: int = 9000) -> None:
    start_http_server(port)
