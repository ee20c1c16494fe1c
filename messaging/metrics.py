"""Prometheus metrics and a tiny HTTP server to expose them.

Call `start_metrics_server(port)` once in a process to expose /metrics.
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram, start_http_server


# Publisher metrics
PUBLISH_TOTAL = Counter(
    "messaging_publish_total", "Total publish attempts", ["exchange", "result"]  # accepted | rejected | error
)

# Consumer metrics
CONSUME_TOTAL = Counter(
    "messaging_consume_total", "Total deliveries handled by subscribers", ["queue", "status"]
)
HANDLER_LATENCY_SECONDS = Histogram(
    "messaging_handler_latency_seconds",
    "Time spent in a subscriber handler for a single delivery",
    ["queue"],
    buckets=(0.01, 0.05, 0.1, 0.5, 1, 2, 5),
)

# Retry metrics
RETRY_SCHEDULED_TOTAL = Counter(
    "messaging_retry_scheduled_total", "Total in-process retries scheduled", ["queue"]
)
RETRY_ACTIVE = Gauge(
    "messaging_retry_active", "Messages currently holding retry state"
)
DLQ_SENT_TOTAL = Counter(
    "messaging_dlq_sent_total", "Total messages handed to the dead-letter exchange", ["queue"]
)
DLQ_SEND_FAILED_TOTAL = Counter(
    "messaging_dlq_send_failed_total", "Total dead-letter hand-offs that failed", ["queue"]
)

# DLQ manager metrics
DLQ_INGESTED_TOTAL = Counter(
    "messaging_dlq_ingested_total", "Total DLQ records stored", ["queue"]
)
DLQ_REPROCESS_TOTAL = Counter(
    "messaging_dlq_reprocess_total", "Total DLQ reprocess attempts", ["result"]  # reprocessed | failed | skipped
)

# Audit log metrics
AUDIT_WRITE_TOTAL = Counter(
    "messaging_audit_write_total", "Total audit log entries written", ["action"]
)
AUDIT_WRITE_FAILED_TOTAL = Counter(
    "messaging_audit_write_failed_total", "Total audit log writes that failed"
)
AUDIT_PURGED_TOTAL = Counter(
    "messaging_audit_purged_total", "Total audit log entries deleted by retention cleanup"
)

QUEUE_DEPTH = Gauge(
    "messaging_queue_depth", "Current queue depth sampled from the management API", ["queue"]
)


def start_metrics_server(port: int = 9000) -> None:
    start_http_server(port)
