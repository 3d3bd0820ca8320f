"""
Prometheus metrics for the ingestion service and the sync client.

Server side:
- HTTP requests and latency, labelled by route template
- Ingestion outcomes per operation
- Rate limiter decisions per operation class
- Open websocket subscriptions

Client side:
- Outbox send attempts by outcome
- Outbox size by sync status
- Flush duration

Everything lives in the default in-process registry.
"""

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "route", "status"],
)

request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "route"],
)

# operation: send, edit, delete, react, describe, pull
# result: created, existing, edited, deleted, already_deleted, added, removed, internal, or an error code
ingestion_requests_total = Counter(
    "ingestion_requests_total",
    "Ingestion operation outcomes",
    labelnames=["operation", "result"],
)

# decision: allowed, rejected, reset, fail_open
rate_limit_decisions_total = Counter(
    "rate_limit_decisions_total",
    "Rate limiter decisions",
    labelnames=["op_class", "decision"],
)

active_subscriptions = Gauge(
    "active_subscriptions",
    "Open websocket subscriptions",
)

# outcome: synced, existing, retry, failed, stale
sync_send_attempts_total = Counter(
    "sync_send_attempts_total",
    "Client outbox send attempts by outcome",
    labelnames=["outcome"],
)

sync_outbox_messages = Gauge(
    "sync_outbox_messages",
    "Locally cached messages by sync status",
    labelnames=["status"],
)

sync_flush_duration_seconds = Histogram(
    "sync_flush_duration_seconds",
    "Duration of one outbox flush pass",
)


def record_http_request(method: str, route: str, status: int, latency_seconds: float) -> None:
    """
    Record one served HTTP request.

    Args:
        method: HTTP method
        route: Route template (e.g. /conversations/{scope}/{conversation_id}/messages)
        status: Response status code
        latency_seconds: Time spent serving the request
    """
    http_requests_total.labels(method=method, route=route, status=str(status)).inc()
    request_latency_seconds.labels(method=method, route=route).observe(latency_seconds)


def record_ingestion_outcome(operation: str, result: str) -> None:
    ingestion_requests_total.labels(operation=operation, result=result).inc()


def record_rate_limit_decision(op_class: str, decision: str) -> None:
    rate_limit_decisions_total.labels(op_class=op_class, decision=decision).inc()


def record_sync_attempt(outcome: str) -> None:
    sync_send_attempts_total.labels(outcome=outcome).inc()


def record_outbox_counts(counts: dict) -> None:
    for status, count in counts.items():
        sync_outbox_messages.labels(status=status).set(count)


def get_metrics() -> bytes:
    """Current registry in Prometheus text exposition format."""
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
