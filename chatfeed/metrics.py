"""
Prometheus metrics for the chat service.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Ingestion outcome counter (result)
- Live listener gauge and dropped listener counter (reason)

Metrics are stored in-memory using prometheus-client.
"""

from typing import Optional

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest


# =============================================================================
# Metric Definitions
# =============================================================================

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"]
)

request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

# result: created, duplicate, validation_error, storage_error
messages_ingested_total = Counter(
    "messages_ingested_total",
    "Total message ingestion outcomes",
    labelnames=["result"]
)

active_listeners = Gauge(
    "active_listeners",
    "Event stream listeners currently subscribed to the broadcast hub"
)

# reason: overrun, disconnect, shutdown
listeners_dropped_total = Counter(
    "listeners_dropped_total",
    "Listeners removed from the broadcast hub",
    labelnames=["reason"]
)


# =============================================================================
# Helper Functions
# =============================================================================

def record_http_request(
    method: str,
    path: str,
    status: int,
    latency_seconds: Optional[float] = None,
) -> None:
    """
    Record an HTTP request in metrics.

    Args:
        method: HTTP method (GET, POST, etc.)
        path: Request path
        status: HTTP status code
        latency_seconds: Time until the response headers were produced, None
            for responses whose duration is not a latency (event streams)
    """
    # Normalize path to avoid high-cardinality labels
    normalized_path = path.split("?")[0]

    http_requests_total.labels(
        method=method,
        path=normalized_path,
        status=str(status)
    ).inc()

    if latency_seconds is None:
        return
    request_latency_seconds.labels(
        method=method,
        path=normalized_path
    ).observe(latency_seconds)


def record_ingest_outcome(result: str) -> None:
    """
    Record a message ingestion outcome.

    Args:
        result: Processing result - one of:
            - "created": New message stored and broadcast
            - "duplicate": Message id already existed (idempotent)
            - "validation_error": Request body or message policy rejected
            - "storage_error": Store unavailable, client should retry
    """
    messages_ingested_total.labels(result=result).inc()


def set_active_listeners(count: int) -> None:
    active_listeners.set(count)


def record_listener_dropped(reason: str) -> None:
    listeners_dropped_total.labels(reason=reason).inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    """Content type for Prometheus exposition format."""
    return CONTENT_TYPE_LATEST
