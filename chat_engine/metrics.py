"""
Prometheus metrics for the chat engine.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Chat operation outcome counter (operation, result)
- Realtime fanout failure counter (event)

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST


# =============================================================================
# Metric Definitions
# =============================================================================

# HTTP request counter with labels for method, path, and status code
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"]
)

# Request latency histogram in seconds
request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

# operation: send, update, delete, list, read, checkout, typing
# result: ok, bad_request, forbidden, not_found
chat_operations_total = Counter(
    "chat_operations_total",
    "Chat operation outcomes",
    labelnames=["operation", "result"]
)

# Publishes dropped after commit, by event name
fanout_publish_failures_total = Counter(
    "fanout_publish_failures_total",
    "Realtime events that failed to publish",
    labelnames=["event"]
)


# =============================================================================
# Helper Functions
# =============================================================================

def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    """
    Record an HTTP request in metrics.

    Args:
        method: HTTP method (GET, POST, etc.)
        path: Route template, e.g. /channels/{channel_id}/messages
        status: HTTP status code
        latency_seconds: Request processing time in seconds
    """
    normalized_path = path.split("?")[0]

    http_requests_total.labels(
        method=method,
        path=normalized_path,
        status=str(status)
    ).inc()

    request_latency_seconds.labels(
        method=method,
        path=normalized_path
    ).observe(latency_seconds)


def record_chat_operation(operation: str, result: str) -> None:
    chat_operations_total.labels(operation=operation, result=result).inc()


def record_fanout_failure(event: str) -> None:
    fanout_publish_failures_total.labels(event=event).inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    """
    Get the content type for Prometheus metrics.

    Returns:
        Content type string for Prometheus exposition format
    """
    return CONTENT_TYPE_LATEST
