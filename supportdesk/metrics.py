"""
Prometheus metrics for the support desk service.

This module provides:
- HTTP request counter (method, path, status)
- Webhook event outcome counter (provider, result)
- Chatbot auto-reply outcome counter (result)
- Request latency histogram (method, path)

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST


# =============================================================================
# Metric Definitions
# =============================================================================

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"]
)

# result: created, duplicate, ignored, connection_update, qrcode_update, unauthorized, invalid, error
webhook_events_total = Counter(
    "webhook_events_total",
    "Total webhook processing outcomes",
    labelnames=["provider", "result"]
)

# result: sent, failed, skipped
auto_replies_total = Counter(
    "auto_replies_total",
    "Chatbot auto-reply outcomes",
    labelnames=["result"]
)

request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)


# =============================================================================
# Helper Functions
# =============================================================================

def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    """
    Record an HTTP request in metrics.

    Args:
        method: HTTP method (GET, POST, etc.)
        path: Request path
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


def record_webhook_outcome(provider: str, result: str) -> None:
    webhook_events_total.labels(provider=provider, result=result).inc()


def record_auto_reply(result: str) -> None:
    auto_replies_total.labels(result=result).inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
