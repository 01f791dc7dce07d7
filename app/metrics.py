"""
Prometheus metrics for the delivery relay.

Request metrics are labelled with the route template (``/api/messages/{message_id}/read``),
never the concrete path. Provider metrics count every attempt, retries included.
"""

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest


# =============================================================================
# HTTP
# =============================================================================

http_requests_total = Counter(
    "http_requests_total",
    "HTTP requests served",
    labelnames=["method", "path", "status"],
)

request_latency_seconds = Histogram(
    "request_latency_seconds",
    "HTTP request latency in seconds",
    labelnames=["method", "path"],
)

# result: processed, partial, invalid_signature, unparseable
webhook_requests_total = Counter(
    "webhook_requests_total",
    "Provider callbacks by outcome",
    labelnames=["result"],
)


# =============================================================================
# Provider and message lifecycle
# =============================================================================

# outcome: success, retryable, fatal
provider_requests_total = Counter(
    "provider_requests_total",
    "Provider API call attempts by outcome",
    labelnames=["operation", "outcome"],
)

provider_request_latency_seconds = Histogram(
    "provider_request_latency_seconds",
    "Provider API call latency in seconds",
    labelnames=["operation"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 15.0),
)

# source: send, webhook, read_receipt
message_status_transitions_total = Counter(
    "message_status_transitions_total",
    "Message status transitions applied",
    labelnames=["source", "status"],
)


def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    request_latency_seconds.labels(method=method, path=path).observe(latency_seconds)


def record_webhook_outcome(result: str) -> None:
    webhook_requests_total.labels(result=result).inc()


def record_provider_attempt(operation: str, outcome: str, latency_seconds: float) -> None:
    """
    Record a single provider call attempt.

    Args:
        operation: send, send_template, send_interactive, get_status,
            get_phone_number_info or mark_read
        outcome: success, retryable or fatal
        latency_seconds: Time spent on the HTTP call
    """
    provider_requests_total.labels(operation=operation, outcome=outcome).inc()
    provider_request_latency_seconds.labels(operation=operation).observe(latency_seconds)


def record_status_transition(source: str, status: str) -> None:
    message_status_transitions_total.labels(source=source, status=status).inc()


def get_metrics() -> bytes:
    """Current metrics in the Prometheus text exposition format."""
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
