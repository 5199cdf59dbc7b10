"""
Prometheus metrics for the chat service.

HTTP traffic is labelled by route template (``/conversations/{conversation_id}``)
rather than the concrete path so conversation ids never become label values.
"""

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST


# Chat API calls are mostly single-row reads and writes; polling keeps them frequent
LATENCY_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)

http_requests_total = Counter(
    "http_requests_total",
    "HTTP requests by route and status",
    labelnames=["method", "path", "status"]
)

request_latency_seconds = Histogram(
    "request_latency_seconds",
    "HTTP request latency by route",
    labelnames=["method", "path"],
    buckets=LATENCY_BUCKETS,
)

# created, duplicate, inactive, invalid_signature, validation_error,
# status_update, status_ignored, status_failed
webhook_requests_total = Counter(
    "webhook_requests_total",
    "Webhook calls by outcome",
    labelnames=["result"]
)

chat_messages_total = Counter(
    "chat_messages_total",
    "Chat messages stored, by direction",
    labelnames=["direction"]
)

# delivered, skipped, failed
delivery_outcomes_total = Counter(
    "delivery_outcomes_total",
    "Outgoing message hand-offs to the delivery channel, by outcome",
    labelnames=["result"]
)

read_receipts_total = Counter(
    "read_receipts_total",
    "Conversation acknowledgements that marked messages read"
)


def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    """
    Count a completed request and observe its latency.

    Args:
        method: HTTP method
        path: Route template when the request matched a route, else the raw path
        status: Response status code
        latency_seconds: Time spent handling the request
    """
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    request_latency_seconds.labels(method=method, path=path).observe(latency_seconds)


def record_webhook_outcome(result: str) -> None:
    webhook_requests_total.labels(result=result).inc()


def record_message_stored(direction: str) -> None:
    chat_messages_total.labels(direction=direction).inc()


def record_delivery_outcome(result: str) -> None:
    delivery_outcomes_total.labels(result=result).inc()


def record_read_receipt() -> None:
    read_receipts_total.inc()


def get_metrics() -> bytes:
    """Metrics in Prometheus text exposition format."""
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
