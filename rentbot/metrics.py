"""
Prometheus metrics for the WhatsApp webhook.

This module provides:
- HTTP request counter (method, path, status)
- Webhook outcome counter (result)
- Request latency histogram (method, path)
- Outbound send counter (kind, outcome)
- Conversation transition counter (from_state, to_state)
- Best-effort write failure counter (operation)

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

# result is the note returned to the provider (dedupe-skip, window-closed, ...)
webhook_requests_total = Counter(
    "webhook_requests_total",
    "Total webhook processing outcomes",
    labelnames=["result"]
)

request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

whatsapp_sends_total = Counter(
    "whatsapp_sends_total",
    "Outbound WhatsApp Cloud API sends",
    labelnames=["kind", "outcome"]
)

conversation_transitions_total = Counter(
    "conversation_transitions_total",
    "Recorded conversation state transitions",
    labelnames=["from_state", "to_state"]
)

best_effort_failures_total = Counter(
    "best_effort_failures_total",
    "Swallowed failures of non-critical writes",
    labelnames=["operation"]
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


def record_webhook_outcome(result: str) -> None:
    """Record a webhook processing outcome (the response note)."""
    webhook_requests_total.labels(result=result).inc()


def record_send(kind: str, outcome: str) -> None:
    """
    Record an outbound send.

    Args:
        kind: text, buttons, list or flow
        outcome: ok, error, fallback or missing-credentials
    """
    whatsapp_sends_total.labels(kind=kind, outcome=outcome).inc()


def record_transition(from_state: str | None, to_state: str) -> None:
    conversation_transitions_total.labels(
        from_state=from_state or "NONE",
        to_state=to_state
    ).inc()


def record_best_effort_failure(operation: str) -> None:
    best_effort_failures_total.labels(operation=operation).inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    """Get the content type for Prometheus metrics."""
    return CONTENT_TYPE_LATEST
