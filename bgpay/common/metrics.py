"""Prometheus metric definitions for the gateway."""

from prometheus_client import Counter, Histogram, generate_latest
from starlette.responses import Response


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["service", "route", "method", "status_code"],
)
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration seconds",
    ["service", "route", "method"],
)
auth_failures_total = Counter(
    "auth_failures_total",
    "Rejected merchant credentials by internal failure kind",
    ["service", "kind"],
)
rate_limited_total = Counter("rate_limited_total", "Requests rejected by the rate limiter", ["service"])
payment_requests_total = Counter("payment_requests_total", "Total payment creation requests", ["service"])
payment_created_total = Counter("payment_created_total", "Payments handed to the processor", ["service"])
payment_failure_total = Counter("payment_failure_total", "Payments failed at creation", ["service"])
processor_latency_seconds = Histogram(
    "processor_latency_seconds",
    "Latency of outbound processor calls",
    ["service", "operation"],
)
retries_total = Counter("retries_total", "Retry count", ["service", "dependency"])
payment_transitions_total = Counter(
    "payment_transitions_total",
    "Applied payment status transitions",
    ["service", "from_state", "to_state"],
)
webhook_events_total = Counter(
    "webhook_events_total",
    "Inbound processor webhooks by outcome",
    ["service", "outcome"],
)
notification_deliveries_total = Counter(
    "notification_deliveries_total",
    "Merchant callback delivery attempts by result",
    ["service", "result"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
