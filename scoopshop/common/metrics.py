"""Prometheus metric definitions for the storefront service."""

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
checkout_sessions_total = Counter(
    "checkout_sessions_total",
    "Checkout sessions created, by processor session mode",
    ["service", "mode"],
)
checkout_session_failures_total = Counter(
    "checkout_session_failures_total",
    "Checkout session initiations that failed",
    ["service", "reason"],
)
webhook_events_total = Counter(
    "webhook_events_total",
    "Processor webhook events handled, by outcome",
    ["service", "event_type", "outcome"],
)
webhook_processing_seconds = Histogram(
    "webhook_processing_seconds",
    "Time spent dispatching one verified webhook event",
    ["service", "event_type"],
)
orders_materialized_total = Counter(
    "orders_materialized_total",
    "Orders created from processor events",
    ["service", "source"],
)
duplicate_events_skipped_total = Counter(
    "duplicate_events_skipped_total",
    "Redelivered events skipped by idempotency checks",
    ["service", "event_type"],
)
upstream_errors_total = Counter(
    "upstream_errors_total",
    "Failed payment processor calls",
    ["service", "operation"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
