"""Prometheus metric definitions shared across the service."""

from prometheus_client import Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response


link_requests_total = Counter("link_requests_total", "Total payment link creation requests", ["service"])
links_created_total = Counter("links_created_total", "Payment links persisted as pending", ["service", "provider"])
link_creation_failures_total = Counter(
    "link_creation_failures_total",
    "Payment link creation failures by error code",
    ["service", "provider", "error_code"],
)
link_creation_latency_seconds = Histogram(
    "link_creation_latency_seconds",
    "Payment link creation latency seconds",
    ["service"],
)
link_transitions_total = Counter(
    "link_transitions_total",
    "Applied payment link state transitions",
    ["service", "provider", "to_status", "source"],
)
link_e2e_seconds = Histogram(
    "link_e2e_seconds",
    "Seconds from link creation to terminal status",
    ["service", "terminal_status"],
)
webhook_events_total = Counter(
    "webhook_events_total",
    "Inbound webhook calls by outcome",
    ["service", "provider", "outcome"],
)
duplicate_events_skipped_total = Counter(
    "duplicate_events_skipped_total",
    "Provider events dropped as duplicate deliveries",
    ["service", "provider", "source"],
)
orphan_events_total = Counter(
    "orphan_events_total",
    "Provider events that matched no payment link",
    ["service", "provider"],
)
reconciliation_anomalies_total = Counter(
    "reconciliation_anomalies_total",
    "Events recorded for manual review",
    ["service", "kind"],
)
status_polls_total = Counter(
    "status_polls_total",
    "Client status polls by outcome",
    ["service", "outcome"],
)
provider_call_seconds = Histogram(
    "provider_call_seconds",
    "Provider HTTP call latency seconds",
    ["service", "provider", "operation"],
)
provider_errors_total = Counter(
    "provider_errors_total",
    "Provider call failures",
    ["service", "provider", "operation", "error_type"],
)
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
outbox_pending_total = Gauge(
    "outbox_pending_total",
    "Current count of outbox events not yet sent",
    ["service"],
)
outbox_oldest_pending_age_seconds = Gauge(
    "outbox_oldest_pending_age_seconds",
    "Age in seconds of the oldest pending outbox event",
    ["service"],
)
rate_limited_total = Counter("rate_limited_total", "Requests rejected by the rate limiter", ["service"])


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
