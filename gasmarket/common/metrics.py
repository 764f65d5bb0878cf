"""Prometheus metric definitions shared across services."""

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest
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
orders_placed_total = Counter("orders_placed_total", "Total orders placed", ["service", "payment_method"])
order_transitions_total = Counter(
    "order_transitions_total",
    "Order status transitions applied",
    ["service", "from_status", "to_status"],
)
payment_initiations_total = Counter("payment_initiations_total", "Total payments initiated", ["service"])
payment_verifications_total = Counter(
    "payment_verifications_total",
    "Verification outcomes (completed, mismatch, expired, locked, failed)",
    ["service", "result"],
)
payment_verification_seconds = Histogram(
    "payment_verification_seconds",
    "Seconds from payment initiation until successful verification",
    ["service"],
    # Customers have a 10 minute window to type the code.
    buckets=(5, 15, 30, 60, 120, 300, 600),
)
wallet_credits_total = Counter("wallet_credits_total", "Wallet credits posted for delivered orders", ["service"])
notifications_sent_total = Counter(
    "notifications_sent_total",
    "Notification log rows written",
    ["service", "topic", "channel"],
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
outbox_events_parked_total = Counter(
    "outbox_events_parked_total",
    "Outbox events given up on after repeated publish failures",
    ["topic"],
)
duplicate_events_skipped_total = Counter(
    "duplicate_events_skipped_total",
    "Duplicate inbox events skipped",
    ["service", "topic"],
)


def metrics_response() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
