"""
Prometheus-based metrics for production monitoring.
Provides /metrics endpoint for scraping.
"""
from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST
from fastapi import APIRouter, Response


# Counters
payment_initiations_total = Counter(
    "payment_initiations_total",
    "Payment initiation outcomes",
    ["outcome"],  # processing, reused, rejected, invalid
)

gateway_attempts_total = Counter(
    "gateway_attempts_total",
    "Gateway create-order attempts per phone format and channel hint",
    ["phone_format", "with_channel", "outcome"],
)

webhooks_received_total = Counter(
    "payment_webhooks_received_total",
    "Gateway webhook deliveries by handling outcome",
    ["outcome"],  # reconciled, duplicate, orphan, pending, failed, ignored, error
)

orders_reconciled_total = Counter(
    "orders_reconciled_total",
    "Orders created from completed payment sessions",
    ["source"],  # webhook, recovery
)

reconciliation_failures_total = Counter(
    "reconciliation_failures_total",
    "Order creation failures during reconciliation",
    ["source", "error_code"],
)

notification_dispatch_failures_total = Counter(
    "notification_dispatch_failures_total",
    "Order notification dispatch failures (never affect payment state)",
)

circuit_breaker_state = Gauge(
    "circuit_breaker_state",
    "Circuit breaker state (0=closed, 1=open)",
    ["name"],
)

# Histograms
gateway_request_duration_seconds = Histogram(
    "gateway_request_duration_seconds",
    "Mobile money gateway request duration",
    ["operation"],
    buckets=[0.1, 0.5, 1, 2, 5, 10, 30],
)

recovery_run_duration_seconds = Histogram(
    "recovery_run_duration_seconds",
    "Orphan recovery pass duration",
    buckets=[0.1, 0.5, 1, 5, 10, 30, 60],
)


# Metrics endpoint router
router = APIRouter()


@router.get("/metrics")
def metrics_endpoint() -> Response:
    """Prometheus metrics endpoint for scraping."""
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST,
    )
