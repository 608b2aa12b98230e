"""Prometheus metrics for the billing API."""

from prometheus_client import Counter, Histogram, Gauge

# HTTP-level metrics (tracked via middleware)
HTTP_REQUESTS_TOTAL = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
)

HTTP_REQUEST_DURATION_SECONDS = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "endpoint"],
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
)

HTTP_REQUESTS_IN_PROGRESS = Gauge(
    "http_requests_in_progress",
    "HTTP requests currently being processed",
    ["method", "endpoint"],
)

# Contract lifecycle metrics
CONTRACT_TRANSITIONS_TOTAL = Counter(
    "contract_transitions_total",
    "Direct debit contract state transitions",
    ["transition"],
)

GATEWAY_REQUESTS_TOTAL = Counter(
    "gateway_requests_total",
    "Calls made to the payment gateway",
    ["operation", "outcome"],
)

GATEWAY_REQUEST_DURATION_SECONDS = Histogram(
    "gateway_request_duration_seconds",
    "Payment gateway call latency in seconds",
    ["operation"],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

_ID_SEGMENTS = {"contracts", "payment-methods"}
_STATIC_SEGMENTS = {"banks", "status", "callback", "recover", "verify", "default"}


def normalize_endpoint(path: str) -> str:
    """Normalize endpoint paths to avoid high cardinality from path parameters.

    Examples:
        /payment-methods/3f2a.../default -> /payment-methods/{id}/default
        /payment-methods/contracts/3f2a.../verify -> /payment-methods/contracts/{id}/verify
        /payment-methods/contracts/callback -> unchanged
    """
    parts = path.strip("/").split("/")

    for i in range(1, len(parts)):
        if parts[i - 1] in _ID_SEGMENTS and parts[i] not in _STATIC_SEGMENTS | _ID_SEGMENTS:
            parts[i] = "{id}"

    return "/" + "/".join(parts) if parts[0] else "/"


def record_contract_transition(transition: str) -> None:
    """Count a lifecycle transition such as ``pending->active``."""
    CONTRACT_TRANSITIONS_TOTAL.labels(transition=transition).inc()


def record_gateway_call(operation: str, outcome: str, duration_seconds: float) -> None:
    """Record one gateway call.

    Args:
        operation: Gateway operation name
        outcome: "success", "error" or "timeout"
        duration_seconds: Wall-clock duration of the call
    """
    GATEWAY_REQUESTS_TOTAL.labels(operation=operation, outcome=outcome).inc()
    GATEWAY_REQUEST_DURATION_SECONDS.labels(operation=operation).observe(duration_seconds)
