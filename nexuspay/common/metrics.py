"""Prometheus metric definitions for payment flows and outbound requests."""

from prometheus_client import Counter, Histogram, generate_latest
from starlette.responses import Response


payment_requests_total = Counter("payment_requests_total", "Total payment flows started", ["service"])
payment_success_total = Counter("payment_success_total", "Total verified payments", ["service"])
payment_failure_total = Counter("payment_failure_total", "Total failed payment flows", ["service", "stage"])
payment_cancelled_total = Counter(
    "payment_cancelled_total",
    "Payment flows cancelled by the user at checkout",
    ["service", "reason"],
)
payment_latency_seconds = Histogram(
    "payment_latency_seconds",
    "Payment flow duration seconds from order creation to terminal state",
    ["service", "terminal_state"],
)
http_requests_total = Counter(
    "http_requests_total",
    "Total outbound backend HTTP requests",
    ["service", "path", "method", "status_code"],
)
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "Outbound backend HTTP request duration seconds",
    ["service", "path", "method"],
)
retries_total = Counter("retries_total", "Retry count", ["service", "dependency"])
token_refresh_total = Counter("token_refresh_total", "Credential refreshes triggered", ["service", "reason"])


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
