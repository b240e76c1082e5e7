"""HTTP surface for relayed payment flows.

The browser starts a flow, fetches the widget options once the order exists,
opens the checkout widget and reports back whichever callback fired.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Header, HTTPException

from nexuspay.common import state_machine
from nexuspay.common.config import settings
from nexuspay.common.errors import PaymentInProgress, is_user_cancellation
from nexuspay.common.logging import configure_logging, trace_id_ctx
from nexuspay.common.metrics import metrics_response
from nexuspay.common.startup import log_startup_config
from nexuspay.common.tracing import instrument_app, setup_tracing
from nexuspay.services.checkout_relay.schemas import AttemptResponse, StartPaymentRequest
from nexuspay.services.checkout_relay.service import CheckoutRelay, UnknownAttempt
from nexuspay.services.payments.schemas import PaymentProof
from nexuspay.services.payments.service import PaymentAttempt


def bearer_token(authorization: str | None) -> str:
    """Extract the user's bearer token; the relay calls the backend on their behalf."""

    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(status_code=401, detail="missing bearer token")
    return token


def attempt_response(attempt: PaymentAttempt) -> AttemptResponse:
    return AttemptResponse(
        attempt_id=attempt.attempt_id,
        state=attempt.state,
        order_id=attempt.order.order_id if attempt.order else None,
        result=attempt.result.model_dump() if attempt.result else None,
        error=str(attempt.error) if attempt.error else None,
        cancelled=attempt.error is not None and is_user_cancellation(attempt.error),
    )


def create_app(relay: CheckoutRelay) -> FastAPI:
    @asynccontextmanager
    async def lifespan(_: FastAPI):
        """Stop pending flows, let verifications finish and release the HTTP pool."""

        yield
        await relay.aclose()

    app = FastAPI(title="NexusPay Checkout Relay", lifespan=lifespan)
    app.state.relay = relay

    def lookup(attempt_id: str) -> PaymentAttempt:
        try:
            return relay.get_attempt(attempt_id)
        except UnknownAttempt:
            raise HTTPException(status_code=404, detail="payment attempt not found") from None

    def settled_or_conflict(attempt: PaymentAttempt, settled: bool) -> dict:
        if settled:
            return {"ok": True}
        if attempt.state in (state_machine.IDLE, state_machine.ORDER_CREATING):
            raise HTTPException(status_code=404, detail="checkout not open")
        raise HTTPException(status_code=409, detail="checkout already settled")

    @app.post("/payments", response_model=AttemptResponse, status_code=202)
    async def start_payment(
        req: StartPaymentRequest,
        authorization: str | None = Header(default=None),
        x_correlation_id: str | None = Header(default=None),
    ):
        """Create the order and wait for the browser to open checkout."""

        token = bearer_token(authorization)
        if x_correlation_id:
            trace_id_ctx.set(x_correlation_id)
        if req.amount is not None and req.amount <= 0:
            raise HTTPException(status_code=422, detail="Invalid payment amount")
        try:
            attempt = relay.start(req.entity_type, req.entity_id, req.payment_options(), token)
        except PaymentInProgress as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        return attempt_response(attempt)

    @app.get("/payments/{attempt_id}", response_model=AttemptResponse)
    async def get_payment(attempt_id: str):
        """Fetch current flow state for one attempt."""

        return attempt_response(lookup(attempt_id))

    @app.get("/checkout/{attempt_id}")
    async def checkout_options(attempt_id: str):
        """Widget options; 404 until the order exists or after checkout settled."""

        lookup(attempt_id)
        options = relay.checkout_options(attempt_id)
        if options is None:
            raise HTTPException(status_code=404, detail="checkout not open")
        return options.widget_payload()

    @app.post("/checkout/{attempt_id}/handler")
    async def checkout_handler(attempt_id: str, proof: PaymentProof):
        attempt = lookup(attempt_id)
        return settled_or_conflict(attempt, relay.complete(attempt_id, proof))

    @app.post("/checkout/{attempt_id}/dismiss")
    async def checkout_dismiss(attempt_id: str):
        attempt = lookup(attempt_id)
        return settled_or_conflict(attempt, relay.dismiss(attempt_id))

    @app.post("/checkout/{attempt_id}/close")
    async def checkout_close(attempt_id: str):
        attempt = lookup(attempt_id)
        return settled_or_conflict(attempt, relay.close_checkout(attempt_id))

    @app.get("/metrics")
    def metrics():
        """Prometheus scrape endpoint."""

        return metrics_response()

    @app.get("/health")
    def health():
        """Container health probe endpoint."""

        return {"ok": True}

    return app


configure_logging()
if settings.otel_enabled:
    setup_tracing(settings.service_name)
log_startup_config(
    settings,
    ["service_name", "api_base_url", "retry_max_retries", "retry_base_delay_ms", "retry_statuses"],
)
app = create_app(CheckoutRelay())
instrument_app(app)
