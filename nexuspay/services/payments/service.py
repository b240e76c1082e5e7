"""Payment flow orchestration.

One `pay_for_entity` run walks the flow state machine
IDLE -> ORDER_CREATING -> AWAITING_PROOF -> VERIFYING -> SUCCEEDED, leaving
for FAILED or CANCELLED on the way. Every run creates a fresh order; an order
whose checkout was dismissed is never reused.
"""

import asyncio
import inspect
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from time import perf_counter
from typing import Any, Callable, Optional
from uuid import uuid4

from nexuspay.common import state_machine
from nexuspay.common.config import settings
from nexuspay.common.errors import (
    CheckoutClosed,
    InsufficientPermissions,
    PaymentCancelled,
    PaymentError,
    PaymentInProgress,
    PaymentVerificationFailed,
)
from nexuspay.common.logging import attempt_id_ctx, logger, order_id_ctx
from nexuspay.common.metrics import (
    payment_cancelled_total,
    payment_failure_total,
    payment_latency_seconds,
    payment_requests_total,
    payment_success_total,
)
from nexuspay.services.payments.checkout import CheckoutBridge
from nexuspay.services.payments.client import PaymentsClient
from nexuspay.services.payments.schemas import (
    CheckoutOptions,
    OrderDescriptor,
    PaymentOptions,
    VerificationResult,
)


PRIVILEGED_ROLES = frozenset({"admin", "staff"})


@dataclass
class StateChange:
    from_state: str
    to_state: str
    reason: str
    at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class PaymentAttempt:
    """In-memory record of one `pay_for_entity` run."""

    entity_type: str
    entity_id: str | int
    attempt_id: str = field(default_factory=lambda: str(uuid4()))
    state: str = state_machine.IDLE
    order: Optional[OrderDescriptor] = None
    checkout: Optional[CheckoutOptions] = None
    result: Optional[VerificationResult] = None
    error: Optional[BaseException] = None
    timeline: list[StateChange] = field(default_factory=list)

    @property
    def finished(self) -> bool:
        return state_machine.is_terminal(self.state)


class PaymentFlowOrchestrator:
    """Create order, run checkout, verify proof; report a single outcome."""

    def __init__(
        self,
        client: PaymentsClient,
        service_name: str | None = None,
        on_transition: Callable[[PaymentAttempt], Any] | None = None,
    ) -> None:
        self.client = client
        self.service_name = service_name or settings.service_name
        self.on_transition = on_transition

    def _transition(self, attempt: PaymentAttempt, new_state: str, reason: str) -> None:
        state_machine.validate_transition(attempt.state, new_state)
        attempt.timeline.append(StateChange(attempt.state, new_state, reason))
        logger.info(
            "payment transition entity=%s:%s %s -> %s reason=%s",
            attempt.entity_type,
            attempt.entity_id,
            attempt.state,
            new_state,
            reason,
        )
        attempt.state = new_state
        if self.on_transition is not None:
            self.on_transition(attempt)

    def _fail(self, attempt: PaymentAttempt, error: BaseException, stage: str) -> None:
        attempt.error = error
        self._transition(attempt, state_machine.FAILED, f"{stage}_failed")
        payment_failure_total.labels(service=self.service_name, stage=stage).inc()
        logger.warning("payment failed stage=%s error=%s", stage, error)

    def checkout_options(
        self, entity_type: str, order: OrderDescriptor, options: PaymentOptions
    ) -> CheckoutOptions:
        return CheckoutOptions(
            key=order.key_id,
            amount=order.amount,
            currency=order.currency or settings.default_currency,
            name=options.name or settings.merchant_name,
            description=options.description or f"Payment for {entity_type}",
            order_id=order.order_id,
            prefill=options.prefill,
            notes=options.notes,
            theme={"color": options.theme_color} if options.theme_color else None,
        )

    async def pay_for_entity(
        self,
        entity_type: str,
        entity_id: str | int,
        checkout_bridge: CheckoutBridge,
        options: PaymentOptions | None = None,
        attempt: PaymentAttempt | None = None,
    ) -> VerificationResult:
        """Run the full payment flow once and return the verified result.

        Raises the order/verification error on failure,
        `PaymentVerificationFailed` when the backend answers `success: false`,
        and the bridge's `PaymentCancelled` when the user backs out (after
        calling the matching `on_dismiss` / `on_close` hook).
        """

        options = options or PaymentOptions()
        validate_amount(options.amount)

        attempt = attempt or PaymentAttempt(entity_type=entity_type, entity_id=entity_id)
        attempt_token = attempt_id_ctx.set(attempt.attempt_id)
        order_token = None
        payment_requests_total.labels(service=self.service_name).inc()
        start = perf_counter()
        try:
            self._transition(attempt, state_machine.ORDER_CREATING, "pay_requested")
            try:
                order = await self.client.create_order(entity_type, entity_id, options.amount)
            except Exception as exc:
                self._fail(attempt, exc, stage="order")
                raise

            attempt.order = order
            order_token = order_id_ctx.set(order.order_id)
            attempt.checkout = self.checkout_options(entity_type, order, options)
            self._transition(attempt, state_machine.AWAITING_PROOF, "order_created")
            try:
                proof = await checkout_bridge.open(attempt.checkout)
            except PaymentCancelled as exc:
                attempt.error = exc
                self._transition(attempt, state_machine.CANCELLED, f"checkout_{exc.reason}")
                payment_cancelled_total.labels(service=self.service_name, reason=exc.reason).inc()
                await _run_hook(options.on_close if isinstance(exc, CheckoutClosed) else options.on_dismiss)
                raise
            except Exception as exc:
                self._fail(attempt, exc, stage="checkout")
                raise

            self._transition(attempt, state_machine.VERIFYING, "proof_received")
            try:
                result = await self.client.verify_payment(proof)
            except Exception as exc:
                self._fail(attempt, exc, stage="verify")
                raise

            if not result.success:
                error = PaymentVerificationFailed(result.message or "Payment verification failed", result)
                attempt.result = result
                self._fail(attempt, error, stage="verify")
                raise error

            attempt.result = result
            self._transition(attempt, state_machine.SUCCEEDED, "payment_verified")
            payment_success_total.labels(service=self.service_name).inc()
            return result
        except asyncio.CancelledError:
            if not attempt.finished:
                self._fail(attempt, PaymentError("Payment flow interrupted"), stage="interrupted")
            raise
        finally:
            if attempt.finished:
                payment_latency_seconds.labels(
                    service=self.service_name, terminal_state=attempt.state
                ).observe(max(0.0, perf_counter() - start))
            if order_token is not None:
                order_id_ctx.reset(order_token)
            attempt_id_ctx.reset(attempt_token)


async def _run_hook(hook: Callable[[], Any] | None) -> None:
    if hook is None:
        return
    try:
        outcome = hook()
        if inspect.isawaitable(outcome):
            await outcome
    except Exception as exc:
        # Hook errors never replace the cancellation.
        logger.exception("checkout cancel hook failed: %s", exc)


class PaymentAttemptGuard:
    """Rejects a second concurrent flow for the same entity (double-click guard)."""

    def __init__(self) -> None:
        self._active: set[tuple[str, str]] = set()

    def busy(self, entity_type: str, entity_id: str | int) -> bool:
        return (entity_type, str(entity_id)) in self._active

    def acquire(self, entity_type: str, entity_id: str | int) -> None:
        key = (entity_type, str(entity_id))
        if key in self._active:
            raise PaymentInProgress(f"Payment already in progress for {entity_type} {entity_id}")
        self._active.add(key)

    def release(self, entity_type: str, entity_id: str | int) -> None:
        self._active.discard((entity_type, str(entity_id)))

    @contextmanager
    def hold(self, entity_type: str, entity_id: str | int):
        self.acquire(entity_type, entity_id)
        try:
            yield
        finally:
            self.release(entity_type, entity_id)


def ensure_privileged(role: str | None) -> None:
    """Refunds and payouts are for admin/staff; the backend still has the final say."""

    if role not in PRIVILEGED_ROLES:
        raise InsufficientPermissions("Insufficient permissions. Admin or staff access required.")


def validate_amount(amount: Decimal | None) -> None:
    if amount is not None and amount <= 0:
        raise ValueError("Invalid payment amount")
