"""Typed clients for the backend payments endpoints."""

from decimal import Decimal

from nexuspay.common.config import settings
from nexuspay.common.logging import logger
from nexuspay.services.payments.executor import ResilientRequestExecutor, RetryPolicy
from nexuspay.services.payments.schemas import (
    CreateOrderRequest,
    OrderDescriptor,
    PaymentProof,
    PayoutRequest,
    PayoutResult,
    RefundRequest,
    RefundResult,
    VerificationResult,
)


CREATE_ORDER_PATH = "payments/create-order/"
VERIFY_PATH = "payments/verify/"
REFUND_PATH = "payments/refund/"
CREATE_PAYOUT_PATH = "payments/create-payout/"


def order_retry_policy() -> RetryPolicy:
    """Order creation is the call most exposed to cold starts; always retry 504s."""

    base = RetryPolicy.default()
    return base.model_copy(
        update={"max_retries": settings.order_retry_max_retries, "retryable_statuses": (504,)}
    )


class PaymentsClient:
    """Order, verification, refund and payout calls over one executor.

    Nothing is cached: every call hits the backend, so two `create_order`
    calls for the same entity yield two independent orders.
    """

    def __init__(self, executor: ResilientRequestExecutor, order_policy: RetryPolicy | None = None) -> None:
        self.executor = executor
        self.order_policy = order_policy or order_retry_policy()

    async def create_order(
        self, entity_type: str, entity_id: str | int, amount: Decimal | None = None
    ) -> OrderDescriptor:
        request = CreateOrderRequest(entity_type=entity_type, entity_id=entity_id, amount=amount)
        logger.info(
            "creating order entity_type=%s entity_id=%s amount=%s",
            entity_type,
            entity_id,
            amount if amount is not None else "full",
        )
        body = await self.executor.execute(
            CREATE_ORDER_PATH,
            json=request.model_dump(mode="json", exclude_none=True),
            retry_policy=self.order_policy,
        )
        order = OrderDescriptor.model_validate(body)
        logger.info("order created order_id=%s amount=%s currency=%s", order.order_id, order.amount, order.currency)
        return order

    async def verify_payment(self, proof: PaymentProof) -> VerificationResult:
        logger.info(
            "verifying payment payment_id=%s order_id=%s",
            proof.razorpay_payment_id,
            proof.razorpay_order_id,
        )
        body = await self.executor.execute(VERIFY_PATH, json=proof.model_dump(mode="json"))
        result = VerificationResult.model_validate(body)
        logger.info(
            "verification response success=%s payment_id=%s message=%s",
            result.success,
            result.payment_id,
            result.message,
        )
        return result

    async def create_refund(self, payment_id: str, amount: Decimal | None = None) -> RefundResult:
        """Refund a captured payment, fully when `amount` is omitted. Admin/staff only."""

        request = RefundRequest(payment_id=payment_id, amount=amount)
        body = await self.executor.execute(REFUND_PATH, json=request.model_dump(mode="json", exclude_none=True))
        result = RefundResult.model_validate(body)
        logger.info("refund response payment_id=%s success=%s refund_id=%s", payment_id, result.success, result.refund_id)
        return result

    async def create_payout(self, payout_id: str) -> PayoutResult:
        """Release an approved payout through the gateway. Admin/staff only."""

        request = PayoutRequest(payout_id=payout_id)
        body = await self.executor.execute(CREATE_PAYOUT_PATH, json=request.model_dump(mode="json"))
        result = PayoutResult.model_validate(body)
        logger.info("payout response payout_id=%s success=%s", payout_id, result.success)
        return result
