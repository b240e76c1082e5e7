"""Wire schemas for the backend payments API and the checkout widget."""

from decimal import Decimal
from typing import Annotated, Any, Callable, Optional

from pydantic import BaseModel, ConfigDict, Field, PlainSerializer


def _amount_to_json(value: Decimal) -> int | float:
    return int(value) if value == value.to_integral_value() else float(value)


# Rupee amounts: exact in Python, plain JSON numbers on the wire.
Amount = Annotated[Decimal, PlainSerializer(_amount_to_json, return_type=int | float, when_used="json")]


class PayableEntity(BaseModel):
    """Anything the backend can issue an order for (booking, prebooking, payout)."""

    model_config = ConfigDict(frozen=True)

    entity_type: str = Field(min_length=1)
    entity_id: str | int
    amount: Optional[Amount] = Field(default=None, gt=0)


class CreateOrderRequest(PayableEntity):
    """Body of `POST payments/create-order/`; `amount` omitted means full amount."""


class OrderDescriptor(BaseModel):
    """Backend-issued handle authorizing exactly one checkout attempt."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    order_id: str
    key_id: str
    amount: int
    currency: Optional[str] = None


class PaymentProof(BaseModel):
    """Signed triple returned by the checkout widget after payment."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    razorpay_payment_id: str
    razorpay_order_id: str
    razorpay_signature: str

    def __repr__(self) -> str:
        return (
            f"PaymentProof(payment_id={self.razorpay_payment_id!r}, "
            f"order_id={self.razorpay_order_id!r}, signature=<redacted>)"
        )


class VerificationResult(BaseModel):
    """Outcome of `POST payments/verify/`. Unknown fields are preserved."""

    model_config = ConfigDict(extra="allow")

    success: bool
    payment_id: Optional[str] = None
    message: Optional[str] = None


class RefundRequest(BaseModel):
    payment_id: str = Field(min_length=1)
    amount: Optional[Amount] = Field(default=None, gt=0)


class RefundResult(BaseModel):
    model_config = ConfigDict(extra="allow")

    success: bool
    refund_id: Optional[str] = None
    message: Optional[str] = None


class PayoutRequest(BaseModel):
    payout_id: str = Field(min_length=1)


class PayoutResult(BaseModel):
    model_config = ConfigDict(extra="allow")

    success: bool
    payout_id: Optional[str] = None
    message: Optional[str] = None


class Prefill(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    contact: Optional[str] = None


class PaymentOptions(BaseModel):
    """Caller-side knobs for one `pay_for_entity` run."""

    name: Optional[str] = None
    description: Optional[str] = None
    amount: Optional[Decimal] = None
    prefill: Optional[Prefill] = None
    notes: dict[str, str] = Field(default_factory=dict)
    theme_color: Optional[str] = None
    on_close: Optional[Callable[[], Any]] = None
    on_dismiss: Optional[Callable[[], Any]] = None


class CheckoutOptions(BaseModel):
    """Everything the checkout widget needs to render one order."""

    model_config = ConfigDict(frozen=True)

    key: str
    amount: int
    currency: str
    name: str
    description: str
    order_id: str
    prefill: Optional[Prefill] = None
    notes: dict[str, str] = Field(default_factory=dict)
    theme: Optional[dict[str, str]] = None

    def widget_payload(self) -> dict[str, Any]:
        """Plain dict in the shape the browser widget constructor expects."""

        return self.model_dump(mode="json", exclude_none=True)
