"""Request/response schemas for checkout relay endpoints."""

from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, Field

from nexuspay.services.payments.schemas import PaymentOptions, Prefill


class StartPaymentRequest(BaseModel):
    """Payload accepted by `POST /payments`."""

    entity_type: str = Field(min_length=1)
    entity_id: str | int
    amount: Optional[Decimal] = None
    name: Optional[str] = None
    description: Optional[str] = None
    prefill: Optional[Prefill] = None
    notes: dict[str, str] = Field(default_factory=dict)

    def payment_options(self) -> PaymentOptions:
        return PaymentOptions(
            name=self.name,
            description=self.description,
            amount=self.amount,
            prefill=self.prefill,
            notes=self.notes,
        )


class AttemptResponse(BaseModel):
    """Current view of one relayed payment attempt."""

    attempt_id: str
    state: str
    order_id: Optional[str] = None
    result: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    cancelled: bool = False
