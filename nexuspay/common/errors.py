"""Error taxonomy shared by the payment clients, orchestrator and relay."""

from typing import Any


class PaymentError(Exception):
    """Base class for payment-flow failures."""


class RequestError(PaymentError):
    """Backend answered with a non-success HTTP status."""

    def __init__(self, status: int, message: str, body: Any = None) -> None:
        super().__init__(message)
        self.status = status
        self.message = message
        self.body = body


class PaymentCancelled(PaymentError):
    """User left the checkout without paying. Not a failure for display purposes."""

    reason = "cancelled"


class CheckoutDismissed(PaymentCancelled):
    reason = "dismissed"

    def __init__(self, message: str = "Payment cancelled by user") -> None:
        super().__init__(message)


class CheckoutClosed(PaymentCancelled):
    reason = "closed"

    def __init__(self, message: str = "Payment modal closed") -> None:
        super().__init__(message)


class PaymentVerificationFailed(PaymentError):
    """Backend rejected the payment proof (`success: false`)."""

    def __init__(self, message: str, result: Any = None) -> None:
        super().__init__(message)
        self.result = result


class PaymentInProgress(PaymentError):
    """A payment flow for the same entity is already running."""


class InsufficientPermissions(PaymentError):
    pass


def is_user_cancellation(exc: BaseException) -> bool:
    """True when an error stems from the user cancelling or closing checkout.

    Callers use this to skip error toasts; the error itself still propagates.
    """

    if isinstance(exc, PaymentCancelled):
        return True
    message = str(exc).lower()
    return "cancelled" in message or "closed" in message
