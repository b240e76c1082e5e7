"""Bridge between callback-style checkout widgets and awaitable payment proofs.

Checkout widgets report their outcome through callbacks (`handler` on
success, `modal.ondismiss` / `modal.onClose` when the user backs out). A
bridge turns one widget session into one awaitable that settles exactly
once; later callback firings are ignored.
"""

import asyncio
from typing import Any, Awaitable, Callable, Protocol

from nexuspay.common.errors import CheckoutClosed, CheckoutDismissed
from nexuspay.common.logging import logger
from nexuspay.services.payments.schemas import CheckoutOptions, PaymentProof


class CheckoutBridge(Protocol):
    """Opens checkout for one order and returns the proof, or raises `PaymentCancelled`."""

    async def open(self, options: CheckoutOptions) -> PaymentProof: ...


class CheckoutSettlement:
    """First-settlement-wins holder for one checkout session outcome."""

    def __init__(self, order_id: str) -> None:
        self.order_id = order_id
        self.future: asyncio.Future[PaymentProof] = asyncio.get_running_loop().create_future()

    @property
    def settled(self) -> bool:
        return self.future.done()

    def resolve(self, response: PaymentProof | dict[str, Any]) -> bool:
        if self.settled:
            logger.warning("ignoring checkout success after settlement order_id=%s", self.order_id)
            return False
        try:
            proof = response if isinstance(response, PaymentProof) else PaymentProof.model_validate(response)
        except ValueError as exc:
            self.future.set_exception(exc)
            return True
        self.future.set_result(proof)
        return True

    def reject(self, error: BaseException) -> bool:
        if self.settled:
            logger.info(
                "ignoring checkout %s after settlement order_id=%s",
                type(error).__name__,
                self.order_id,
            )
            return False
        self.future.set_exception(error)
        return True

    def dismiss(self) -> bool:
        return self.reject(CheckoutDismissed())

    def close(self) -> bool:
        return self.reject(CheckoutClosed())

    async def wait(self) -> PaymentProof:
        return await self.future


Launcher = Callable[[dict[str, Any]], Awaitable[Any]]


class CallbackCheckoutBridge:
    """Adapts a widget launcher that takes `handler`/`modal` callbacks.

    `launcher` receives the widget options dict (key, amount, currency,
    order_id, prefill, ... plus the callbacks) and should return once the
    widget is open. A launcher failure settles the session with that error.
    """

    def __init__(self, launcher: Launcher) -> None:
        self.launcher = launcher

    def widget_options(self, options: CheckoutOptions, settlement: CheckoutSettlement) -> dict[str, Any]:
        widget = options.widget_payload()
        widget["handler"] = settlement.resolve
        widget["modal"] = {"ondismiss": settlement.dismiss, "onClose": settlement.close}
        return widget

    async def open(self, options: CheckoutOptions) -> PaymentProof:
        settlement = CheckoutSettlement(options.order_id)
        try:
            await self.launcher(self.widget_options(options, settlement))
        except Exception as exc:
            logger.error("checkout launcher failed order_id=%s error=%r", options.order_id, exc)
            settlement.reject(exc)
        return await settlement.wait()
