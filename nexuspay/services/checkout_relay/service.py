"""Server-side payment flows driven by a browser-hosted checkout widget.

The relay runs `pay_for_entity` in the background. Its checkout bridge does
not open anything itself: it publishes the widget options and waits for the
browser to report the widget callbacks back over HTTP.
"""

import asyncio
from dataclasses import dataclass

import httpx

from nexuspay.common import state_machine
from nexuspay.common.config import settings
from nexuspay.common.credentials import InMemoryCredentialProvider
from nexuspay.common.errors import CheckoutClosed, PaymentCancelled, is_user_cancellation
from nexuspay.common.logging import logger
from nexuspay.services.payments.checkout import CheckoutSettlement
from nexuspay.services.payments.client import PaymentsClient
from nexuspay.services.payments.executor import ResilientRequestExecutor, Sleep
from nexuspay.services.payments.schemas import CheckoutOptions, PaymentOptions, PaymentProof
from nexuspay.services.payments.service import PaymentAttempt, PaymentAttemptGuard, PaymentFlowOrchestrator


@dataclass
class RelaySession:
    options: CheckoutOptions
    settlement: CheckoutSettlement


class UnknownAttempt(KeyError):
    pass


class RelayCheckoutBridge:
    """Checkout bridge whose callbacks arrive through the relay endpoints."""

    def __init__(self, relay: "CheckoutRelay", attempt_id: str) -> None:
        self.relay = relay
        self.attempt_id = attempt_id

    async def open(self, options: CheckoutOptions) -> PaymentProof:
        settlement = CheckoutSettlement(options.order_id)
        self.relay.sessions[self.attempt_id] = RelaySession(options=options, settlement=settlement)
        try:
            try:
                await asyncio.wait_for(asyncio.shield(settlement.future), self.relay.checkout_timeout)
            except asyncio.TimeoutError:
                if settlement.reject(CheckoutClosed("Payment modal closed: checkout timed out")):
                    logger.info("relayed checkout timed out attempt_id=%s", self.attempt_id)
            return await settlement.wait()
        finally:
            self.relay.sessions.pop(self.attempt_id, None)


class CheckoutRelay:
    """Owns in-memory attempts, their background tasks and pending checkouts."""

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        base_url: str | None = None,
        sleep: Sleep = asyncio.sleep,
        max_attempts: int | None = None,
        checkout_timeout: float | None = None,
    ) -> None:
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=settings.request_timeout_seconds)
        self.base_url = base_url
        self.sleep = sleep
        self.max_attempts = max_attempts or settings.relay_max_attempts
        self.checkout_timeout = checkout_timeout or settings.relay_checkout_timeout_seconds
        self.attempts: dict[str, PaymentAttempt] = {}
        self.sessions: dict[str, RelaySession] = {}
        self.tasks: dict[str, asyncio.Task] = {}
        self.guard = PaymentAttemptGuard()

    def _orchestrator(self, access_token: str) -> PaymentFlowOrchestrator:
        # The browser owns the refresh token; an expired bearer surfaces as 401.
        executor = ResilientRequestExecutor(
            InMemoryCredentialProvider(access_token=access_token),
            base_url=self.base_url,
            client=self.client,
            sleep=self.sleep,
        )
        return PaymentFlowOrchestrator(PaymentsClient(executor))

    def start(
        self,
        entity_type: str,
        entity_id: str | int,
        options: PaymentOptions,
        access_token: str,
    ) -> PaymentAttempt:
        """Register a new attempt and run its flow in the background.

        Raises `PaymentInProgress` while another relayed flow for the same
        entity is still running.
        """

        self.guard.acquire(entity_type, entity_id)
        attempt = PaymentAttempt(entity_type=entity_type, entity_id=entity_id)
        self.attempts[attempt.attempt_id] = attempt
        self._prune()
        orchestrator = self._orchestrator(access_token)
        self.tasks[attempt.attempt_id] = asyncio.create_task(
            self._run(orchestrator, attempt, options), name=f"payment-{attempt.attempt_id}"
        )
        return attempt

    async def _run(
        self, orchestrator: PaymentFlowOrchestrator, attempt: PaymentAttempt, options: PaymentOptions
    ) -> None:
        bridge = RelayCheckoutBridge(self, attempt.attempt_id)
        try:
            await orchestrator.pay_for_entity(
                attempt.entity_type, attempt.entity_id, bridge, options, attempt=attempt
            )
        except Exception as exc:
            # Outcome lives on the attempt and is polled via GET /payments/{attempt_id}.
            if is_user_cancellation(exc):
                logger.info("relayed payment cancelled attempt_id=%s", attempt.attempt_id)
            else:
                logger.warning("relayed payment failed attempt_id=%s error=%s", attempt.attempt_id, exc)
        finally:
            self.guard.release(attempt.entity_type, attempt.entity_id)
            self.tasks.pop(attempt.attempt_id, None)

    def _prune(self) -> None:
        overflow = len(self.attempts) - self.max_attempts
        if overflow <= 0:
            return
        finished = [attempt_id for attempt_id, attempt in self.attempts.items() if attempt.finished]
        for attempt_id in finished[:overflow]:
            del self.attempts[attempt_id]

    def get_attempt(self, attempt_id: str) -> PaymentAttempt:
        try:
            return self.attempts[attempt_id]
        except KeyError:
            raise UnknownAttempt(attempt_id) from None

    def _session(self, attempt_id: str) -> RelaySession | None:
        self.get_attempt(attempt_id)
        return self.sessions.get(attempt_id)

    def checkout_options(self, attempt_id: str) -> CheckoutOptions | None:
        """Widget options while the attempt waits for the browser, else None."""

        session = self._session(attempt_id)
        return session.options if session else None

    def complete(self, attempt_id: str, proof: PaymentProof) -> bool:
        session = self._session(attempt_id)
        return session is not None and session.settlement.resolve(proof)

    def dismiss(self, attempt_id: str) -> bool:
        session = self._session(attempt_id)
        return session is not None and session.settlement.dismiss()

    def close_checkout(self, attempt_id: str) -> bool:
        session = self._session(attempt_id)
        return session is not None and session.settlement.close()

    async def aclose(self) -> None:
        for session in list(self.sessions.values()):
            session.settlement.reject(PaymentCancelled("Payment cancelled: relay shutting down"))
        tasks = []
        for attempt_id, task in list(self.tasks.items()):
            attempt = self.attempts.get(attempt_id)
            # Verification already in flight runs to completion.
            if attempt is not None and attempt.state in (state_machine.IDLE, state_machine.ORDER_CREATING):
                task.cancel()
            tasks.append(task)
        await asyncio.gather(*tasks, return_exceptions=True)
        if self._owns_client:
            await self.client.aclose()
