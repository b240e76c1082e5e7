"""Relay endpoints driving a server-side flow from browser-reported callbacks."""

import asyncio

import httpx
import pytest

from conftest import BASE_URL
from nexuspay.services.checkout_relay.main import create_app
from nexuspay.services.checkout_relay.service import CheckoutRelay
from nexuspay.services.payments.client import CREATE_ORDER_PATH, VERIFY_PATH
from nexuspay.services.payments.schemas import PaymentOptions, PaymentProof


ORDER = {"order_id": "o1", "key_id": "k1", "amount": 50000, "currency": "INR"}
PROOF = {"razorpay_payment_id": "p1", "razorpay_order_id": "o1", "razorpay_signature": "s1"}
AUTH = {"Authorization": "Bearer user-token"}


@pytest.fixture
async def relay(http_client, fake_sleep):
    relay = CheckoutRelay(client=http_client, base_url=BASE_URL, sleep=fake_sleep)
    yield relay
    await relay.aclose()


@pytest.fixture
async def api(relay):
    transport = httpx.ASGITransport(app=create_app(relay))
    async with httpx.AsyncClient(transport=transport, base_url="http://relay.test") as client:
        yield client


async def wait_until(predicate, timeout: float = 2.0) -> None:
    async def poll():
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(poll(), timeout)


async def start(api, relay, entity_id="b1"):
    resp = await api.post("/payments", json={"entity_type": "booking", "entity_id": entity_id}, headers=AUTH)
    assert resp.status_code == 202
    attempt_id = resp.json()["attempt_id"]
    await wait_until(lambda: attempt_id in relay.sessions or relay.attempts[attempt_id].finished)
    return attempt_id


async def test_relayed_payment_succeeds(backend, api, relay):
    backend.queue(CREATE_ORDER_PATH, httpx.Response(200, json=ORDER))
    backend.queue(VERIFY_PATH, httpx.Response(200, json={"success": True, "payment_id": "p1"}))
    attempt_id = await start(api, relay)

    widget = (await api.get(f"/checkout/{attempt_id}")).json()
    assert widget["key"] == "k1"
    assert widget["order_id"] == "o1"
    assert widget["description"] == "Payment for booking"

    resp = await api.post(f"/checkout/{attempt_id}/handler", json=PROOF)
    assert resp.status_code == 200
    await wait_until(lambda: relay.attempts[attempt_id].finished)

    body = (await api.get(f"/payments/{attempt_id}")).json()
    assert body["state"] == "SUCCEEDED"
    assert body["order_id"] == "o1"
    assert body["result"]["payment_id"] == "p1"
    assert backend.calls(VERIFY_PATH)[0].headers["Authorization"] == "Bearer user-token"


async def test_relayed_dismissal_is_a_cancellation(backend, api, relay):
    backend.queue(CREATE_ORDER_PATH, httpx.Response(200, json=ORDER))
    attempt_id = await start(api, relay)

    assert (await api.post(f"/checkout/{attempt_id}/dismiss")).status_code == 200
    assert (await api.post(f"/checkout/{attempt_id}/handler", json=PROOF)).status_code == 409
    await wait_until(lambda: relay.attempts[attempt_id].finished)

    body = (await api.get(f"/payments/{attempt_id}")).json()
    assert body["state"] == "CANCELLED"
    assert body["cancelled"] is True
    assert "cancelled" in body["error"]
    assert backend.calls(VERIFY_PATH) == []
    assert (await api.get(f"/checkout/{attempt_id}")).status_code == 404


async def test_relayed_close(backend, api, relay):
    backend.queue(CREATE_ORDER_PATH, httpx.Response(200, json=ORDER))
    attempt_id = await start(api, relay)

    assert (await api.post(f"/checkout/{attempt_id}/close")).status_code == 200
    await wait_until(lambda: relay.attempts[attempt_id].finished)

    body = (await api.get(f"/payments/{attempt_id}")).json()
    assert body["state"] == "CANCELLED"
    assert "closed" in body["error"]


async def test_order_failure_reported(backend, api, relay):
    backend.queue(CREATE_ORDER_PATH, httpx.Response(404, json={"detail": "Booking not found"}))
    attempt_id = await start(api, relay)

    body = (await api.get(f"/payments/{attempt_id}")).json()
    assert body["state"] == "FAILED"
    assert body["error"] == "Booking not found"
    assert body["cancelled"] is False
    assert (await api.get(f"/checkout/{attempt_id}")).status_code == 404


async def test_second_flow_for_same_entity_conflicts(backend, api, relay):
    backend.queue(CREATE_ORDER_PATH, httpx.Response(200, json=ORDER), httpx.Response(200, json=ORDER))
    first = await start(api, relay)

    resp = await api.post("/payments", json={"entity_type": "booking", "entity_id": "b1"}, headers=AUTH)
    assert resp.status_code == 409

    await api.post(f"/checkout/{first}/dismiss")
    await wait_until(lambda: relay.attempts[first].finished and not relay.tasks)
    await start(api, relay)


async def test_requires_bearer_token(api):
    resp = await api.post("/payments", json={"entity_type": "booking", "entity_id": "b1"})

    assert resp.status_code == 401


async def test_rejects_non_positive_amount(api, backend):
    resp = await api.post(
        "/payments", json={"entity_type": "booking", "entity_id": "b1", "amount": 0}, headers=AUTH
    )

    assert resp.status_code == 422
    assert backend.requests == []


async def test_unknown_attempt(api):
    assert (await api.get("/payments/nope")).status_code == 404
    assert (await api.post("/checkout/nope/dismiss")).status_code == 404


async def test_health_and_metrics(api):
    assert (await api.get("/health")).json() == {"ok": True}
    metrics = await api.get("/metrics")
    assert "payment_requests_total" in metrics.text


class GatedBackend:
    """Backend whose responses for a path are held until its gate opens."""

    def __init__(self, responses: dict[str, httpx.Response]) -> None:
        self.responses = responses
        self.gates = {path: asyncio.Event() for path in responses}
        self.entered: set[str] = set()

    async def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path.removeprefix("/api/")
        self.entered.add(path)
        await self.gates[path].wait()
        return self.responses[path]


@pytest.fixture
async def gated():
    backend = GatedBackend(
        {
            CREATE_ORDER_PATH: httpx.Response(200, json=ORDER),
            VERIFY_PATH: httpx.Response(200, json={"success": True, "payment_id": "p1"}),
        }
    )
    async with httpx.AsyncClient(transport=httpx.MockTransport(backend.handler)) as client:
        backend.relay = CheckoutRelay(client=client, base_url=BASE_URL)
        yield backend
        await backend.relay.aclose()


async def test_shutdown_lets_verification_finish(gated):
    relay = gated.relay
    gated.gates[CREATE_ORDER_PATH].set()
    attempt = relay.start("booking", "b1", PaymentOptions(), "user-token")
    await wait_until(lambda: attempt.attempt_id in relay.sessions)
    assert relay.complete(attempt.attempt_id, PaymentProof(**PROOF))
    await wait_until(lambda: VERIFY_PATH in gated.entered)

    shutdown = asyncio.create_task(relay.aclose())
    await asyncio.sleep(0.05)
    assert not shutdown.done()
    gated.gates[VERIFY_PATH].set()
    await asyncio.wait_for(shutdown, 2)

    assert attempt.state == "SUCCEEDED"
    assert attempt.result.payment_id == "p1"


async def test_shutdown_while_creating_order_fails_attempt(gated):
    relay = gated.relay
    attempt = relay.start("booking", "b1", PaymentOptions(), "user-token")
    await wait_until(lambda: CREATE_ORDER_PATH in gated.entered)

    await asyncio.wait_for(relay.aclose(), 2)

    assert attempt.state == "FAILED"
    assert str(attempt.error) == "Payment flow interrupted"
    assert not relay.guard.busy("booking", "b1")
    assert relay.tasks == {}


async def test_callbacks_before_checkout_opens_are_not_found(gated):
    relay = gated.relay
    attempt = relay.start("booking", "b1", PaymentOptions(), "user-token")
    await wait_until(lambda: CREATE_ORDER_PATH in gated.entered)
    transport = httpx.ASGITransport(app=create_app(relay))

    async with httpx.AsyncClient(transport=transport, base_url="http://relay.test") as api:
        for action in ("dismiss", "close"):
            resp = await api.post(f"/checkout/{attempt.attempt_id}/{action}")
            assert resp.status_code == 404
            assert resp.json()["detail"] == "checkout not open"
        resp = await api.post(f"/checkout/{attempt.attempt_id}/handler", json=PROOF)
        assert resp.status_code == 404

    assert attempt.state == "ORDER_CREATING"


async def test_abandoned_checkout_times_out(backend, http_client, fake_sleep):
    backend.queue(CREATE_ORDER_PATH, httpx.Response(200, json=ORDER), httpx.Response(200, json=ORDER))
    relay = CheckoutRelay(client=http_client, base_url=BASE_URL, sleep=fake_sleep, checkout_timeout=0.05)
    try:
        attempt = relay.start("booking", "b1", PaymentOptions(), "user-token")
        await wait_until(lambda: attempt.finished and not relay.tasks)

        assert attempt.state == "CANCELLED"
        assert "timed out" in str(attempt.error)
        assert relay.sessions == {}
        assert not relay.guard.busy("booking", "b1")
        assert backend.calls(VERIFY_PATH) == []

        relay.start("booking", "b1", PaymentOptions(), "user-token")
    finally:
        await relay.aclose()
