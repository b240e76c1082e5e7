"""Shared fixtures: a scripted fake payments backend behind httpx.MockTransport."""

import os
from collections import defaultdict

os.environ.setdefault("OTEL_ENABLED", "false")
os.environ.setdefault("API_BASE_URL", "http://backend.test/api/")

import httpx  # noqa: E402
import pytest  # noqa: E402

from nexuspay.services.payments.client import PaymentsClient  # noqa: E402
from nexuspay.services.payments.executor import ResilientRequestExecutor, RetryPolicy  # noqa: E402


BASE_URL = "http://backend.test/api/"


class FakeBackend:
    """Answers each path from a queue of responses (or exceptions to raise)."""

    def __init__(self) -> None:
        self.routes: dict[str, list] = defaultdict(list)
        self.requests: list[httpx.Request] = []

    def queue(self, path: str, *responses) -> None:
        self.routes[path].extend(responses)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path.removeprefix("/api/")
        if not self.routes[path]:
            return httpx.Response(404, json={"detail": f"unexpected call to {path}"})
        item = self.routes[path].pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    def calls(self, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path.removeprefix("/api/") == path]


class FakeCredentials:
    """Credential provider double that hands out scripted refresh results."""

    def __init__(self, token: str | None = "tok-1", refreshed: tuple = ("tok-2",)) -> None:
        self.token = token
        self._refreshed = list(refreshed)
        self.refresh_calls: list[str] = []

    def get_token(self) -> str | None:
        return self.token

    async def refresh(self, reason: str = "expired") -> str | None:
        self.refresh_calls.append(reason)
        self.token = self._refreshed.pop(0) if self._refreshed else None
        return self.token


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def fake_sleep(sleeps):
    async def _sleep(seconds: float) -> None:
        sleeps.append(seconds)

    return _sleep


@pytest.fixture
def credentials():
    return FakeCredentials()


@pytest.fixture
async def http_client(backend):
    async with httpx.AsyncClient(transport=httpx.MockTransport(backend.handler)) as client:
        yield client


@pytest.fixture
def executor(credentials, http_client, fake_sleep):
    return ResilientRequestExecutor(
        credentials,
        base_url=BASE_URL,
        client=http_client,
        sleep=fake_sleep,
        default_policy=RetryPolicy(),
    )


@pytest.fixture
def payments(executor):
    return PaymentsClient(executor, order_policy=RetryPolicy(max_retries=2, retryable_statuses=(504,)))
