"""Authenticated backend calls with token refresh and cold-start backoff.

Every outbound payments call goes through `ResilientRequestExecutor.execute`:

* a bearer token from the credential provider is attached (refreshing first
  when none is cached);
* a 401 triggers exactly one refresh-and-resend of the same request;
* statuses in the retry policy (504 by default) and transport errors are
  retried with exponential backoff, which absorbs backend cold starts.
"""

import asyncio
from time import perf_counter
from typing import Any, Awaitable, Callable

import httpx
from pydantic import BaseModel, ConfigDict

from nexuspay.common.config import settings
from nexuspay.common.credentials import CredentialProvider
from nexuspay.common.errors import RequestError
from nexuspay.common.logging import logger, trace_id_ctx
from nexuspay.common.metrics import http_request_duration_seconds, http_requests_total, retries_total
from nexuspay.common.tracing import backend_call_span


Sleep = Callable[[float], Awaitable[Any]]


class RetryPolicy(BaseModel):
    """How many times, how long, and on which statuses to retry."""

    model_config = ConfigDict(frozen=True)

    max_retries: int = 2
    base_delay_ms: int = 2000
    retryable_statuses: tuple[int, ...] = (504,)

    @classmethod
    def default(cls) -> "RetryPolicy":
        return cls(
            max_retries=settings.retry_max_retries,
            base_delay_ms=settings.retry_base_delay_ms,
            retryable_statuses=tuple(settings.retry_statuses),
        )

    def delay_seconds(self, attempt: int) -> float:
        """Backoff before retry number `attempt` (1-based): base, 2*base, 4*base..."""

        return self.base_delay_ms * 2 ** (attempt - 1) / 1000


def _error_message(response: httpx.Response, fallback: str | None = None) -> tuple[str, Any]:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        detail = body.get("detail") or body.get("message")
        if detail:
            return (detail if isinstance(detail, str) else str(detail)), body
    if fallback is not None:
        return fallback, body
    return f"HTTP {response.status_code}: {response.reason_phrase}", body


def _request_error(response: httpx.Response, fallback: str | None = None) -> RequestError:
    message, body = _error_message(response, fallback)
    return RequestError(response.status_code, message, body)


def _json_body(response: httpx.Response) -> Any:
    if not response.content:
        return {}
    try:
        return response.json()
    except ValueError as exc:
        raise RequestError(response.status_code, "Malformed response body from payments backend") from exc


class ResilientRequestExecutor:
    """Sends one logical request, absorbing auth expiry and transient failures."""

    def __init__(
        self,
        credentials: CredentialProvider,
        base_url: str | None = None,
        client: httpx.AsyncClient | None = None,
        sleep: Sleep = asyncio.sleep,
        default_policy: RetryPolicy | None = None,
    ) -> None:
        self.credentials = credentials
        self.base_url = base_url or settings.api_base_url
        if not self.base_url.endswith("/"):
            self.base_url += "/"
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=settings.request_timeout_seconds)
        self.sleep = sleep
        self.default_policy = default_policy or RetryPolicy.default()

    async def __aenter__(self) -> "ResilientRequestExecutor":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    def url_for(self, path: str) -> str:
        return f"{self.base_url}{path[1:] if path.startswith('/') else path}"

    async def execute(
        self,
        path: str,
        method: str = "POST",
        json: Any = None,
        headers: dict[str, str] | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> Any:
        """Run the request to completion and return the decoded JSON body.

        Raises `RequestError` for non-success statuses (after retries where
        the policy allows them) and re-raises the last `httpx.TransportError`
        once the retry budget is spent.
        """

        policy = retry_policy or self.default_policy
        token = self.credentials.get_token()
        if not token:
            token = await self.credentials.refresh(reason="missing")

        attempt = 0
        while True:
            attempt += 1
            try:
                response = await self._send(method, path, json, headers, token, attempt)
            except httpx.TransportError as exc:
                if attempt > policy.max_retries:
                    logger.error(
                        "backend request failed path=%s attempts=%s error=%r",
                        path,
                        attempt,
                        exc,
                    )
                    raise
                await self._backoff(policy, attempt, path, reason=type(exc).__name__)
                continue

            if response.status_code == 401 and token:
                return await self._resend_with_fresh_token(method, path, json, headers, response, attempt)
            if response.is_success:
                return _json_body(response)
            if response.status_code in policy.retryable_statuses and attempt <= policy.max_retries:
                await self._backoff(policy, attempt, path, reason=str(response.status_code))
                continue

            error = _request_error(response)
            logger.warning(
                "backend rejected request path=%s status=%s attempts=%s message=%s",
                path,
                error.status,
                attempt,
                error.message,
            )
            raise error

    async def _resend_with_fresh_token(
        self,
        method: str,
        path: str,
        json: Any,
        headers: dict[str, str] | None,
        unauthorized: httpx.Response,
        attempt: int,
    ) -> Any:
        """Single refresh-and-resend. Whatever the resend returns is final."""

        logger.info("backend returned 401 path=%s; refreshing credential once", path)
        token = await self.credentials.refresh(reason="unauthorized")
        if not token:
            raise _request_error(unauthorized)

        response = await self._send(method, path, json, headers, token, attempt + 1)
        if not response.is_success:
            error = _request_error(response, fallback="Authentication failed")
            logger.warning(
                "request failed after credential refresh path=%s status=%s",
                path,
                response.status_code,
            )
            raise error
        return _json_body(response)

    async def _backoff(self, policy: RetryPolicy, attempt: int, path: str, reason: str) -> None:
        delay = policy.delay_seconds(attempt)
        retries_total.labels(service=settings.service_name, dependency="backend").inc()
        logger.warning(
            "backend transient failure path=%s reason=%s attempt=%s backoff_s=%s",
            path,
            reason,
            attempt,
            delay,
        )
        await self.sleep(delay)

    async def _send(
        self,
        method: str,
        path: str,
        json: Any,
        headers: dict[str, str] | None,
        token: str | None,
        attempt: int,
    ) -> httpx.Response:
        request_headers = {"Content-Type": "application/json", **(headers or {})}
        if token:
            request_headers["Authorization"] = f"Bearer {token}"
        trace_id = trace_id_ctx.get()
        if trace_id:
            request_headers.setdefault("x-trace-id", trace_id)

        start = perf_counter()
        status_code = "error"
        with backend_call_span(method, path, attempt) as span:
            try:
                response = await self.client.request(
                    method, self.url_for(path), json=json, headers=request_headers
                )
                status_code = str(response.status_code)
                span.set_attribute("http.response.status_code", response.status_code)
                return response
            finally:
                http_request_duration_seconds.labels(
                    service=settings.service_name, path=path, method=method
                ).observe(max(0.0, perf_counter() - start))
                http_requests_total.labels(
                    service=settings.service_name,
                    path=path,
                    method=method,
                    status_code=status_code,
                ).inc()
