"""Bearer credential providers consumed by the request executor.

Tokens are set at login, cleared at logout and refreshed on demand. Token
storage itself belongs to the caller; this module only holds the current
access token in memory and serializes refreshes.
"""

import asyncio
from typing import Awaitable, Callable, Optional, Protocol

from nexuspay.common.config import settings
from nexuspay.common.logging import logger
from nexuspay.common.metrics import token_refresh_total


Refresher = Callable[[Optional[str]], Awaitable[Optional[str]]]


class CredentialProvider(Protocol):
    """What the executor needs from an auth layer."""

    def get_token(self) -> str | None: ...

    async def refresh(self, reason: str = "expired") -> str | None: ...


class InMemoryCredentialProvider:
    """Process-local access token with coalesced refresh.

    Concurrent `refresh()` callers share one in-flight refresh task instead of
    firing parallel refresh requests. A refresh that yields no token clears
    the stored credentials (the session is over).
    """

    def __init__(
        self,
        access_token: str | None = None,
        refresh_token: str | None = None,
        refresher: Refresher | None = None,
    ) -> None:
        self._access_token = access_token
        self._refresh_token = refresh_token
        self._refresher = refresher
        self._refresh_task: asyncio.Task | None = None

    def get_token(self) -> str | None:
        return self._access_token

    def set_tokens(self, access_token: str | None, refresh_token: str | None = None) -> None:
        self._access_token = access_token
        if refresh_token is not None:
            self._refresh_token = refresh_token

    def clear(self) -> None:
        self._access_token = None
        self._refresh_token = None

    @property
    def refreshing(self) -> bool:
        return self._refresh_task is not None and not self._refresh_task.done()

    async def refresh(self, reason: str = "expired") -> str | None:
        if self._refresher is None:
            return None
        if not self.refreshing:
            token_refresh_total.labels(service=settings.service_name, reason=reason).inc()
            self._refresh_task = asyncio.create_task(self._run_refresh())
        else:
            logger.debug("joining in-flight credential refresh reason=%s", reason)
        # Shield so one cancelled waiter does not abort the refresh for the rest.
        return await asyncio.shield(self._refresh_task)

    async def _run_refresh(self) -> str | None:
        token = await self._refresher(self._refresh_token)
        if token:
            self._access_token = token
            logger.info("credential refreshed")
        else:
            logger.warning("credential refresh returned no token; clearing session")
            self.clear()
        return token
