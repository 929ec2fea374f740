"""Cached upstream credential."""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

from pydantic import BaseModel, ConfigDict

logger = logging.getLogger(__name__)


class AuthToken(BaseModel):
    model_config = ConfigDict(frozen=True)

    value: str
    expires_at: float

    def is_valid(self, now: float) -> bool:
        return bool(self.value) and now < self.expires_at


class AuthTokenCache:
    """
    Time-boxed cache of the anonymous upstream token.

    Reads of a valid token never wait. Refreshes are single-flight: one task
    fetches, and every caller that arrives while it runs awaits that same
    task and gets its result, whether it is a new token or the fallback.
    A failed fetch returns ``fallback_token`` without caching it, so the next
    call after the refresh has finished tries again.
    """

    def __init__(
        self,
        fetch_token: Callable[[], Awaitable[str]],
        fallback_token: str,
        ttl_seconds: float,
        enabled: bool = True,
        clock=time.monotonic,
    ):
        self._fetch_token = fetch_token
        self.fallback_token = fallback_token
        self.ttl_seconds = ttl_seconds
        self.enabled = enabled
        self._clock = clock
        self._token: Optional[AuthToken] = None
        self._refresh_task: Optional[asyncio.Task] = None

    async def get(self, refresh: bool = False) -> str:
        if not self.enabled:
            return self.fallback_token

        token = self._token
        if not refresh and token is not None and token.is_valid(self._clock()):
            return token.value

        if self._refresh_task is None:
            self._refresh_task = asyncio.create_task(self._refresh())
        else:
            logger.debug("Waiting for the token refresh already in progress")
        # A cancelled caller must not cancel the fetch other callers wait on.
        return await asyncio.shield(self._refresh_task)

    def invalidate(self) -> None:
        self._token = None

    async def _refresh(self) -> str:
        logger.info("Fetching a new anonymous upstream token")
        try:
            value = await self._fetch_token()
        except Exception as e:
            logger.warning(f"Anonymous token fetch failed, using the static token: {str(e)}")
            return self.fallback_token
        finally:
            self._refresh_task = None

        if not value:
            logger.warning("Upstream returned an empty token, using the static token")
            return self.fallback_token

        self._token = AuthToken(value=value, expires_at=self._clock() + self.ttl_seconds)
        logger.info("Anonymous token cached for %.0f minutes", self.ttl_seconds / 60)
        return value
