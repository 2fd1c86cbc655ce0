"""Access token cache for the DingTalk OpenAPI."""

import asyncio
import time
from dataclasses import dataclass
from typing import Callable

import httpx
from loguru import logger

from dingbot.channels.dingtalk.retry import retry_with_backoff
from dingbot.config.schema import DingTalkAccountConfig

TOKEN_URL = "https://api.dingtalk.com/v1.0/oauth2/accessToken"
# Refresh one minute before the platform expiry
REFRESH_MARGIN_S = 60


@dataclass
class AccessToken:
    token: str
    expires_at: float


class AccessTokenCache:
    """
    Access tokens keyed by client id, so several accounts can share one cache.

    Concurrent refreshes for the same client id are collapsed behind a
    per-key lock.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        *,
        clock: Callable[[], float] = time.time,
        max_retries: int = 3,
        base_delay: float = 0.1,
    ):
        self._http = http
        self._clock = clock
        self._max_retries = max_retries
        self._base_delay = base_delay
        self._tokens: dict[str, AccessToken] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _cached(self, client_id: str) -> str | None:
        entry = self._tokens.get(client_id)
        if entry and self._clock() < entry.expires_at - REFRESH_MARGIN_S:
            return entry.token
        return None

    async def get_token(self, config: DingTalkAccountConfig) -> str:
        """Return a valid token for *config*, fetching a new one when needed."""
        key = config.client_id
        token = self._cached(key)
        if token:
            return token

        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            token = self._cached(key)
            if token:
                return token
            return await retry_with_backoff(
                lambda: self._fetch(config),
                max_retries=self._max_retries,
                base_delay=self._base_delay,
            )

    async def _fetch(self, config: DingTalkAccountConfig) -> str:
        requested_at = self._clock()
        resp = await self._http.post(
            TOKEN_URL,
            json={"appKey": config.client_id, "appSecret": config.client_secret},
        )
        resp.raise_for_status()
        data = resp.json()
        token = data["accessToken"]
        expire_in = int(data.get("expireIn", 7200))
        self._tokens[config.client_id] = AccessToken(token, requested_at + expire_in)
        logger.debug("DingTalk access token refreshed for {} (expires in {}s)", config.client_id, expire_in)
        return token

    def invalidate(self, client_id: str) -> None:
        """Forget the cached token so the next call fetches a fresh one."""
        self._tokens.pop(client_id, None)

    def clear(self) -> None:
        self._tokens.clear()
        self._locks.clear()
