"""Process-scoped bearer token cache with a single shared in-flight refresh per key."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

import httpx

from grounded_chat.exceptions import ConfigurationError
from grounded_chat.observability.logger import get_logger

logger = get_logger("token_cache")

TOKEN_EXPIRY_SLOP_SECONDS = 120


@dataclass
class AccessToken:
    token: str
    expires_on: float  # epoch seconds


TokenRefresher = Callable[[], Awaitable[AccessToken]]


class TokenCache:
    """Caches tokens by key and refreshes them shortly before expiry.

    Concurrent callers racing for the same expiring token share one pending
    refresh future instead of each calling the refresher.
    """

    def __init__(
        self,
        expiry_slop_seconds: float = TOKEN_EXPIRY_SLOP_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._slop = expiry_slop_seconds
        self._clock = clock
        self._tokens: dict[str, AccessToken] = {}
        self._pending: dict[str, asyncio.Future[AccessToken]] = {}

    def _is_fresh(self, token: AccessToken) -> bool:
        return token.expires_on - self._clock() > self._slop

    async def get_token(self, cache_key: str, refresher: TokenRefresher) -> AccessToken:
        token = self._tokens.get(cache_key)
        if token is not None and self._is_fresh(token):
            return token

        pending = self._pending.get(cache_key)
        if pending is None:
            pending = asyncio.ensure_future(self._refresh(cache_key, refresher))
            self._pending[cache_key] = pending
        return await asyncio.shield(pending)

    async def _refresh(self, cache_key: str, refresher: TokenRefresher) -> AccessToken:
        try:
            token = await refresher()
            self._tokens[cache_key] = token
            logger.info("token_refreshed", cache_key=cache_key)
            return token
        finally:
            self._pending.pop(cache_key, None)

    async def get_headers(
        self,
        cache_key: str,
        refresher: TokenRefresher,
        api_key: str | None = None,
        api_key_header: str = "api-key",
    ) -> dict[str, str]:
        if api_key:
            return {api_key_header: api_key}
        token = await self.get_token(cache_key, refresher)
        return {"Authorization": f"Bearer {token.token}"}

    def invalidate(self, cache_key: str | None = None) -> None:
        if cache_key is None:
            self._tokens.clear()
            return
        self._tokens.pop(cache_key, None)


def client_credentials_refresher(
    http: httpx.AsyncClient,
    token_url: str,
    client_id: str,
    client_secret: str,
    scope: str,
) -> TokenRefresher:
    """OAuth2 client-credentials token fetcher."""

    async def refresh() -> AccessToken:
        if not client_id or not client_secret:
            raise ConfigurationError(
                "Search service needs an API key or client credentials "
                "(RAG_SEARCH_API_KEY or RAG_AUTH_CLIENT_ID/RAG_AUTH_CLIENT_SECRET)."
            )
        response = await http.post(
            token_url,
            data={
                "grant_type": "client_credentials",
                "client_id": client_id,
                "client_secret": client_secret,
                "scope": scope,
            },
        )
        response.raise_for_status()
        payload = response.json()
        expires_in = float(payload.get("expires_in", 3600))
        return AccessToken(token=payload["access_token"], expires_on=time.time() + expires_in)

    return refresh
