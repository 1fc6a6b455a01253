"""
In-process OAuth access-token cache.

A token is reused only while it stays valid beyond the safety margin. At most
one refresh runs at a time; concurrent callers wait for it and share the
result. Keys embed the credentials' identity, so changing credentials never
reuses a token minted for the old ones.
"""
from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable, Optional

from core.logging_config import get_logger
from core.settings import payment_settings
from domain.payment.entity import CachedToken


logger = get_logger(__name__)

# fetch() returns (access_token, expires_in_seconds)
TokenFetcher = Callable[[], Awaitable[tuple[str, int]]]


def _now_ms() -> int:
    return int(time.time() * 1000)


class TokenCache:
    def __init__(
        self,
        *,
        margin_seconds: Optional[int] = None,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        if margin_seconds is None:
            margin_seconds = payment_settings.paypal.token_safety_margin_seconds
        self._margin_ms = margin_seconds * 1000
        self._clock = clock
        self._tokens: dict[str, CachedToken] = {}
        self._lock = asyncio.Lock()

    def peek(self, key: str) -> Optional[str]:
        cached = self._tokens.get(key)
        if cached and cached.is_fresh(self._clock(), self._margin_ms):
            return cached.token
        return None

    async def get_or_refresh(self, key: str, fetch: TokenFetcher) -> str:
        token = self.peek(key)
        if token:
            return token
        async with self._lock:
            # Another caller may have refreshed while we waited
            token = self.peek(key)
            if token:
                return token
            access_token, expires_in = await fetch()
            self._tokens[key] = CachedToken(
                token=access_token,
                expires_at_epoch_ms=self._clock() + int(expires_in) * 1000,
            )
            logger.info("payment_token_refreshed", cache_key=key, expires_in=expires_in)
            return access_token

    def invalidate(self, key: Optional[str] = None) -> None:
        if key is None:
            self._tokens.clear()
        else:
            self._tokens.pop(key, None)


paypal_token_cache = TokenCache()
