import asyncio

import pytest

from infrastructure.external.payments.token_cache import TokenCache


class _Clock:
    def __init__(self, now_ms: int = 1_000_000):
        self.now_ms = now_ms

    def __call__(self) -> int:
        return self.now_ms


def _fetcher(tokens):
    calls = []

    async def fetch():
        calls.append(1)
        await asyncio.sleep(0.01)
        return tokens[len(calls) - 1], 3600

    return fetch, calls


@pytest.mark.asyncio
async def test_token_reused_while_fresh():
    clock = _Clock()
    cache = TokenCache(margin_seconds=300, clock=clock)
    fetch, calls = _fetcher(["A", "B"])

    assert await cache.get_or_refresh("k", fetch) == "A"
    clock.now_ms += 1000 * 60 * 50  # 50 minutes later, 10 minutes of validity left
    assert await cache.get_or_refresh("k", fetch) == "A"
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_token_refreshed_inside_safety_margin():
    clock = _Clock()
    cache = TokenCache(margin_seconds=300, clock=clock)
    fetch, calls = _fetcher(["A", "B"])

    await cache.get_or_refresh("k", fetch)
    clock.now_ms += 1000 * (3600 - 299)
    assert await cache.get_or_refresh("k", fetch) == "B"
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_concurrent_callers_share_one_refresh():
    cache = TokenCache(margin_seconds=300, clock=_Clock())
    fetch, calls = _fetcher(["A", "B"])

    tokens = await asyncio.gather(*[cache.get_or_refresh("k", fetch) for _ in range(10)])
    assert tokens == ["A"] * 10
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_keys_are_independent_and_invalidate():
    cache = TokenCache(margin_seconds=300, clock=_Clock())
    fetch, calls = _fetcher(["A", "B", "C"])

    assert await cache.get_or_refresh("live:id1", fetch) == "A"
    assert await cache.get_or_refresh("live:id2", fetch) == "B"
    cache.invalidate("live:id1")
    assert cache.peek("live:id1") is None
    assert await cache.get_or_refresh("live:id1", fetch) == "C"


@pytest.mark.asyncio
async def test_failed_fetch_is_not_cached():
    cache = TokenCache(margin_seconds=300, clock=_Clock())

    async def boom():
        raise RuntimeError("auth down")

    with pytest.raises(RuntimeError):
        await cache.get_or_refresh("k", boom)
    assert cache.peek("k") is None
