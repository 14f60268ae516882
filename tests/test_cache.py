"""
Tests for the Data-Key Cache.
"""
import asyncio
import os

import pytest

from navigator_wallet.vault import DataKeyCache
from navigator_wallet.vault.exceptions import AuthenticationFailure, InvalidKeyLength


@pytest.fixture
def cache():
    return DataKeyCache()


class TestDataKeyCache:
    """Tests for get/set behaviour."""

    def test_empty(self, cache):
        assert len(cache) == 0
        assert cache.get("missing") is None
        assert "missing" not in cache

    def test_set_and_get(self, cache):
        key = os.urandom(32)
        cache.set("dk-1", key)
        assert cache.get("dk-1") == key
        assert "dk-1" in cache
        assert len(cache) == 1

    def test_entries_are_independent(self, cache):
        """A lookup never returns another id's key."""
        first, second = os.urandom(32), os.urandom(32)
        cache.set("dk-1", first)
        cache.set("dk-2", second)
        assert cache.get("dk-1") == first
        assert cache.get("dk-2") == second

    def test_rejects_wrong_length(self, cache):
        with pytest.raises(InvalidKeyLength):
            cache.set("dk-1", b"short")
        assert "dk-1" not in cache


class TestGetOrLoad:
    """Tests for loading on a cache miss."""

    @pytest.mark.asyncio
    async def test_hit_skips_loader(self, cache):
        key = os.urandom(32)
        cache.set("dk-1", key)

        async def loader():
            raise AssertionError("loader must not run on a hit")

        assert await cache.get_or_load("dk-1", loader) == key

    @pytest.mark.asyncio
    async def test_miss_populates(self, cache):
        key = os.urandom(32)

        async def loader():
            return key

        assert await cache.get_or_load("dk-1", loader) == key
        assert cache.get("dk-1") == key

    @pytest.mark.asyncio
    async def test_concurrent_misses_load_once(self, cache):
        """Concurrent callers on one id share a single load."""
        key = os.urandom(32)
        calls = 0

        async def loader():
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.01)
            return key

        results = await asyncio.gather(
            *(cache.get_or_load("dk-1", loader) for _ in range(5))
        )
        assert results == [key] * 5
        assert calls == 1

    @pytest.mark.asyncio
    async def test_unrelated_ids_do_not_wait(self, cache):
        """A slow load on one id does not block another id."""
        release = asyncio.Event()
        fast_key = os.urandom(32)

        async def slow_loader():
            await release.wait()
            return os.urandom(32)

        async def fast_loader():
            return fast_key

        slow = asyncio.create_task(cache.get_or_load("dk-slow", slow_loader))
        await asyncio.sleep(0)
        assert await asyncio.wait_for(cache.get_or_load("dk-fast", fast_loader), 1) == fast_key
        release.set()
        await slow

    @pytest.mark.asyncio
    async def test_failed_load_stores_nothing(self, cache):
        async def loader():
            raise AuthenticationFailure()

        with pytest.raises(AuthenticationFailure):
            await cache.get_or_load("dk-1", loader)
        assert "dk-1" not in cache
