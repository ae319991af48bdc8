"""Unit tests for the replay-detection nonce caches."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from src.services import nonce_cache
from src.services.nonce_cache import (
    InMemoryNonceCache,
    NonceCache,
    RedisNonceCache,
    get_nonce_cache,
)


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestInMemoryNonceCache:
    async def test_first_use_fresh_second_use_replay(self):
        cache = InMemoryNonceCache()
        assert await cache.check_and_store("device-1", "n1", 300) is True
        assert await cache.check_and_store("device-1", "n1", 300) is False

    async def test_scoped_per_device(self):
        cache = InMemoryNonceCache()
        assert await cache.check_and_store("device-1", "n1", 300) is True
        assert await cache.check_and_store("device-2", "n1", 300) is True

    async def test_entry_expires_after_ttl(self):
        clock = FakeClock()
        cache = InMemoryNonceCache(clock=clock)
        await cache.check_and_store("device-1", "n1", 300)

        clock.now += 299
        assert await cache.check_and_store("device-1", "n1", 300) is False

        clock.now += 1
        assert await cache.check_and_store("device-1", "n1", 300) is True

    async def test_expired_entries_are_purged(self):
        clock = FakeClock()
        cache = InMemoryNonceCache(clock=clock)
        for i in range(5):
            await cache.check_and_store("device-1", f"n{i}", 10)
        assert len(cache) == 5

        clock.now += 11
        await cache.check_and_store("device-1", "fresh", 10)
        assert len(cache) == 1

    async def test_concurrent_same_nonce_only_one_wins(self):
        cache = InMemoryNonceCache()
        results = await asyncio.gather(
            *[cache.check_and_store("device-1", "race", 300) for _ in range(20)]
        )
        assert results.count(True) == 1


class TestRedisNonceCache:
    async def test_uses_atomic_set_nx_with_ttl(self):
        client = AsyncMock()
        client.set.return_value = True
        cache = RedisNonceCache(client)

        assert await cache.check_and_store("device-1", "n1", 300) is True
        client.set.assert_awaited_once_with("request_nonce:device-1:n1", "1", nx=True, ex=300)

    async def test_existing_key_is_replay(self):
        client = AsyncMock()
        client.set.return_value = None
        cache = RedisNonceCache(client)

        assert await cache.check_and_store("device-1", "n1", 300) is False

    async def test_redis_error_falls_back_to_memory(self):
        nonce_cache._memory_cache = None
        client = AsyncMock()
        client.set.side_effect = RedisConnectionError("connection refused")
        cache = RedisNonceCache(client)

        try:
            assert await cache.check_and_store("device-1", "n1", 300) is True
            # Replay is still caught by the in-process cache
            assert await cache.check_and_store("device-1", "n1", 300) is False
            assert len(nonce_cache._memory_cache) == 1
        finally:
            nonce_cache._memory_cache = None


class TestGetNonceCache:
    @pytest.fixture(autouse=True)
    def reset_memory_cache(self):
        nonce_cache._memory_cache = None
        yield
        nonce_cache._memory_cache = None

    async def test_memory_backend(self):
        settings = MagicMock(nonce_cache_backend="memory")
        with patch("src.services.nonce_cache.get_settings", return_value=settings):
            cache = await get_nonce_cache()
        assert isinstance(cache, InMemoryNonceCache)

    async def test_memory_backend_is_shared(self):
        settings = MagicMock(nonce_cache_backend="memory")
        with patch("src.services.nonce_cache.get_settings", return_value=settings):
            assert await get_nonce_cache() is await get_nonce_cache()

    async def test_redis_backend(self):
        settings = MagicMock(nonce_cache_backend="redis")
        client = AsyncMock()
        with (
            patch("src.services.nonce_cache.get_settings", return_value=settings),
            patch("src.services.nonce_cache.get_redis", new=AsyncMock(return_value=client)),
        ):
            cache = await get_nonce_cache()
        assert isinstance(cache, RedisNonceCache)
        assert cache.client is client

    async def test_falls_back_to_memory_without_redis(self):
        settings = MagicMock(nonce_cache_backend="redis")
        with (
            patch("src.services.nonce_cache.get_settings", return_value=settings),
            patch("src.services.nonce_cache.get_redis", new=AsyncMock(return_value=None)),
        ):
            cache = await get_nonce_cache()
        assert isinstance(cache, InMemoryNonceCache)

    def test_key_format(self):
        assert NonceCache.key("dev", "abc") == "request_nonce:dev:abc"
