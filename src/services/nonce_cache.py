"""Nonce caches for replay detection.

A nonce only needs to be remembered for as long as its timestamp would
still pass the skew check; after that the timestamp check rejects the
request on its own. Both backends therefore store each (device, nonce)
pair with a TTL equal to the timestamp tolerance.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from typing import Optional

import structlog
from redis.exceptions import RedisError

from src.config import get_settings
from src.services.redis_service import get_redis

logger = structlog.get_logger(__name__)


class NonceCache(ABC):
    """Keyed TTL store with an atomic check-and-set."""

    @staticmethod
    def key(device_id: str, nonce: str) -> str:
        return f"request_nonce:{device_id}:{nonce}"

    @abstractmethod
    async def check_and_store(self, device_id: str, nonce: str, ttl: int) -> bool:
        """Store the nonce if unseen.

        Returns:
            True if the nonce was fresh, False if it was already present
        """


class RedisNonceCache(NonceCache):
    """Process-external cache, shared by every server instance."""

    def __init__(self, client):
        self.client = client

    async def check_and_store(self, device_id: str, nonce: str, ttl: int) -> bool:
        try:
            stored = await self.client.set(self.key(device_id, nonce), "1", nx=True, ex=ttl)
        except RedisError as e:
            logger.warning("nonce_cache_fallback_to_memory", error=str(e))
            return await _get_memory_cache().check_and_store(device_id, nonce, ttl)
        return bool(stored)


class InMemoryNonceCache(NonceCache):
    """Single-process cache. Only detects replays hitting the same process."""

    def __init__(self, clock=time.monotonic):
        self._entries: dict[str, float] = {}
        self._lock = asyncio.Lock()
        self._clock = clock

    async def check_and_store(self, device_id: str, nonce: str, ttl: int) -> bool:
        key = self.key(device_id, nonce)
        async with self._lock:
            now = self._clock()
            self._purge(now)
            if key in self._entries:
                return False
            self._entries[key] = now + ttl
            return True

    def _purge(self, now: float) -> None:
        expired = [k for k, expires_at in self._entries.items() if expires_at <= now]
        for k in expired:
            del self._entries[k]

    def __len__(self) -> int:
        return len(self._entries)


_memory_cache: Optional[InMemoryNonceCache] = None


def _get_memory_cache() -> InMemoryNonceCache:
    global _memory_cache
    if _memory_cache is None:
        _memory_cache = InMemoryNonceCache()
    return _memory_cache


async def get_nonce_cache() -> NonceCache:
    """Return the configured nonce cache.

    Falls back to the in-process cache when Redis is unreachable, so replay
    protection degrades to per-process rather than disappearing.
    """
    settings = get_settings()

    if settings.nonce_cache_backend == "memory":
        return _get_memory_cache()

    client = await get_redis()
    if client is None:
        logger.warning("nonce_cache_fallback_to_memory")
        return _get_memory_cache()

    return RedisNonceCache(client)
