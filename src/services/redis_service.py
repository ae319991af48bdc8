"""Redis service for failed-attempt lockout and one-time trust codes."""

import hmac
import secrets
from typing import Optional

import redis.asyncio as redis
import structlog

from src.config import get_settings

logger = structlog.get_logger(__name__)

TRUST_CODE_TTL = 300  # 5 minutes
TRUST_CODE_DIGITS = 6

# Global Redis client
_redis_client: Optional[redis.Redis] = None


async def get_redis() -> Optional[redis.Redis]:
    """Get or create the Redis client.

    Returns:
        Redis client or None if connection fails (graceful degradation)
    """
    global _redis_client

    if _redis_client is not None:
        return _redis_client

    settings = get_settings()

    try:
        _redis_client = redis.from_url(
            settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
        )
        await _redis_client.ping()
        logger.info("redis_connected", url=settings.redis_url.split("@")[-1])
        return _redis_client
    except Exception as e:
        logger.warning("redis_connection_failed", error=str(e))
        _redis_client = None
        return None


async def close_redis() -> None:
    """Close the Redis connection."""
    global _redis_client

    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
        logger.info("redis_connection_closed")


class RedisService:
    """Per-device failure counters and single-use trust verification codes."""

    def __init__(self):
        self.settings = get_settings()

    @staticmethod
    def _failed_key(device_id: str, client_ip: Optional[str] = None) -> str:
        # Scoped per source address so a stranger only locks out themselves
        return f"failed_attempts:{device_id}:{client_ip or 'unknown'}"

    @staticmethod
    def _trust_code_key(user_id: str, device_id: str) -> str:
        return f"trust_code:{user_id}:{device_id}"

    async def record_failed_attempt(self, device_id: str, client_ip: Optional[str] = None) -> int:
        """Increment the failure counter for a device as seen from one client IP.

        The counter window starts at the first failure and lasts
        ``lockout_duration`` seconds.

        Returns:
            Failure count in the current window, or -1 if Redis is unavailable
        """
        client = await get_redis()
        if client is None:
            return -1

        try:
            key = self._failed_key(device_id, client_ip)
            count = await client.incr(key)
            if count == 1:
                await client.expire(key, self.settings.lockout_duration)
            return int(count)
        except Exception as e:
            logger.warning("redis_record_failed_attempt_failed", error=str(e), device_id=device_id)
            return -1

    async def get_lockout_remaining(self, device_id: str, client_ip: Optional[str] = None) -> int:
        """Seconds left on the lockout of a device from one client IP, or 0.

        Graceful degradation: a Redis outage never locks anyone out.
        """
        client = await get_redis()
        if client is None:
            return 0

        try:
            key = self._failed_key(device_id, client_ip)
            current = await client.get(key)
            if current is None or int(current) < self.settings.max_failed_attempts:
                return 0
            ttl = await client.ttl(key)
            return max(int(ttl), 1)
        except Exception as e:
            logger.warning("redis_get_lockout_failed", error=str(e), device_id=device_id)
            return 0

    async def clear_failed_attempts(self, device_id: str, client_ip: Optional[str] = None) -> None:
        """Reset the counter after a verified request from the same client IP."""
        client = await get_redis()
        if client is None:
            return

        try:
            await client.delete(self._failed_key(device_id, client_ip))
        except Exception as e:
            logger.warning("redis_clear_failed_attempts_failed", error=str(e), device_id=device_id)

    async def store_trust_code(self, user_id: str, device_id: str) -> Optional[str]:
        """Generate and store a numeric one-time code for device trust.

        Returns:
            The code, or None if Redis is unavailable
        """
        client = await get_redis()
        if client is None:
            return None

        code = "".join(secrets.choice("0123456789") for _ in range(TRUST_CODE_DIGITS))
        try:
            await client.setex(self._trust_code_key(user_id, device_id), TRUST_CODE_TTL, code)
            return code
        except Exception as e:
            logger.warning("redis_store_trust_code_failed", error=str(e), device_id=device_id)
            return None

    async def consume_trust_code(self, user_id: str, device_id: str, code: str) -> bool:
        """Check a one-time code and delete it, whether or not it matched.

        Fails closed: without Redis no code can be verified.
        """
        client = await get_redis()
        if client is None:
            return False

        try:
            stored = await client.getdel(self._trust_code_key(user_id, device_id))
        except Exception as e:
            logger.warning("redis_consume_trust_code_failed", error=str(e), device_id=device_id)
            return False

        if stored is None:
            return False
        return hmac.compare_digest(stored.encode("utf-8"), code.encode("utf-8"))
