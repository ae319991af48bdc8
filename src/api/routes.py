"""Health endpoint."""

from datetime import datetime, timezone

from fastapi import APIRouter

from src.config import get_settings
from src.database import health_check as db_health_check
from src.services.redis_service import get_redis

router = APIRouter(tags=["Health"])


@router.get("/health")
async def health_check() -> dict:
    """Report database and Redis reachability.

    Redis being down only degrades the service (nonces fall back to process
    memory and lockout stops counting), so it never marks it unhealthy.
    """
    settings = get_settings()
    db_healthy = await db_health_check()
    redis_client = await get_redis()

    return {
        "status": "healthy" if db_healthy else "unhealthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "database": "healthy" if db_healthy else "unhealthy",
        "redis": "healthy" if redis_client is not None else "unavailable",
        "nonce_cache": (
            settings.nonce_cache_backend
            if redis_client is not None or settings.nonce_cache_backend == "memory"
            else "memory (fallback)"
        ),
    }
