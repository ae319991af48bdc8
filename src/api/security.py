"""Security event endpoints."""

from fastapi import APIRouter, Depends, Query

from src.api.dependencies import get_current_token, require_admin
from src.models.security_event import SecurityEvent, SecurityStats
from src.models.token import MobileToken
from src.models.user import User
from src.services.security_event_service import SecurityEventService

router = APIRouter(prefix="/security", tags=["Security"])


@router.get("/events")
async def list_events(
    limit: int = Query(50, ge=1, le=200),
    token: MobileToken = Depends(get_current_token),
) -> list[SecurityEvent]:
    """The caller's own security events, newest first."""
    return await SecurityEventService().get_user_events(token.user_id, limit=limit)


@router.get("/high-risk")
async def high_risk_events(
    min_risk: float = Query(0.8, ge=0.0, le=1.0),
    limit: int = Query(100, ge=1, le=500),
    admin: User = Depends(require_admin),
) -> list[SecurityEvent]:
    """Events across all users at or above ``min_risk``. Admin only."""
    return await SecurityEventService().get_high_risk_events(min_risk=min_risk, limit=limit)


@router.get("/stats")
async def security_stats(
    days: int = Query(7, ge=1, le=90),
    admin: User = Depends(require_admin),
) -> SecurityStats:
    """Event totals and high-risk ratio over the last ``days``. Admin only."""
    return await SecurityEventService().get_stats(days=days)
