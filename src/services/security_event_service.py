"""Security event recorder: risk scoring, structured logging, persistence.

Every event is logged. Events at or above the configured minimum risk are
also persisted to the append-only ``security_events`` table. High and
critical events are escalated to dedicated ``siem`` and
``security_alert`` log lines for the external monitoring pipeline.
Recording never raises: a storage failure is logged and the request that
triggered the event carries on.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from uuid import UUID, uuid4

import structlog

from src.config import get_settings
from src.database import get_pool
from src.models.security_event import (
    RiskLevel,
    SecurityEvent,
    SecurityEventType,
    SecurityStats,
)

logger = structlog.get_logger(__name__)

DEFAULT_BASE_SCORE = 0.5

BASE_SCORES: dict[str, float] = {
    SecurityEventType.AUTH_SUCCESS: 0.1,
    SecurityEventType.AUTH_FAILURE: 0.3,
    SecurityEventType.TOKEN_REFRESH: 0.1,
    SecurityEventType.TOKEN_REFRESH_FAILED: 0.4,
    SecurityEventType.PERMISSION_DENIED: 0.4,
    SecurityEventType.SUSPICIOUS_ACTIVITY: 0.8,
    SecurityEventType.RATE_LIMIT_EXCEEDED: 0.5,
    SecurityEventType.DEVICE_CHANGE: 0.6,
    SecurityEventType.GEOGRAPHIC_ANOMALY: 0.7,
    SecurityEventType.API_KEY_VALIDATION_FAILED: 0.9,
    SecurityEventType.DEVICE_VALIDATION_FAILED: 0.8,
    SecurityEventType.SIGNATURE_VALIDATION_FAILED: 0.9,
    SecurityEventType.SECURITY_VALIDATION_SUCCESS: 0.1,
    SecurityEventType.UNTRUSTED_DEVICE_ACCESS: 0.6,
    SecurityEventType.DEVICE_REGISTERED: 0.2,
    SecurityEventType.DEVICE_REGISTRATION_FAILED: 0.4,
    SecurityEventType.DEVICE_REMOVED: 0.2,
    SecurityEventType.DEVICE_TRUSTED: 0.2,
    SecurityEventType.DEVICE_TRUST_FAILED: 0.5,
    SecurityEventType.DEVICE_TRUST_REVOKED: 0.2,
    SecurityEventType.MOBILE_TOKENS_GENERATED: 0.1,
    SecurityEventType.LONG_TERM_TOKEN_ISSUED: 0.2,
    SecurityEventType.DEVICE_TOKENS_REVOKED: 0.2,
    SecurityEventType.ALL_USER_TOKENS_REVOKED: 0.3,
}

KNOWN_EVENT_TYPES = {e.value for e in SecurityEventType}


def calculate_risk_score(event_type: str, context: dict[str, Any]) -> float:
    """Base score for the event type plus context modifiers, capped at 1.0."""
    score = BASE_SCORES.get(event_type, DEFAULT_BASE_SCORE)

    failure_count = context.get("failure_count") or 0
    if failure_count > 1:
        score += min(failure_count * 0.1, 0.3)

    if (context.get("geographic_distance") or 0) > 1000:
        score += 0.2

    if context.get("suspicious_user_agent"):
        score += 0.2

    if (context.get("concurrent_sessions") or 0) > 3:
        score += 0.15

    # Registration velocity: many new devices in a short window
    recent_registrations = context.get("recent_registrations") or 0
    if recent_registrations > 1:
        score += min((recent_registrations - 1) * 0.15, 0.6)

    return round(min(score, 1.0), 2)


class SecurityEventService:
    """Records and queries security events."""

    def __init__(self):
        self.settings = get_settings()

    async def record(
        self,
        event_type: str,
        *,
        user_id: Optional[UUID] = None,
        tenant_id: Optional[str] = None,
        device_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        session_id: Optional[str] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> SecurityEvent:
        """Score, log, and (above the configured risk) persist one event.

        Request metadata that is not passed explicitly is taken from the
        structlog context bound by the correlation-id middleware.
        """
        event_type = str(getattr(event_type, "value", event_type))
        context = dict(context or {})

        if event_type not in KNOWN_EVENT_TYPES:
            logger.warning("unknown_security_event_type", event_type=event_type)

        bound = structlog.contextvars.get_contextvars()
        event = SecurityEvent(
            id=uuid4(),
            event_type=event_type,
            user_id=user_id,
            tenant_id=tenant_id or bound.get("tenant_id"),
            ip_address=ip_address or bound.get("client_ip"),
            user_agent=user_agent or bound.get("user_agent"),
            device_id=device_id,
            session_id=session_id or bound.get("correlation_id"),
            context=context,
            risk_score=calculate_risk_score(event_type, context),
            occurred_at=datetime.now(timezone.utc),
        )
        level = event.risk_level

        log_fields = {
            "security_event": event.event_type,
            "event_id": str(event.id),
            "user_id": str(user_id) if user_id else None,
            "tenant_id": event.tenant_id,
            "device_id": device_id,
            "risk_score": event.risk_score,
            "risk_level": level.value,
            "context": context,
        }
        logger.info("security_event", **log_fields)

        if event.risk_score >= self.settings.security_event_persist_min_risk:
            await self._store(event)

        if level in (RiskLevel.HIGH, RiskLevel.CRITICAL):
            logger.warning("siem", **log_fields)
        if level == RiskLevel.CRITICAL:
            logger.critical("security_alert", **log_fields)

        return event

    async def _store(self, event: SecurityEvent) -> None:
        try:
            pool = await get_pool()
            async with pool.acquire() as conn:
                await conn.execute(
                    """
                    INSERT INTO security_events (
                        id, event_type, user_id, tenant_id, ip_address, user_agent,
                        device_id, session_id, context, risk_score, occurred_at
                    )
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
                    """,
                    event.id,
                    event.event_type,
                    event.user_id,
                    event.tenant_id,
                    event.ip_address,
                    event.user_agent,
                    event.device_id,
                    event.session_id,
                    event.context,
                    event.risk_score,
                    event.occurred_at,
                )
        except Exception as e:
            logger.error(
                "security_event_store_failed",
                error=str(e),
                security_event=event.event_type,
            )

    async def get_user_events(self, user_id: UUID, limit: int = 50) -> list[SecurityEvent]:
        """Most recent events for one user, newest first."""
        pool = await get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT id, event_type, user_id, tenant_id, ip_address, user_agent,
                       device_id, session_id, context, risk_score, occurred_at
                FROM security_events
                WHERE user_id = $1
                ORDER BY occurred_at DESC
                LIMIT $2
                """,
                user_id,
                limit,
            )
        return [_row_to_event(row) for row in rows]

    async def get_high_risk_events(
        self, min_risk: float = 0.8, limit: int = 100
    ) -> list[SecurityEvent]:
        """Events at or above ``min_risk``, newest first."""
        pool = await get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT id, event_type, user_id, tenant_id, ip_address, user_agent,
                       device_id, session_id, context, risk_score, occurred_at
                FROM security_events
                WHERE risk_score >= $1
                ORDER BY occurred_at DESC
                LIMIT $2
                """,
                min_risk,
                limit,
            )
        return [_row_to_event(row) for row in rows]

    async def get_stats(self, days: int = 7) -> SecurityStats:
        since = datetime.now(timezone.utc) - timedelta(days=days)
        pool = await get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT COUNT(*) AS total_events,
                       COUNT(*) FILTER (WHERE risk_score >= 0.8) AS high_risk_events,
                       COUNT(DISTINCT user_id) AS unique_users
                FROM security_events
                WHERE occurred_at >= $1
                """,
                since,
            )

        total = row["total_events"] or 0
        high_risk = row["high_risk_events"] or 0
        return SecurityStats(
            total_events=total,
            high_risk_events=high_risk,
            unique_users_affected=row["unique_users"] or 0,
            risk_ratio=round(high_risk / total * 100, 2) if total else 0.0,
            period_days=days,
        )


def _row_to_event(row) -> SecurityEvent:
    return SecurityEvent(
        id=row["id"],
        event_type=row["event_type"],
        user_id=row["user_id"],
        tenant_id=row["tenant_id"],
        ip_address=row["ip_address"],
        user_agent=row["user_agent"],
        device_id=row["device_id"],
        session_id=row["session_id"],
        context=row["context"] or {},
        risk_score=float(row["risk_score"]),
        occurred_at=row["occurred_at"],
    )

