"""Security event models."""

from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, Field


class SecurityEventType(str, Enum):
    """Authentication-relevant occurrences recorded by the core."""

    AUTH_SUCCESS = "auth_success"
    AUTH_FAILURE = "auth_failure"
    TOKEN_REFRESH = "token_refresh"
    TOKEN_REFRESH_FAILED = "token_refresh_failed"
    PERMISSION_DENIED = "permission_denied"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    DEVICE_CHANGE = "device_change"
    GEOGRAPHIC_ANOMALY = "geographic_anomaly"
    API_KEY_VALIDATION_FAILED = "api_key_validation_failed"
    DEVICE_VALIDATION_FAILED = "device_validation_failed"
    SIGNATURE_VALIDATION_FAILED = "signature_validation_failed"
    SECURITY_VALIDATION_SUCCESS = "security_validation_success"
    UNTRUSTED_DEVICE_ACCESS = "untrusted_device_access"
    DEVICE_REGISTERED = "device_registered"
    DEVICE_REGISTRATION_FAILED = "device_registration_failed"
    DEVICE_REMOVED = "device_removed"
    DEVICE_TRUSTED = "device_trusted"
    DEVICE_TRUST_FAILED = "device_trust_failed"
    DEVICE_TRUST_REVOKED = "device_trust_revoked"
    MOBILE_TOKENS_GENERATED = "mobile_tokens_generated"
    LONG_TERM_TOKEN_ISSUED = "long_term_token_issued"
    DEVICE_TOKENS_REVOKED = "device_tokens_revoked"
    ALL_USER_TOKENS_REVOKED = "all_user_tokens_revoked"


class RiskLevel(str, Enum):
    INFO = "info"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


def risk_level(score: float) -> RiskLevel:
    """Map a risk score to its tier."""
    if score >= 0.9:
        return RiskLevel.CRITICAL
    if score >= 0.8:
        return RiskLevel.HIGH
    if score >= 0.6:
        return RiskLevel.MEDIUM
    if score >= 0.3:
        return RiskLevel.LOW
    return RiskLevel.INFO


class SecurityEvent(BaseModel):
    """Immutable record of one authentication-relevant occurrence."""

    model_config = {"frozen": True}

    id: UUID
    event_type: str
    user_id: Optional[UUID] = None
    tenant_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_id: Optional[str] = None
    session_id: Optional[str] = None
    context: dict[str, Any] = Field(default_factory=dict)
    risk_score: float = Field(ge=0.0, le=1.0)
    occurred_at: datetime

    @property
    def risk_level(self) -> RiskLevel:
        return risk_level(self.risk_score)

    def is_high_risk(self) -> bool:
        return self.risk_score >= 0.8

    def is_critical(self) -> bool:
        return self.risk_score >= 0.9


class SecurityStats(BaseModel):
    total_events: int
    high_risk_events: int
    unique_users_affected: int
    risk_ratio: float
    period_days: int
