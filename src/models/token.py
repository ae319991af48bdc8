"""Mobile token models.

All three token classes share one record type; they differ only in the
``token_type`` discriminant, lifetime, and ability set.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator


class TokenType(str, Enum):
    """Token class discriminant."""

    ACCESS = "access"
    REFRESH = "refresh"
    LONG_TERM = "long_term"


# Ability sets per token class
TOKEN_ABILITIES: dict[TokenType, list[str]] = {
    TokenType.ACCESS: ["*"],
    TokenType.REFRESH: ["refresh"],
    TokenType.LONG_TERM: ["limited"],
}


class RegistryStatus(str, Enum):
    """Derived status of a token registry entry."""

    ACTIVE = "active"
    REFRESH_ONLY = "refresh_only"
    EXPIRED = "expired"
    INVALID = "invalid"


class MobileToken(BaseModel):
    """A stored token. Only the SHA-256 hash of the raw value is kept."""

    id: UUID
    user_id: UUID
    device_id: str
    token_type: TokenType
    token_hash: str = Field(exclude=True, repr=False)
    abilities: list[str]
    created_at: datetime
    expires_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None

    def can(self, ability: str) -> bool:
        """True if the token grants ``ability`` (``*`` grants everything)."""
        return "*" in self.abilities or ability in self.abilities

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        now = now or datetime.now(timezone.utc)
        return self.expires_at <= now


class TokenRegistryEntry(BaseModel):
    """Links the current access/refresh pair to a (user, device)."""

    user_id: UUID
    device_id: str
    access_token_id: Optional[UUID] = None
    refresh_token_id: Optional[UUID] = None
    expires_at: datetime
    created_at: datetime


def registry_status(
    access: Optional[MobileToken],
    refresh: Optional[MobileToken],
    now: Optional[datetime] = None,
) -> RegistryStatus:
    """Compute the status of a registry entry from its two tokens."""
    if access is None or refresh is None:
        return RegistryStatus.INVALID

    access_expired = access.is_expired(now)
    refresh_expired = refresh.is_expired(now)

    if access_expired and refresh_expired:
        return RegistryStatus.EXPIRED
    if access_expired:
        return RegistryStatus.REFRESH_ONLY
    if not refresh_expired:
        return RegistryStatus.ACTIVE
    # Refresh expired before access: cannot be produced by the issuer
    return RegistryStatus.INVALID


class TokenPair(BaseModel):
    """Newly issued access + refresh tokens. Raw values are shown once."""

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    access_expires_in: int = Field(ge=1, description="Access token lifetime in seconds")
    refresh_expires_in: int = Field(ge=1, description="Refresh token lifetime in seconds")
    expires_at: datetime
    refresh_expires_at: datetime


class LongTermToken(BaseModel):
    token: str
    token_type: str = "bearer"
    abilities: list[str]
    expires_at: datetime


class TokenValidation(BaseModel):
    """Read-only introspection result for a bearer token."""

    valid: bool
    expired: bool = False
    should_rotate: bool = False
    abilities: list[str] = Field(default_factory=list)
    token_type: Optional[TokenType] = None
    created_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None


class TokenInfo(BaseModel):
    """Registry view for one (user, device). Token ids are never exposed."""

    status: RegistryStatus
    access_expires_at: Optional[datetime] = None
    access_is_expired: bool = True
    refresh_expires_at: Optional[datetime] = None
    refresh_is_expired: bool = True
    created_at: datetime
    should_rotate: bool = False


class GenerateTokensRequest(BaseModel):
    device_id: str = Field(..., min_length=10, max_length=255)


class RefreshTokensRequest(BaseModel):
    """Request to exchange a refresh token for a new pair.

    Attributes:
        refresh_token: The refresh token (an optional "Bearer " prefix is stripped)
        device_id: Device the refresh token was issued to
        current_access_token: Access token being replaced, if the client still holds it
    """

    refresh_token: str = Field(..., min_length=40)
    device_id: str = Field(..., min_length=10, max_length=255)
    current_access_token: Optional[str] = None

    @field_validator("refresh_token", mode="before")
    @classmethod
    def strip_bearer_prefix(cls, v: object) -> object:
        if isinstance(v, str):
            v = v.strip()
            if v.startswith("Bearer "):
                v = v[len("Bearer "):]
        return v


class RevokeDeviceTokensRequest(BaseModel):
    device_id: str = Field(..., min_length=1, max_length=255)
