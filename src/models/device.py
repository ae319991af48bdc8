"""Device registration models and request validation."""

import re
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

DEVICE_ID_MIN_LENGTH = 10
DEVICE_ID_MAX_LENGTH = 255
DEVICE_ID_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")
_DISALLOWED_DEVICE_ID_CHARS = re.compile(r"[^a-zA-Z0-9_-]")

MIN_TRUST_DURATION = 3600  # 1 hour
MAX_TRUST_DURATION = 7776000  # 90 days


def sanitize_device_id(device_id: str) -> str:
    """Strip every character outside [A-Za-z0-9_-].

    Malformed ids are cleaned rather than rejected; only the cleaned value
    is then checked for length.
    """
    return _DISALLOWED_DEVICE_ID_CHARS.sub("", device_id)


def is_valid_device_id(device_id: str) -> bool:
    """Check an already-sanitized device id against length and charset."""
    return (
        DEVICE_ID_MIN_LENGTH <= len(device_id) <= DEVICE_ID_MAX_LENGTH
        and DEVICE_ID_PATTERN.match(device_id) is not None
    )


def clamp_trust_duration(seconds: int) -> int:
    """Clamp a requested trust duration to [1 hour, 90 days]."""
    return max(MIN_TRUST_DURATION, min(seconds, MAX_TRUST_DURATION))


class TrustStatus(str, Enum):
    """Trust state derived from the stored flag and expiry."""

    UNTRUSTED = "untrusted"
    TRUSTED = "trusted"
    EXPIRED = "expired"


class VerificationMethod(str, Enum):
    """Secondary verification accepted before trusting a device."""

    BIOMETRIC = "biometric"
    PASSWORD = "password"
    OTP = "otp"


class DeviceRegistration(BaseModel):
    """One physical device bound to one user.

    ``device_secret`` is excluded from serialization so it cannot leak into
    API responses or logs after the initial registration.
    """

    id: UUID
    user_id: UUID
    device_id: str
    device_info: dict[str, Any] = Field(default_factory=dict)
    device_secret: str = Field(exclude=True, repr=False)
    is_trusted: bool = False
    registered_at: datetime
    trusted_at: Optional[datetime] = None
    trusted_until: Optional[datetime] = None
    last_used_at: Optional[datetime] = None

    def is_currently_trusted(self, now: Optional[datetime] = None) -> bool:
        """True if trust is set and has not lapsed."""
        now = now or datetime.now(timezone.utc)
        return (
            self.is_trusted
            and self.trusted_until is not None
            and self.trusted_until > now
        )

    def is_trust_expired(self, now: Optional[datetime] = None) -> bool:
        """True if the device was trusted but the trust window has passed.

        The stored ``is_trusted`` flag is left untouched; only an explicit
        revoke or the cleanup job clears it.
        """
        now = now or datetime.now(timezone.utc)
        return (
            self.is_trusted
            and self.trusted_until is not None
            and self.trusted_until <= now
        )

    def trust_status(self, now: Optional[datetime] = None) -> TrustStatus:
        if self.is_currently_trusted(now):
            return TrustStatus.TRUSTED
        if self.is_trust_expired(now):
            return TrustStatus.EXPIRED
        return TrustStatus.UNTRUSTED

    @property
    def device_info_string(self) -> str:
        """Readable device label, e.g. "ios iPhone15,2 v17.4"."""
        info = self.device_info or {}
        parts = []
        if info.get("platform"):
            parts.append(str(info["platform"]))
        if info.get("model"):
            parts.append(str(info["model"]))
        if info.get("version"):
            parts.append(f"v{info['version']}")
        return " ".join(parts) or "Unknown Device"

    def security_score(self, now: Optional[datetime] = None) -> float:
        """Score in [0, 1] summarizing how well this device is secured."""
        now = now or datetime.now(timezone.utc)
        score = 0.3  # registered

        if self.is_currently_trusted(now):
            score += 0.4

        if self.last_used_at and now - self.last_used_at < timedelta(days=7):
            score += 0.2

        if len(self.device_info or {}) >= 3:
            score += 0.1

        return round(min(score, 1.0), 2)

    def security_recommendations(self, now: Optional[datetime] = None) -> list[dict]:
        now = now or datetime.now(timezone.utc)
        recommendations = []

        if not self.is_trusted:
            recommendations.append({
                "type": "trust",
                "message": "Trust this device to enable full security features",
                "priority": "high",
            })

        if self.is_trust_expired(now):
            recommendations.append({
                "type": "renew_trust",
                "message": "Device trust has expired. Re-verify to continue secure access",
                "priority": "high",
            })

        if self.last_used_at and now - self.last_used_at > timedelta(days=30):
            recommendations.append({
                "type": "inactive",
                "message": "Consider removing this inactive device",
                "priority": "medium",
            })

        if len(self.device_info or {}) < 3:
            recommendations.append({
                "type": "device_info",
                "message": "Update device information for better security tracking",
                "priority": "low",
            })

        return recommendations


class DeviceInfo(BaseModel):
    """Client-reported device metadata."""

    platform: Optional[str] = None
    model: Optional[str] = Field(default=None, max_length=100)
    version: Optional[str] = Field(default=None, max_length=50)
    app_version: Optional[str] = Field(default=None, max_length=50)
    screen_resolution: Optional[str] = Field(default=None, max_length=20)
    timezone: Optional[str] = Field(default=None, max_length=50)

    @field_validator("platform")
    @classmethod
    def platform_supported(cls, v: Optional[str]) -> Optional[str]:
        """Only ios and android clients exist."""
        if v is not None and v not in ("ios", "android"):
            raise ValueError("Platform must be either ios or android")
        return v


class RegisterDeviceRequest(BaseModel):
    """Device registration payload.

    Attributes:
        device_id: Client-generated identifier, sanitized before validation
        device_info: Optional platform/model/version metadata
    """

    device_id: str
    device_info: DeviceInfo = Field(default_factory=DeviceInfo)

    @field_validator("device_id", mode="before")
    @classmethod
    def sanitize_and_validate(cls, v: Any) -> str:
        """Strip disallowed characters, then enforce length."""
        if not isinstance(v, str):
            raise ValueError("Device ID must be a string")
        cleaned = sanitize_device_id(v)
        if not is_valid_device_id(cleaned):
            raise ValueError(
                f"Device ID must be {DEVICE_ID_MIN_LENGTH}-{DEVICE_ID_MAX_LENGTH} characters "
                "of letters, numbers, underscores, or dashes"
            )
        return cleaned


class TrustDeviceRequest(BaseModel):
    """Request to promote a registered device to trusted.

    Attributes:
        verification_method: biometric, password, or otp
        verification_data: Password or one-time code, when the method needs one
        trust_duration: Seconds of trust, 1 hour to 90 days (defaults from config)
    """

    verification_method: VerificationMethod
    verification_data: Optional[str] = Field(default=None, max_length=500)
    trust_duration: Optional[int] = Field(
        default=None, ge=MIN_TRUST_DURATION, le=MAX_TRUST_DURATION
    )


class DeviceSummary(BaseModel):
    """Device representation for API responses (never includes the secret)."""

    id: UUID
    device_id: str
    device_info_string: str
    is_trusted: bool
    is_trust_expired: bool
    trust_status: TrustStatus
    registered_at: datetime
    trusted_at: Optional[datetime] = None
    trusted_until: Optional[datetime] = None
    last_used_at: Optional[datetime] = None

    @classmethod
    def from_device(cls, device: DeviceRegistration) -> "DeviceSummary":
        return cls(
            id=device.id,
            device_id=device.device_id,
            device_info_string=device.device_info_string,
            is_trusted=device.is_trusted,
            is_trust_expired=device.is_trust_expired(),
            trust_status=device.trust_status(),
            registered_at=device.registered_at,
            trusted_at=device.trusted_at,
            trusted_until=device.trusted_until,
            last_used_at=device.last_used_at,
        )


class DeviceRegistrationResult(BaseModel):
    """Outcome of a successful registration. The only place the secret is returned."""

    device: DeviceRegistration
    device_secret: str
    trust_status: TrustStatus = TrustStatus.UNTRUSTED


class RegisterDeviceResponse(BaseModel):
    message: str = "Device registered successfully"
    device: DeviceSummary
    device_secret: str
    trust_status: TrustStatus


class DeviceListResponse(BaseModel):
    devices: list[DeviceSummary]
    total: int
    max_devices: int


class TrustDeviceResponse(BaseModel):
    message: str = "Device trusted successfully"
    device: DeviceSummary
