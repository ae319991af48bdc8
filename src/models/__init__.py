"""Models package exports."""

from src.models.device import (
    DeviceRegistration,
    DeviceSummary,
    RegisterDeviceRequest,
    TrustDeviceRequest,
    TrustStatus,
    VerificationMethod,
)
from src.models.security_event import RiskLevel, SecurityEvent, SecurityEventType
from src.models.token import (
    MobileToken,
    RegistryStatus,
    TokenInfo,
    TokenPair,
    TokenRegistryEntry,
    TokenType,
    TokenValidation,
)
from src.models.user import User

__all__ = [
    "DeviceRegistration",
    "DeviceSummary",
    "MobileToken",
    "RegisterDeviceRequest",
    "RegistryStatus",
    "RiskLevel",
    "SecurityEvent",
    "SecurityEventType",
    "TokenInfo",
    "TokenPair",
    "TokenRegistryEntry",
    "TokenType",
    "TokenValidation",
    "TrustDeviceRequest",
    "TrustStatus",
    "User",
    "VerificationMethod",
]
