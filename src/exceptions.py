"""Error taxonomy for the mobile authentication layer.

Every error carries the HTTP status it maps to and a generic public
``detail``. The ``reason`` is internal: it goes to logs and security
events, never to the client, so callers cannot use error bodies as an
oracle against the signing scheme.
"""

from typing import Optional


class MobileAuthError(Exception):
    """Base class for all request-scoped mobile auth failures.

    Attributes:
        status_code: HTTP status returned to the client
        detail: Generic, client-safe message
        category: Error category (input, security, throttle, conflict, expiry, not_found)
        reason: Internal reason for logs and security events
        retry_after: Seconds the caller should wait before retrying, if any
    """

    status_code: int = 400
    detail: str = "Request failed"
    category: str = "input"

    def __init__(self, reason: Optional[str] = None, retry_after: Optional[int] = None):
        self.reason = reason or self.detail
        self.retry_after = retry_after
        super().__init__(self.reason)


# Client input


class DeviceIdFormatError(MobileAuthError):
    status_code = 400
    detail = "Device ID must be 10-255 characters of letters, numbers, dashes or underscores"
    category = "input"


# Security validation


class SecurityValidationError(MobileAuthError):
    """Base for failures of the request-signing pipeline."""

    status_code = 401
    category = "security"
    event_type = "signature_validation_failed"


class InvalidApiKeyError(SecurityValidationError):
    detail = "Invalid API key"
    event_type = "api_key_validation_failed"


class InvalidDeviceError(SecurityValidationError):
    status_code = 403
    detail = "Device validation failed"
    event_type = "device_validation_failed"


class SignatureError(SecurityValidationError):
    detail = "Request signature invalid"


class TimestampSkewError(SignatureError):
    pass


class NonceReusedError(SignatureError):
    pass


class InvalidSignatureError(SignatureError):
    pass


class VerificationFailedError(MobileAuthError):
    status_code = 401
    detail = "Device verification failed"
    category = "security"


# Throttling


class TooManyFailedAttemptsError(MobileAuthError):
    status_code = 429
    detail = "Too many failed attempts"
    category = "throttle"


class RefreshTooFrequentError(MobileAuthError):
    status_code = 429
    detail = "Token refresh attempted too frequently"
    category = "throttle"


class DeviceLimitExceededError(MobileAuthError):
    status_code = 409
    detail = "Maximum number of devices reached"
    category = "throttle"


# State conflicts


class DuplicateDeviceError(MobileAuthError):
    status_code = 409
    detail = "This device is already registered for your account"
    category = "conflict"


class AlreadyTrustedError(MobileAuthError):
    status_code = 409
    detail = "Device is already trusted and trust has not expired"
    category = "conflict"


# Expiry


class TokenExpiredError(MobileAuthError):
    status_code = 401
    detail = "Token has expired"
    category = "expiry"


class TrustExpiredError(InvalidDeviceError):
    """Device was trusted once but the trust window has lapsed."""

    status_code = 401
    detail = "Device trust has expired"
    category = "expiry"


# Lookups


class TokenNotFoundError(MobileAuthError):
    status_code = 401
    detail = "Invalid token"
    category = "not_found"


class MissingAbilityError(MobileAuthError):
    status_code = 403
    detail = "Token lacks the required ability"
    category = "not_found"


class AdminRequiredError(MissingAbilityError):
    detail = "Admin access required"


class DeviceNotFoundError(MobileAuthError):
    status_code = 404
    detail = "Device not found"
    category = "not_found"
