"""HMAC request signing and verification.

Clients sign every sensitive request with the secret issued at device
registration. The canonical string is::

    METHOD|PATH|TIMESTAMP|NONCE[|BODY]|DEVICE_SECRET

where the body segment (and its separator) is omitted for an empty body,
METHOD is upper-cased and PATH excludes the query string. The signature is
HMAC-<algorithm> of the canonical string keyed by the device secret,
rendered as lowercase hex.
"""

import hmac
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Mapping, Optional, Union
from uuid import UUID

import structlog

from src.config import get_settings
from src.exceptions import (
    InvalidApiKeyError,
    InvalidDeviceError,
    InvalidSignatureError,
    NonceReusedError,
    SecurityValidationError,
    TimestampSkewError,
    TooManyFailedAttemptsError,
    TrustExpiredError,
)
from src.models.device import DeviceRegistration
from src.models.security_event import SecurityEventType
from src.services.device_service import DeviceService
from src.services.nonce_cache import get_nonce_cache
from src.services.redis_service import RedisService
from src.services.security_event_service import SecurityEventService

logger = structlog.get_logger(__name__)

API_KEY_HEADER = "X-API-Key"
TIMESTAMP_HEADER = "X-Timestamp"
NONCE_HEADER = "X-Nonce"
DEVICE_ID_HEADER = "X-Device-Id"
SIGNATURE_HEADER = "X-Signature"

NONCE_BYTES = 16

# Which check a signature-class failure came from, for events and logs
_FAILED_CHECK = {
    TrustExpiredError: "device",
    TimestampSkewError: "timestamp",
    NonceReusedError: "nonce",
    InvalidSignatureError: "signature",
    InvalidDeviceError: "device",
}


def _body_text(body: Union[str, bytes, None]) -> str:
    if body is None:
        return ""
    if isinstance(body, bytes):
        return body.decode("utf-8")
    return body


def build_canonical_string(
    method: str,
    path: str,
    timestamp: Union[str, int],
    nonce: str,
    body: Union[str, bytes, None],
    device_secret: str,
) -> str:
    """Assemble the string that gets signed."""
    parts = [method.upper(), path.split("?", 1)[0], str(timestamp), nonce]
    body = _body_text(body)
    if body:
        parts.append(body)
    parts.append(device_secret)
    return "|".join(parts)


def compute_signature(device_secret: str, canonical: str, algorithm: str = "sha256") -> str:
    """HMAC of ``canonical`` keyed by the device secret, as lowercase hex."""
    return hmac.new(
        device_secret.encode("utf-8"),
        canonical.encode("utf-8"),
        digestmod=algorithm,
    ).hexdigest()


def sign_request(
    method: str,
    path: str,
    device_id: str,
    device_secret: str,
    body: Union[str, bytes, None] = None,
    api_key: Optional[str] = None,
    timestamp: Optional[int] = None,
    nonce: Optional[str] = None,
    algorithm: str = "sha256",
) -> dict[str, str]:
    """Build the signing headers a mobile client sends.

    Args:
        method: HTTP method
        path: Request path (query string is ignored)
        device_id: Registered device id
        device_secret: Secret returned at registration
        body: Raw request body, if any
        api_key: Value for the API key header, if the server requires one
        timestamp: Unix seconds (defaults to now)
        nonce: Hex nonce (defaults to 16 random bytes)
        algorithm: HMAC digest name

    Returns:
        Header dict ready to merge into the request
    """
    timestamp = int(time.time()) if timestamp is None else timestamp
    nonce = nonce or secrets.token_hex(NONCE_BYTES)
    canonical = build_canonical_string(method, path, timestamp, nonce, body, device_secret)

    headers = {
        TIMESTAMP_HEADER: str(timestamp),
        NONCE_HEADER: nonce,
        DEVICE_ID_HEADER: device_id,
        SIGNATURE_HEADER: compute_signature(device_secret, canonical, algorithm),
    }
    if api_key is not None:
        headers[API_KEY_HEADER] = api_key
    return headers


@dataclass
class SignedRequest:
    """The parts of an HTTP request that take part in verification."""

    method: str
    path: str
    body: Union[str, bytes, None] = None
    api_key: Optional[str] = None
    timestamp: Optional[str] = None
    nonce: Optional[str] = None
    device_id: Optional[str] = None
    signature: Optional[str] = None
    user_id: Optional[UUID] = None
    client_ip: Optional[str] = None

    @classmethod
    def from_headers(
        cls,
        method: str,
        path: str,
        headers: Mapping[str, str],
        body: Union[str, bytes, None] = None,
        user_id: Optional[UUID] = None,
        api_key_header: str = API_KEY_HEADER,
        client_ip: Optional[str] = None,
    ) -> "SignedRequest":
        return cls(
            method=method,
            path=path,
            body=body,
            api_key=headers.get(api_key_header),
            timestamp=headers.get(TIMESTAMP_HEADER),
            nonce=headers.get(NONCE_HEADER),
            device_id=headers.get(DEVICE_ID_HEADER),
            signature=headers.get(SIGNATURE_HEADER),
            user_id=user_id,
            client_ip=client_ip,
        )


@dataclass
class VerifiedRequest:
    """A request that passed every check, with the device that signed it."""

    device: DeviceRegistration
    timestamp: int
    nonce: Optional[str]

    @property
    def user_id(self) -> UUID:
        return self.device.user_id

    @property
    def device_id(self) -> str:
        return self.device.device_id


class SignatureService:
    """Verifies signed requests from registered devices."""

    def __init__(self):
        self.settings = get_settings()
        self.devices = DeviceService()
        self.redis = RedisService()
        self.events = SecurityEventService()

    async def verify(
        self,
        request: SignedRequest,
        require_trusted: bool = False,
        instrument: bool = False,
        now: Optional[float] = None,
    ) -> VerifiedRequest:
        """Run every check on a signed request, in order.

        Order: API key, lockout, device, timestamp, nonce, signature. The
        first failure emits its security event and is raised. Failures are
        counted per device and source address, and a pass clears that count.
        A pass from a device that is not currently trusted is recorded as
        untrusted access unless trust was required.

        Args:
            request: Method, path, body and signing headers
            require_trusted: Reject devices that are not currently trusted
            instrument: Also record a success event
            now: Unix seconds to verify against (defaults to the clock)

        Returns:
            VerifiedRequest with the signing device

        Raises:
            InvalidApiKeyError: Missing or wrong API key
            TooManyFailedAttemptsError: Device is locked out for this source address
            InvalidDeviceError: Unknown device, or not trusted when required
            TrustExpiredError: Trust required but the device's trust has lapsed
            TimestampSkewError: Timestamp missing or outside the tolerance
            NonceReusedError: Nonce missing or already seen
            InvalidSignatureError: Signature does not match
        """
        now = time.time() if now is None else now
        device_id = request.device_id or ""

        await self.verify_api_key(request)

        if device_id:
            remaining = await self.redis.get_lockout_remaining(device_id, request.client_ip)
            if remaining > 0:
                await self.events.record(
                    SecurityEventType.RATE_LIMIT_EXCEEDED,
                    user_id=request.user_id,
                    device_id=device_id,
                    context={"reason": "device locked out", "retry_after": remaining},
                )
                raise TooManyFailedAttemptsError(
                    f"device locked out for {remaining}s", retry_after=remaining
                )

        try:
            device = await self._check_device(request, require_trusted, now)
            timestamp = self._check_timestamp(request.timestamp, now)
            await self._check_nonce(device.device_id, request.nonce)
            self._check_signature(request, device.device_secret)
        except SecurityValidationError as e:
            failure_count = None
            if device_id:
                failure_count = await self.redis.record_failed_attempt(
                    device_id, request.client_ip
                )
            await self._record_failure(e, request, failure_count)
            raise

        await self.redis.clear_failed_attempts(device.device_id, request.client_ip)
        await self.devices.touch(device.user_id, device.device_id)

        now_dt = datetime.fromtimestamp(now, tz=timezone.utc)
        if not require_trusted and not device.is_currently_trusted(now_dt):
            await self.events.record(
                SecurityEventType.UNTRUSTED_DEVICE_ACCESS,
                user_id=device.user_id,
                device_id=device.device_id,
                context={
                    "trust_status": device.trust_status(now_dt).value,
                    "method": request.method.upper(),
                    "path": request.path,
                },
            )

        if instrument:
            await self.events.record(
                SecurityEventType.SECURITY_VALIDATION_SUCCESS,
                user_id=device.user_id,
                device_id=device.device_id,
                context={"method": request.method.upper(), "path": request.path},
            )

        logger.debug(
            "signed_request_verified",
            device_id=device.device_id,
            user_id=str(device.user_id),
        )
        return VerifiedRequest(device=device, timestamp=timestamp, nonce=request.nonce)

    async def verify_api_key(self, request: SignedRequest) -> None:
        """Check only the API key, recording a failure event on mismatch."""
        try:
            self._check_api_key(request.api_key)
        except InvalidApiKeyError as e:
            await self._record_failure(e, request)
            raise

    def _check_api_key(self, api_key: Optional[str]) -> None:
        if not self.settings.api_key_required:
            return

        expected = self.settings.mobile_api_key
        if not expected:
            logger.error("mobile_api_key_not_configured")
            raise InvalidApiKeyError("api key required but none configured")
        if not api_key:
            raise InvalidApiKeyError("missing api key")
        if not hmac.compare_digest(api_key.encode("utf-8"), expected.encode("utf-8")):
            raise InvalidApiKeyError("api key mismatch")

    async def _check_device(
        self, request: SignedRequest, require_trusted: bool, now: float
    ) -> DeviceRegistration:
        if not request.device_id:
            raise InvalidDeviceError("missing device id")

        device = await self.devices.find_device(request.device_id, request.user_id)
        if device is None:
            raise InvalidDeviceError("unknown device")

        if require_trusted:
            now_dt = datetime.fromtimestamp(now, tz=timezone.utc)
            if device.is_trust_expired(now_dt):
                raise TrustExpiredError("device trust expired")
            if not device.is_currently_trusted(now_dt):
                raise InvalidDeviceError("device not trusted")

        return device

    def _check_timestamp(self, timestamp: Optional[str], now: float) -> int:
        if not timestamp:
            raise TimestampSkewError("missing timestamp")
        try:
            value = int(timestamp)
        except (TypeError, ValueError):
            raise TimestampSkewError("malformed timestamp")

        skew = abs(now - value)
        if skew > self.settings.timestamp_tolerance:
            raise TimestampSkewError(f"timestamp skew {int(skew)}s")
        return value

    async def _check_nonce(self, device_id: str, nonce: Optional[str]) -> None:
        if not self.settings.require_nonce:
            return
        if not nonce:
            raise NonceReusedError("missing")

        cache = await get_nonce_cache()
        ttl = max(self.settings.timestamp_tolerance, 1)
        if not await cache.check_and_store(device_id, nonce, ttl):
            raise NonceReusedError("reused")

    def _check_signature(self, request: SignedRequest, device_secret: str) -> None:
        if not request.signature:
            raise InvalidSignatureError("missing signature")

        try:
            canonical = build_canonical_string(
                request.method,
                request.path,
                request.timestamp,
                request.nonce or "",
                request.body,
                device_secret,
            )
        except UnicodeDecodeError:
            raise InvalidSignatureError("body is not valid utf-8")
        expected = compute_signature(
            device_secret, canonical, self.settings.signature_algorithm
        )
        if not hmac.compare_digest(
            expected.encode("utf-8"), request.signature.lower().encode("utf-8")
        ):
            raise InvalidSignatureError("signature mismatch")

    async def _record_failure(
        self,
        error: SecurityValidationError,
        request: SignedRequest,
        failure_count: Optional[int] = None,
    ) -> None:
        context = {
            "reason": error.reason,
            "method": request.method.upper(),
            "path": request.path,
        }
        check = _FAILED_CHECK.get(type(error))
        if check:
            context["check"] = check
        if failure_count is not None and failure_count >= 0:
            context["failure_count"] = failure_count

        logger.warning(
            "signed_request_rejected",
            device_id=request.device_id,
            check=check,
            reason=error.reason,
        )
        await self.events.record(
            error.event_type,
            user_id=request.user_id,
            device_id=request.device_id,
            context=context,
        )
