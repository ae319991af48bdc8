"""Device trust lifecycle: untrusted -> trusted -> expired -> untrusted.

Trust is granted for a bounded window after a secondary verification and
lapses on its own. Lapsed trust is detected on read; the stored flag is
only cleared by an explicit revoke or by ``cleanup_expired_trust``.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import UUID

import structlog

from src.config import get_settings
from src.exceptions import (
    AlreadyTrustedError,
    DeviceNotFoundError,
    MobileAuthError,
    VerificationFailedError,
)
from src.models.device import (
    DeviceRegistration,
    VerificationMethod,
    clamp_trust_duration,
)
from src.models.security_event import SecurityEventType
from src.services.auth_service import AuthService
from src.services.device_service import DeviceService
from src.services.redis_service import RedisService
from src.services.security_event_service import SecurityEventService
from src.services.user_service import UserService

logger = structlog.get_logger(__name__)


def is_trust_expired(device: DeviceRegistration, now: Optional[datetime] = None) -> bool:
    return device.is_trust_expired(now)


class TrustService:
    """Grants and revokes device trust."""

    def __init__(self):
        self.settings = get_settings()
        self.devices = DeviceService()
        self.events = SecurityEventService()
        self.redis = RedisService()
        self.auth = AuthService()
        self.users = UserService()

    async def trust_device(
        self,
        user_id: UUID,
        device_id: str,
        verification_method: VerificationMethod,
        verification_data: Optional[str] = None,
        trust_duration: Optional[int] = None,
        signing_device_id: Optional[str] = None,
    ) -> DeviceRegistration:
        """Promote a registered device to trusted after verification.

        Args:
            user_id: Device owner
            device_id: Device to trust
            verification_method: biometric, password or otp
            verification_data: Password or one-time code
            trust_duration: Seconds of trust, clamped to [1 hour, 90 days]
            signing_device_id: Device whose signature the request carried.
                Biometric is accepted only when this is the device being trusted.

        Returns:
            The updated device

        Raises:
            DeviceNotFoundError: Device is not registered to the user
            AlreadyTrustedError: Device trust has not yet expired
            VerificationFailedError: The secondary verification did not pass
        """
        method = VerificationMethod(verification_method)
        try:
            device = await self._grant(
                user_id, device_id, method, verification_data, trust_duration, signing_device_id
            )
        except MobileAuthError as e:
            await self.events.record(
                SecurityEventType.DEVICE_TRUST_FAILED,
                user_id=user_id,
                device_id=device_id,
                context={"reason": e.reason, "verification_method": method.value},
            )
            raise

        logger.info(
            "device_trusted",
            user_id=str(user_id),
            device_id=device_id,
            verification_method=method.value,
            trusted_until=device.trusted_until.isoformat(),
        )
        await self.events.record(
            SecurityEventType.DEVICE_TRUSTED,
            user_id=user_id,
            device_id=device_id,
            context={
                "verification_method": method.value,
                "trusted_until": device.trusted_until.isoformat(),
            },
        )
        return device

    async def _grant(
        self,
        user_id: UUID,
        device_id: str,
        method: VerificationMethod,
        verification_data: Optional[str],
        trust_duration: Optional[int],
        signing_device_id: Optional[str],
    ) -> DeviceRegistration:
        device = await self.devices.get_device(user_id, device_id)
        if device is None:
            raise DeviceNotFoundError("device not registered for user")

        now = datetime.now(timezone.utc)
        if device.is_currently_trusted(now):
            raise AlreadyTrustedError("device trust still valid")

        verified = await self._verify(
            user_id, device_id, method, verification_data, signing_device_id
        )
        if not verified:
            raise VerificationFailedError(f"{method.value} verification failed")

        duration = clamp_trust_duration(trust_duration or self.settings.device_trust_duration)
        updated = await self.devices.set_trust(
            user_id, device_id, now, now + timedelta(seconds=duration)
        )
        if updated is None:
            raise DeviceNotFoundError("device removed during trust")
        return updated

    async def _verify(
        self,
        user_id: UUID,
        device_id: str,
        method: VerificationMethod,
        verification_data: Optional[str],
        signing_device_id: Optional[str],
    ) -> bool:
        if method == VerificationMethod.BIOMETRIC:
            # The biometric check runs on the device itself, so it only counts
            # in a request that same device signed
            return signing_device_id is not None and signing_device_id == device_id

        if not verification_data:
            return False

        if method == VerificationMethod.PASSWORD:
            password_hash = await self.users.get_password_hash(user_id)
            if password_hash is None:
                return False
            return self.auth.verify_password(verification_data, password_hash)

        return await self.redis.consume_trust_code(str(user_id), device_id, verification_data)

    async def revoke_trust(self, user_id: UUID, device_id: str) -> None:
        """Clear trust. Idempotent for an untrusted device.

        Raises:
            DeviceNotFoundError: Device is not registered to the user
        """
        if not await self.devices.clear_trust(user_id, device_id):
            raise DeviceNotFoundError("device not registered for user")

        logger.info("device_trust_revoked", user_id=str(user_id), device_id=device_id)
        await self.events.record(
            SecurityEventType.DEVICE_TRUST_REVOKED,
            user_id=user_id,
            device_id=device_id,
        )

    async def issue_trust_code(self, user_id: UUID, device_id: str) -> str:
        """Create a one-time code for otp trust verification.

        The caller delivers the code out of band.

        Raises:
            DeviceNotFoundError: Device is not registered to the user
            RuntimeError: If Redis is unavailable
        """
        device = await self.devices.get_device(user_id, device_id)
        if device is None:
            raise DeviceNotFoundError("device not registered for user")

        code = await self.redis.store_trust_code(str(user_id), device_id)
        if code is None:
            raise RuntimeError("Trust code store unavailable")

        logger.info("trust_code_issued", user_id=str(user_id), device_id=device_id)
        return code

    async def cleanup_expired_trust(self) -> int:
        """Demote all devices whose trust window has passed."""
        demoted = await self.devices.clear_expired_trust()
        logger.info("expired_trust_cleaned", demoted=demoted)
        return demoted
