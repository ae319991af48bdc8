"""Device identity store and registration."""

import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from uuid import UUID, uuid4

import asyncpg
import structlog

from src.config import get_settings
from src.database import get_pool
from src.exceptions import (
    DeviceIdFormatError,
    DeviceLimitExceededError,
    DuplicateDeviceError,
)
from src.models.device import (
    DeviceRegistration,
    DeviceRegistrationResult,
    TrustStatus,
    is_valid_device_id,
    sanitize_device_id,
)
from src.models.security_event import SecurityEventType
from src.services.security_event_service import SecurityEventService

logger = structlog.get_logger(__name__)

DEVICE_SECRET_BYTES = 32  # 256 bits
REGISTRATION_VELOCITY_WINDOW = timedelta(hours=1)

_DEVICE_COLUMNS = """
    id, user_id, device_id, device_info, device_secret, is_trusted,
    registered_at, trusted_at, trusted_until, last_used_at
"""


def _row_to_device(row) -> DeviceRegistration:
    return DeviceRegistration(
        id=row["id"],
        user_id=row["user_id"],
        device_id=row["device_id"],
        device_info=row["device_info"] or {},
        device_secret=row["device_secret"],
        is_trusted=row["is_trusted"],
        registered_at=row["registered_at"],
        trusted_at=row["trusted_at"],
        trusted_until=row["trusted_until"],
        last_used_at=row["last_used_at"],
    )


class DeviceService:
    """Persists one record per (user, device) and handles registration."""

    def __init__(self):
        self.settings = get_settings()
        self.events = SecurityEventService()

    async def register(
        self,
        user_id: UUID,
        device_id: str,
        device_info: Optional[dict[str, Any]] = None,
    ) -> DeviceRegistrationResult:
        """Register a new device and issue its secret.

        The secret is returned here and nowhere else.

        Args:
            user_id: Owning user
            device_id: Client-generated id (disallowed characters are stripped)
            device_info: Platform/model/version metadata

        Returns:
            DeviceRegistrationResult with the new device and its secret

        Raises:
            DeviceIdFormatError: If the sanitized id is too short or too long
            DuplicateDeviceError: If (user_id, device_id) is already registered
            DeviceLimitExceededError: If the user is at max_devices_per_user
        """
        device_id = sanitize_device_id(device_id)
        device_info = device_info or {}

        try:
            if not is_valid_device_id(device_id):
                raise DeviceIdFormatError(f"invalid device id length {len(device_id)}")
            device, recent = await self._insert_device(user_id, device_id, device_info)
        except (DeviceIdFormatError, DuplicateDeviceError, DeviceLimitExceededError) as e:
            await self.events.record(
                SecurityEventType.DEVICE_REGISTRATION_FAILED,
                user_id=user_id,
                device_id=device_id,
                context={"reason": e.reason},
            )
            raise

        logger.info(
            "device_registered",
            user_id=str(user_id),
            device_id=device_id,
            recent_registrations=recent,
        )
        await self.events.record(
            SecurityEventType.DEVICE_REGISTERED,
            user_id=user_id,
            device_id=device_id,
            context={"device_info": device_info, "recent_registrations": recent},
        )

        return DeviceRegistrationResult(
            device=device,
            device_secret=device.device_secret,
            trust_status=TrustStatus.UNTRUSTED,
        )

    async def _insert_device(
        self, user_id: UUID, device_id: str, device_info: dict[str, Any]
    ) -> tuple[DeviceRegistration, int]:
        """Insert under a per-user advisory lock so the device ceiling holds
        under concurrent registrations.

        Returns:
            Tuple of (device, registrations by this user in the velocity window)
        """
        now = datetime.now(timezone.utc)
        secret = secrets.token_hex(DEVICE_SECRET_BYTES)

        pool = await get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    "SELECT pg_advisory_xact_lock(hashtext($1))", str(user_id)
                )

                exists = await conn.fetchval(
                    """
                    SELECT 1 FROM device_registrations
                    WHERE user_id = $1 AND device_id = $2
                    """,
                    user_id,
                    device_id,
                )
                if exists:
                    raise DuplicateDeviceError("device already registered")

                device_count = await self.count_devices(user_id, conn=conn)
                if device_count >= self.settings.max_devices_per_user:
                    raise DeviceLimitExceededError(
                        f"user has {device_count} devices, "
                        f"max {self.settings.max_devices_per_user}"
                    )

                recent = await self.count_recent_registrations(user_id, now=now, conn=conn)

                try:
                    row = await conn.fetchrow(
                        f"""
                        INSERT INTO device_registrations (
                            id, user_id, device_id, device_info, device_secret,
                            is_trusted, registered_at, last_used_at
                        )
                        VALUES ($1, $2, $3, $4, $5, FALSE, $6, $6)
                        RETURNING {_DEVICE_COLUMNS}
                        """,
                        uuid4(),
                        user_id,
                        device_id,
                        device_info,
                        secret,
                        now,
                    )
                except asyncpg.UniqueViolationError:
                    raise DuplicateDeviceError("device already registered (unique violation)")

        return _row_to_device(row), recent + 1

    async def get_device(self, user_id: UUID, device_id: str) -> Optional[DeviceRegistration]:
        """Get one device of a user, or None."""
        pool = await get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                SELECT {_DEVICE_COLUMNS}
                FROM device_registrations
                WHERE user_id = $1 AND device_id = $2
                """,
                user_id,
                device_id,
            )
        return _row_to_device(row) if row else None

    async def find_device(
        self, device_id: str, user_id: Optional[UUID] = None
    ) -> Optional[DeviceRegistration]:
        """Resolve the device a signed request claims to come from.

        Without a user the device id must be unambiguous: if several users
        registered the same id, None is returned.
        """
        if user_id is not None:
            return await self.get_device(user_id, device_id)

        pool = await get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {_DEVICE_COLUMNS}
                FROM device_registrations
                WHERE device_id = $1
                LIMIT 2
                """,
                device_id,
            )

        if len(rows) != 1:
            if rows:
                logger.warning("ambiguous_device_id", device_id=device_id, matches=len(rows))
            return None
        return _row_to_device(rows[0])

    async def list_devices(self, user_id: UUID) -> list[DeviceRegistration]:
        """All devices of a user, most recently used first."""
        pool = await get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {_DEVICE_COLUMNS}
                FROM device_registrations
                WHERE user_id = $1
                ORDER BY last_used_at DESC NULLS LAST, registered_at DESC
                """,
                user_id,
            )
        return [_row_to_device(row) for row in rows]

    async def count_devices(self, user_id: UUID, conn=None) -> int:
        """Devices registered to a user. Pass ``conn`` to count inside a transaction."""
        if conn is None:
            pool = await get_pool()
            async with pool.acquire() as conn:
                return await self.count_devices(user_id, conn=conn)

        count = await conn.fetchval(
            "SELECT COUNT(*) FROM device_registrations WHERE user_id = $1",
            user_id,
        )
        return int(count or 0)

    async def count_recent_registrations(
        self,
        user_id: UUID,
        window: timedelta = REGISTRATION_VELOCITY_WINDOW,
        now: Optional[datetime] = None,
        conn=None,
    ) -> int:
        """Registrations by a user within ``window`` of ``now``."""
        if conn is None:
            pool = await get_pool()
            async with pool.acquire() as conn:
                return await self.count_recent_registrations(user_id, window, now, conn=conn)

        since = (now or datetime.now(timezone.utc)) - window
        count = await conn.fetchval(
            """
            SELECT COUNT(*) FROM device_registrations
            WHERE user_id = $1 AND registered_at >= $2
            """,
            user_id,
            since,
        )
        return int(count or 0)

    @staticmethod
    def security_status(device: DeviceRegistration) -> dict[str, Any]:
        """Security score and recommendations for one device."""
        now = datetime.now(timezone.utc)
        return {
            "device_id": device.device_id,
            "device_info": device.device_info_string,
            "trust_status": device.trust_status(now).value,
            "security_score": device.security_score(now),
            "recommendations": device.security_recommendations(now),
        }

    async def remove_device(self, user_id: UUID, device_id: str) -> bool:
        """Delete a device. Its tokens and registry entry go with it (FK cascade).

        Returns:
            True if a device was deleted, False if none matched
        """
        pool = await get_pool()
        async with pool.acquire() as conn:
            result = await conn.execute(
                """
                DELETE FROM device_registrations
                WHERE user_id = $1 AND device_id = $2
                """,
                user_id,
                device_id,
            )

        removed = result.endswith(" 1")
        if removed:
            logger.info("device_removed", user_id=str(user_id), device_id=device_id)
            await self.events.record(
                SecurityEventType.DEVICE_REMOVED,
                user_id=user_id,
                device_id=device_id,
            )
        return removed

    async def touch(self, user_id: UUID, device_id: str) -> None:
        """Record that the device just made a verified request."""
        pool = await get_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE device_registrations
                SET last_used_at = $3
                WHERE user_id = $1 AND device_id = $2
                """,
                user_id,
                device_id,
                datetime.now(timezone.utc),
            )

    async def set_trust(
        self,
        user_id: UUID,
        device_id: str,
        trusted_at: datetime,
        trusted_until: datetime,
    ) -> Optional[DeviceRegistration]:
        """Mark a device trusted until ``trusted_until``. Returns None if missing."""
        pool = await get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                UPDATE device_registrations
                SET is_trusted = TRUE, trusted_at = $3, trusted_until = $4
                WHERE user_id = $1 AND device_id = $2
                RETURNING {_DEVICE_COLUMNS}
                """,
                user_id,
                device_id,
                trusted_at,
                trusted_until,
            )
        return _row_to_device(row) if row else None

    async def clear_trust(self, user_id: UUID, device_id: str) -> bool:
        """Unset trust regardless of prior state. Returns False if the device is missing."""
        pool = await get_pool()
        async with pool.acquire() as conn:
            result = await conn.execute(
                """
                UPDATE device_registrations
                SET is_trusted = FALSE, trusted_at = NULL, trusted_until = NULL
                WHERE user_id = $1 AND device_id = $2
                """,
                user_id,
                device_id,
            )
        return result.endswith(" 1")

    async def clear_expired_trust(self) -> int:
        """Demote every device whose trust window has passed.

        Returns:
            Number of devices demoted
        """
        pool = await get_pool()
        async with pool.acquire() as conn:
            result = await conn.execute(
                """
                UPDATE device_registrations
                SET is_trusted = FALSE, trusted_at = NULL, trusted_until = NULL
                WHERE is_trusted = TRUE AND trusted_until <= $1
                """,
                datetime.now(timezone.utc),
            )
        return int(result.split()[-1])
