"""Mobile token issuance, refresh rotation, validation and revocation."""

import hashlib
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import UUID, uuid4

import structlog

from src.config import get_settings
from src.database import get_pool
from src.exceptions import (
    DeviceNotFoundError,
    MissingAbilityError,
    MobileAuthError,
    RefreshTooFrequentError,
    TokenExpiredError,
    TokenNotFoundError,
)
from src.models.security_event import SecurityEventType
from src.models.token import (
    TOKEN_ABILITIES,
    LongTermToken,
    MobileToken,
    TokenInfo,
    TokenPair,
    TokenType,
    TokenValidation,
    registry_status,
)
from src.services.device_service import DeviceService
from src.services.rotation_policy import should_rotate
from src.services.security_event_service import SecurityEventService

logger = structlog.get_logger(__name__)

RAW_TOKEN_BYTES = 48

_TOKEN_COLUMNS = """
    id, user_id, device_id, token_type, token_hash, abilities,
    created_at, expires_at, last_used_at
"""


def hash_token(raw_token: str) -> str:
    """SHA-256 hex digest of a raw token. Only this is ever stored."""
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


def _row_to_token(row) -> MobileToken:
    return MobileToken(
        id=row["id"],
        user_id=row["user_id"],
        device_id=row["device_id"],
        token_type=row["token_type"],
        token_hash=row["token_hash"].strip(),
        abilities=list(row["abilities"] or []),
        created_at=row["created_at"],
        expires_at=row["expires_at"],
        last_used_at=row["last_used_at"],
    )


class TokenService:
    """Issues and rotates device-bound tokens.

    A (user, device) holds at most one live access/refresh pair, tracked by
    its ``mobile_token_registry`` row. Every change to the pair happens in
    one transaction holding that row's lock.
    """

    def __init__(self):
        self.settings = get_settings()
        self.devices = DeviceService()
        self.events = SecurityEventService()

    def _lifetime(self, token_type: TokenType) -> int:
        if token_type == TokenType.ACCESS:
            return self.settings.access_token_lifetime
        if token_type == TokenType.REFRESH:
            return self.settings.refresh_token_lifetime
        return self.settings.long_term_token_lifetime

    async def _insert_token(
        self,
        conn,
        user_id: UUID,
        device_id: str,
        token_type: TokenType,
        now: datetime,
    ) -> tuple[str, MobileToken]:
        """Mint one token and store its hash.

        Returns:
            Tuple of (raw_token, stored MobileToken)
        """
        raw_token = secrets.token_urlsafe(RAW_TOKEN_BYTES)
        token = MobileToken(
            id=uuid4(),
            user_id=user_id,
            device_id=device_id,
            token_type=token_type,
            token_hash=hash_token(raw_token),
            abilities=list(TOKEN_ABILITIES[token_type]),
            created_at=now,
            expires_at=now + timedelta(seconds=self._lifetime(token_type)),
        )
        await conn.execute(
            """
            INSERT INTO mobile_tokens (
                id, user_id, device_id, token_type, token_hash, abilities,
                created_at, expires_at
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
            """,
            token.id,
            token.user_id,
            token.device_id,
            token.token_type.value,
            token.token_hash,
            token.abilities,
            token.created_at,
            token.expires_at,
        )
        return raw_token, token

    def _token_pair(
        self, access_raw: str, access: MobileToken, refresh_raw: str, refresh: MobileToken
    ) -> TokenPair:
        return TokenPair(
            access_token=access_raw,
            refresh_token=refresh_raw,
            access_expires_in=self.settings.access_token_lifetime,
            refresh_expires_in=self.settings.refresh_token_lifetime,
            expires_at=access.expires_at,
            refresh_expires_at=refresh.expires_at,
        )

    async def generate_tokens(self, user_id: UUID, device_id: str) -> TokenPair:
        """Issue a fresh access/refresh pair, superseding any existing pair.

        Args:
            user_id: Token owner
            device_id: Registered device the pair is bound to

        Returns:
            TokenPair with the raw tokens (shown once)

        Raises:
            DeviceNotFoundError: If the device is not registered to the user
        """
        device = await self.devices.get_device(user_id, device_id)
        if device is None:
            raise DeviceNotFoundError("device not registered for user")

        now = datetime.now(timezone.utc)
        pool = await get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                # Placeholder row so concurrent first-time issuers serialize on it
                await conn.execute(
                    """
                    INSERT INTO mobile_token_registry (user_id, device_id, expires_at, created_at)
                    VALUES ($1, $2, $3, $3)
                    ON CONFLICT (user_id, device_id) DO NOTHING
                    """,
                    user_id,
                    device_id,
                    now,
                )
                entry = await conn.fetchrow(
                    """
                    SELECT access_token_id, refresh_token_id
                    FROM mobile_token_registry
                    WHERE user_id = $1 AND device_id = $2
                    FOR UPDATE
                    """,
                    user_id,
                    device_id,
                )

                access_raw, access = await self._insert_token(
                    conn, user_id, device_id, TokenType.ACCESS, now
                )
                refresh_raw, refresh = await self._insert_token(
                    conn, user_id, device_id, TokenType.REFRESH, now
                )

                await conn.execute(
                    """
                    UPDATE mobile_token_registry
                    SET access_token_id = $3, refresh_token_id = $4,
                        expires_at = $5, created_at = $6
                    WHERE user_id = $1 AND device_id = $2
                    """,
                    user_id,
                    device_id,
                    access.id,
                    refresh.id,
                    refresh.expires_at,
                    now,
                )

                old_ids = [
                    entry[k] for k in ("access_token_id", "refresh_token_id")
                    if entry is not None and entry[k] is not None
                ]
                if old_ids:
                    await conn.execute(
                        "DELETE FROM mobile_tokens WHERE id = ANY($1::uuid[])",
                        old_ids,
                    )

        logger.info(
            "mobile_tokens_generated",
            user_id=str(user_id),
            device_id=device_id,
            access_token_id=str(access.id),
            refresh_token_id=str(refresh.id),
            superseded=bool(entry and entry["refresh_token_id"]),
        )
        await self.events.record(
            SecurityEventType.MOBILE_TOKENS_GENERATED,
            user_id=user_id,
            device_id=device_id,
            context={"trusted": device.is_currently_trusted(now)},
        )

        return self._token_pair(access_raw, access, refresh_raw, refresh)

    async def get_token(self, raw_token: str) -> Optional[MobileToken]:
        """Look up a token by its raw value. None if unknown."""
        pool = await get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {_TOKEN_COLUMNS} FROM mobile_tokens WHERE token_hash = $1",
                hash_token(raw_token),
            )
        return _row_to_token(row) if row else None

    async def refresh_tokens(
        self,
        refresh_token: str,
        device_id: str,
        current_access_token: Optional[str] = None,
    ) -> TokenPair:
        """Exchange a refresh token for a new pair, invalidating the old one.

        The registry row is locked and compare-and-swapped on the refresh
        token id, so of two concurrent refreshes with the same token exactly
        one wins.

        Raises:
            TokenNotFoundError: Unknown token, wrong device, or already superseded
            MissingAbilityError: Token is not a refresh token
            TokenExpiredError: Refresh token has expired
            RefreshTooFrequentError: Current pair was issued under min_refresh_interval ago
        """
        token = None
        try:
            token = await self.get_token(refresh_token)
            pair = await self._rotate(token, device_id, current_access_token)
        except MobileAuthError as e:
            await self.events.record(
                SecurityEventType.TOKEN_REFRESH_FAILED,
                user_id=token.user_id if token else None,
                device_id=device_id,
                context={"reason": e.reason},
            )
            raise

        await self.events.record(
            SecurityEventType.TOKEN_REFRESH,
            user_id=token.user_id,
            device_id=device_id,
        )
        return pair

    async def _rotate(
        self,
        token: Optional[MobileToken],
        device_id: str,
        current_access_token: Optional[str],
    ) -> TokenPair:
        now = datetime.now(timezone.utc)

        if token is None:
            raise TokenNotFoundError("refresh token not found")
        if token.token_type != TokenType.REFRESH or "refresh" not in token.abilities:
            raise MissingAbilityError("token lacks refresh ability")
        if token.is_expired(now):
            raise TokenExpiredError("refresh token expired")
        if token.device_id != device_id:
            raise TokenNotFoundError("refresh token bound to another device")

        pool = await get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                entry = await conn.fetchrow(
                    """
                    SELECT access_token_id, refresh_token_id, created_at
                    FROM mobile_token_registry
                    WHERE user_id = $1 AND device_id = $2
                    FOR UPDATE
                    """,
                    token.user_id,
                    device_id,
                )
                if entry is None or entry["refresh_token_id"] != token.id:
                    raise TokenNotFoundError("refresh token superseded")

                # Measured from when the current pair was issued
                since_issue = (now - entry["created_at"]).total_seconds()
                if since_issue < self.settings.min_refresh_interval:
                    retry_after = max(int(self.settings.min_refresh_interval - since_issue), 1)
                    raise RefreshTooFrequentError(
                        f"pair issued {int(since_issue)}s ago", retry_after=retry_after
                    )

                access_raw, access = await self._insert_token(
                    conn, token.user_id, device_id, TokenType.ACCESS, now
                )
                refresh_raw, refresh = await self._insert_token(
                    conn, token.user_id, device_id, TokenType.REFRESH, now
                )

                result = await conn.execute(
                    """
                    UPDATE mobile_token_registry
                    SET access_token_id = $3, refresh_token_id = $4,
                        expires_at = $5, created_at = $6
                    WHERE user_id = $1 AND device_id = $2 AND refresh_token_id = $7
                    """,
                    token.user_id,
                    device_id,
                    access.id,
                    refresh.id,
                    refresh.expires_at,
                    now,
                    token.id,
                )
                if result != "UPDATE 1":
                    raise TokenNotFoundError("refresh token superseded")

                old_ids = [token.id]
                if entry["access_token_id"] is not None:
                    old_ids.append(entry["access_token_id"])
                await conn.execute(
                    "DELETE FROM mobile_tokens WHERE id = ANY($1::uuid[])",
                    old_ids,
                )

                if current_access_token:
                    await conn.execute(
                        """
                        DELETE FROM mobile_tokens
                        WHERE token_hash = $1 AND user_id = $2 AND device_id = $3
                          AND token_type = 'access'
                        """,
                        hash_token(current_access_token),
                        token.user_id,
                        device_id,
                    )

        logger.info(
            "mobile_tokens_refreshed",
            user_id=str(token.user_id),
            device_id=device_id,
            old_refresh_token_id=str(token.id),
            refresh_token_id=str(refresh.id),
        )
        return self._token_pair(access_raw, access, refresh_raw, refresh)

    async def validate_token(self, raw_token: str) -> TokenValidation:
        """Introspect a token without changing anything."""
        token = await self.get_token(raw_token)
        if token is None:
            return TokenValidation(valid=False)

        now = datetime.now(timezone.utc)
        expired = token.is_expired(now)
        return TokenValidation(
            valid=not expired,
            expired=expired,
            should_rotate=should_rotate(
                token.created_at, token.expires_at, self.settings.rotation_threshold, now
            ),
            abilities=token.abilities,
            token_type=token.token_type,
            created_at=token.created_at,
            expires_at=token.expires_at,
        )

    async def authenticate(self, raw_token: str, ability: str = "*") -> MobileToken:
        """Resolve a bearer token that must grant ``ability``.

        Raises:
            TokenNotFoundError: Unknown token
            TokenExpiredError: Token has expired
            MissingAbilityError: Token does not grant the ability
        """
        token = await self.get_token(raw_token)
        if token is None:
            raise TokenNotFoundError("bearer token not found")

        now = datetime.now(timezone.utc)
        if token.is_expired(now):
            raise TokenExpiredError("bearer token expired")
        if not token.can(ability):
            raise MissingAbilityError(f"token lacks ability {ability}")

        pool = await get_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                "UPDATE mobile_tokens SET last_used_at = $2 WHERE id = $1",
                token.id,
                now,
            )
        return token

    def should_rotate(self, token: MobileToken) -> bool:
        return should_rotate(
            token.created_at, token.expires_at, self.settings.rotation_threshold
        )

    async def issue_long_term_token(self, user_id: UUID, device_id: str) -> LongTermToken:
        """Issue a 'limited' token for background use. Not tracked in the registry."""
        device = await self.devices.get_device(user_id, device_id)
        if device is None:
            raise DeviceNotFoundError("device not registered for user")

        now = datetime.now(timezone.utc)
        pool = await get_pool()
        async with pool.acquire() as conn:
            raw, token = await self._insert_token(
                conn, user_id, device_id, TokenType.LONG_TERM, now
            )

        logger.info(
            "long_term_token_issued",
            user_id=str(user_id),
            device_id=device_id,
            token_id=str(token.id),
        )
        await self.events.record(
            SecurityEventType.LONG_TERM_TOKEN_ISSUED,
            user_id=user_id,
            device_id=device_id,
        )
        return LongTermToken(token=raw, abilities=token.abilities, expires_at=token.expires_at)

    async def revoke_device_tokens(self, user_id: UUID, device_id: str) -> int:
        """Delete every token of one device and its registry entry.

        Returns:
            Number of tokens deleted
        """
        pool = await get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    "DELETE FROM mobile_token_registry WHERE user_id = $1 AND device_id = $2",
                    user_id,
                    device_id,
                )
                result = await conn.execute(
                    "DELETE FROM mobile_tokens WHERE user_id = $1 AND device_id = $2",
                    user_id,
                    device_id,
                )

        revoked_count = int(result.split()[-1])
        logger.info(
            "device_tokens_revoked",
            user_id=str(user_id),
            device_id=device_id,
            revoked_count=revoked_count,
        )
        await self.events.record(
            SecurityEventType.DEVICE_TOKENS_REVOKED,
            user_id=user_id,
            device_id=device_id,
            context={"revoked_count": revoked_count},
        )
        return revoked_count

    async def revoke_all_user_tokens(self, user_id: UUID) -> int:
        """Delete every token of every device of a user."""
        pool = await get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    "DELETE FROM mobile_token_registry WHERE user_id = $1",
                    user_id,
                )
                result = await conn.execute(
                    "DELETE FROM mobile_tokens WHERE user_id = $1",
                    user_id,
                )

        revoked_count = int(result.split()[-1])
        logger.info("all_user_tokens_revoked", user_id=str(user_id), revoked_count=revoked_count)
        await self.events.record(
            SecurityEventType.ALL_USER_TOKENS_REVOKED,
            user_id=user_id,
            context={"revoked_count": revoked_count},
        )
        return revoked_count

    async def get_token_info(self, user_id: UUID, device_id: str) -> Optional[TokenInfo]:
        """Registry status for one device, or None if it holds no pair."""
        pool = await get_pool()
        async with pool.acquire() as conn:
            entry = await conn.fetchrow(
                """
                SELECT access_token_id, refresh_token_id, expires_at, created_at
                FROM mobile_token_registry
                WHERE user_id = $1 AND device_id = $2
                """,
                user_id,
                device_id,
            )
            if entry is None:
                return None

            ids = [
                entry[k] for k in ("access_token_id", "refresh_token_id")
                if entry[k] is not None
            ]
            rows = []
            if ids:
                rows = await conn.fetch(
                    f"SELECT {_TOKEN_COLUMNS} FROM mobile_tokens WHERE id = ANY($1::uuid[])",
                    ids,
                )

        tokens = {row["id"]: _row_to_token(row) for row in rows}
        access = tokens.get(entry["access_token_id"])
        refresh = tokens.get(entry["refresh_token_id"])
        now = datetime.now(timezone.utc)

        return TokenInfo(
            status=registry_status(access, refresh, now),
            access_expires_at=access.expires_at if access else None,
            access_is_expired=access.is_expired(now) if access else True,
            refresh_expires_at=refresh.expires_at if refresh else None,
            refresh_is_expired=refresh.is_expired(now) if refresh else True,
            created_at=entry["created_at"],
            should_rotate=(
                should_rotate(
                    access.created_at, access.expires_at, self.settings.rotation_threshold, now
                )
                if access
                else False
            ),
        )

    async def cleanup_expired_tokens(self) -> int:
        """Delete expired tokens and registry entries whose refresh has expired.

        Returns:
            Number of tokens deleted
        """
        now = datetime.now(timezone.utc)
        pool = await get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    "DELETE FROM mobile_token_registry WHERE expires_at <= $1",
                    now,
                )
                result = await conn.execute(
                    "DELETE FROM mobile_tokens WHERE expires_at <= $1",
                    now,
                )

        token_count = int(result.split()[-1])
        logger.info("expired_tokens_cleaned", token_count=token_count)
        return token_count
