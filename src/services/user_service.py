"""Read-only access to users owned by the external CRUD layer."""

from typing import Optional
from uuid import UUID

import structlog

from src.database import get_pool
from src.models.user import User

logger = structlog.get_logger(__name__)


class UserService:
    """Looks up users. Creation and updates happen elsewhere."""

    async def get_by_id(self, user_id: UUID) -> Optional[User]:
        """Get a user by ID.

        Args:
            user_id: User UUID

        Returns:
            User model or None if not found
        """
        pool = await get_pool()

        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT id, username, tenant_id, is_active, is_admin
                FROM users
                WHERE id = $1
                """,
                user_id,
            )

        if row is None:
            return None

        return User(
            id=row["id"],
            username=row["username"],
            tenant_id=row["tenant_id"],
            is_active=row["is_active"],
            is_admin=row["is_admin"],
        )

    async def get_password_hash(self, user_id: UUID) -> Optional[str]:
        """Bcrypt hash for an active user, or None."""
        pool = await get_pool()

        async with pool.acquire() as conn:
            password_hash = await conn.fetchval(
                "SELECT password_hash FROM users WHERE id = $1 AND is_active = TRUE",
                user_id,
            )

        if password_hash is None:
            logger.warning("password_hash_unavailable", user_id=str(user_id))
        return password_hash
