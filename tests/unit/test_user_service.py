"""Unit tests for UserService with mocked asyncpg database."""

from unittest.mock import patch
from uuid import uuid4

import pytest

from src.models.user import User
from src.services.user_service import UserService


@pytest.fixture
def user_service():
    return UserService()


class TestGetById:
    async def test_found(self, user_service, mock_pool):
        pool, conn = mock_pool
        user_id = uuid4()
        conn.fetchrow.return_value = {
            "id": user_id,
            "username": "alice",
            "tenant_id": "tenant-1",
            "is_active": True,
            "is_admin": True,
        }

        with patch("src.services.user_service.get_pool", return_value=pool):
            user = await user_service.get_by_id(user_id)

        assert isinstance(user, User)
        assert user.is_admin is True
        assert user.id == user_id
        assert user.tenant_id == "tenant-1"
        assert conn.fetchrow.call_args.args[1] == user_id

    async def test_not_found(self, user_service, mock_pool):
        pool, conn = mock_pool
        conn.fetchrow.return_value = None

        with patch("src.services.user_service.get_pool", return_value=pool):
            assert await user_service.get_by_id(uuid4()) is None


class TestGetPasswordHash:
    async def test_active_user(self, user_service, mock_pool):
        pool, conn = mock_pool
        conn.fetchval.return_value = "$2b$12$hash"

        with patch("src.services.user_service.get_pool", return_value=pool):
            assert await user_service.get_password_hash(uuid4()) == "$2b$12$hash"

        assert "is_active = TRUE" in conn.fetchval.call_args.args[0]

    async def test_missing_or_inactive(self, user_service, mock_pool):
        pool, conn = mock_pool
        conn.fetchval.return_value = None

        with patch("src.services.user_service.get_pool", return_value=pool):
            assert await user_service.get_password_hash(uuid4()) is None
