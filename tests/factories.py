"""Model factories and row builders shared by the test suites."""

import os
from datetime import datetime, timedelta, timezone
from uuid import uuid4

from src.models.device import DeviceRegistration
from src.models.token import TOKEN_ABILITIES, MobileToken, TokenType

TEST_API_KEY = os.environ.get("MOBILE_API_KEY", "test-mobile-api-key")


def make_device(
    user_id=None,
    device_id="device-abc-123456",
    device_secret="a" * 64,
    is_trusted=False,
    trusted_until=None,
    **kwargs,
):
    """Create a DeviceRegistration for tests."""
    now = datetime.now(timezone.utc)
    return DeviceRegistration(
        id=kwargs.pop("id", uuid4()),
        user_id=user_id or uuid4(),
        device_id=device_id,
        device_info=kwargs.pop("device_info", {"platform": "ios", "model": "iPhone15,2"}),
        device_secret=device_secret,
        is_trusted=is_trusted,
        registered_at=kwargs.pop("registered_at", now),
        trusted_at=kwargs.pop("trusted_at", now if is_trusted else None),
        trusted_until=trusted_until,
        last_used_at=kwargs.pop("last_used_at", now),
    )


def make_token(
    token_type="access",
    user_id=None,
    device_id="device-abc-123456",
    created_at=None,
    expires_at=None,
    lifetime=900,
    **kwargs,
):
    """Create a MobileToken for tests."""
    token_type = TokenType(token_type)
    created_at = created_at or datetime.now(timezone.utc)
    return MobileToken(
        id=kwargs.pop("id", uuid4()),
        user_id=user_id or uuid4(),
        device_id=device_id,
        token_type=token_type,
        token_hash=kwargs.pop("token_hash", "0" * 64),
        abilities=kwargs.pop("abilities", list(TOKEN_ABILITIES[token_type])),
        created_at=created_at,
        expires_at=expires_at or created_at + timedelta(seconds=lifetime),
        last_used_at=kwargs.pop("last_used_at", None),
    )


def token_row(token, token_hash=None):
    """asyncpg-style row for a MobileToken."""
    return {
        "id": token.id,
        "user_id": token.user_id,
        "device_id": token.device_id,
        "token_type": token.token_type.value,
        "token_hash": token_hash or token.token_hash,
        "abilities": list(token.abilities),
        "created_at": token.created_at,
        "expires_at": token.expires_at,
        "last_used_at": token.last_used_at,
    }


def device_row(device):
    """asyncpg-style row for a DeviceRegistration."""
    return {
        "id": device.id,
        "user_id": device.user_id,
        "device_id": device.device_id,
        "device_info": device.device_info,
        "device_secret": device.device_secret,
        "is_trusted": device.is_trusted,
        "registered_at": device.registered_at,
        "trusted_at": device.trusted_at,
        "trusted_until": device.trusted_until,
        "last_used_at": device.last_used_at,
    }


def recorded_event_types(events_mock) -> list[str]:
    """Event types passed to a mocked SecurityEventService.record()."""
    return [str(getattr(c.args[0], "value", c.args[0])) for c in events_mock.record.call_args_list]
