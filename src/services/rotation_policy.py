"""Token rotation policy."""

from datetime import datetime, timezone
from typing import Optional

DEFAULT_ROTATION_THRESHOLD = 0.8


def lifetime_fraction_elapsed(
    created_at: datetime,
    expires_at: datetime,
    now: Optional[datetime] = None,
) -> float:
    """Fraction of the token lifetime that has passed (may exceed 1.0)."""
    now = now or datetime.now(timezone.utc)
    lifetime = (expires_at - created_at).total_seconds()
    if lifetime <= 0:
        return 1.0
    return (now - created_at).total_seconds() / lifetime


def should_rotate(
    created_at: datetime,
    expires_at: Optional[datetime],
    threshold: float = DEFAULT_ROTATION_THRESHOLD,
    now: Optional[datetime] = None,
) -> bool:
    """True once ``threshold`` of the token's lifetime has elapsed.

    A token without an expiry never rotates. A non-positive lifetime is
    always due.
    """
    if expires_at is None:
        return False
    return lifetime_fraction_elapsed(created_at, expires_at, now) >= threshold
