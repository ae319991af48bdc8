"""User model (owned by the external tenant/user CRUD layer)."""

from typing import Optional
from uuid import UUID

from pydantic import BaseModel


class User(BaseModel):
    """The subset of a user record the mobile auth layer reads."""

    id: UUID
    username: str
    tenant_id: Optional[str] = None
    is_active: bool = True
    is_admin: bool = False
