"""Principal registration, login and system-role schemas."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, EmailStr, Field, UUID4

from .common import SystemRole
from .context import TenantContextRead


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------

class RegisterRequest(BaseModel):
    email: EmailStr
    display_name: str = Field(min_length=1, max_length=200)
    password: str = Field(min_length=8, max_length=128)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class SystemRoleUpdate(BaseModel):
    system_role: SystemRole


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------

class UserResponse(BaseModel):
    """Single principal response."""
    id: UUID4
    email: str
    display_name: str
    system_role: SystemRole
    created_at: datetime

    model_config = {"from_attributes": True}


class LoginResponse(BaseModel):
    """Issued on login. Browser clients use the cookie; API clients the bearer token."""
    user: UserResponse
    access_token: str
    token_type: str = "bearer"
    context: Optional[TenantContextRead] = None
