"""User (principal) model."""

from datetime import datetime
from typing import Optional

import sqlalchemy as sa
from sqlmodel import Field, SQLModel

from tenantgate_shared.schemas.common import SystemRole

from .base import UUIDMixin, _utcnow


class User(UUIDMixin, SQLModel, table=True):
    __tablename__ = "users"
    __table_args__ = (
        sa.CheckConstraint(
            "system_role IN ('system_admin', 'user')", name="ck_users_system_role"
        ),
    )

    email: str = Field(unique=True, index=True, nullable=False)
    display_name: str = Field(nullable=False)
    system_role: str = Field(default=SystemRole.USER.value, nullable=False)
    password_hash: Optional[str] = Field(default=None)  # bcrypt hash
    created_at: datetime = Field(
        default_factory=_utcnow,
        nullable=False,
        sa_column_kwargs={"server_default": sa.func.now()},
        sa_type=sa.DateTime(timezone=True),
    )

    @property
    def role(self) -> SystemRole:
        return SystemRole(self.system_role)

    @property
    def is_system_admin(self) -> bool:
        return self.system_role == SystemRole.SYSTEM_ADMIN.value
