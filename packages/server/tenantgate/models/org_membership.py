"""Organisation membership: principal x organisation with an org role."""

from datetime import datetime
from typing import Optional
import uuid

import sqlalchemy as sa
from sqlmodel import Field, SQLModel

from tenantgate_shared.schemas.common import OrgRole

from .base import TimestampMixin, UUIDMixin


class OrgMembership(UUIDMixin, TimestampMixin, SQLModel, table=True):
    __tablename__ = "org_memberships"
    __table_args__ = (
        sa.Index(
            "uq_org_memberships_active",
            "user_id",
            "org_id",
            unique=True,
            postgresql_where=sa.text("is_active"),
            sqlite_where=sa.text("is_active = 1"),
        ),
        sa.CheckConstraint("role IN ('owner', 'admin', 'member')", name="ck_org_memberships_role"),
    )

    user_id: uuid.UUID = Field(foreign_key="users.id", nullable=False, index=True)
    org_id: uuid.UUID = Field(foreign_key="organisations.id", nullable=False, index=True)
    role: str = Field(default=OrgRole.MEMBER.value, nullable=False)
    is_active: bool = Field(default=True, nullable=False)
    is_default: bool = Field(default=False, nullable=False)
    invited_by: Optional[uuid.UUID] = Field(default=None, foreign_key="users.id")
    invited_at: Optional[datetime] = Field(default=None, sa_type=sa.DateTime(timezone=True))
    accepted_at: Optional[datetime] = Field(default=None, sa_type=sa.DateTime(timezone=True))
    deactivated_at: Optional[datetime] = Field(default=None, sa_type=sa.DateTime(timezone=True))

    @property
    def org_role(self) -> OrgRole:
        return OrgRole(self.role)
