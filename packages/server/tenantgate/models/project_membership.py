"""Project membership. Requires an active membership in the project's organisation."""

from datetime import datetime
from typing import Optional
import uuid

import sqlalchemy as sa
from sqlmodel import Field, SQLModel

from tenantgate_shared.schemas.common import ProjectRole

from .base import TimestampMixin, UUIDMixin


class ProjectMembership(UUIDMixin, TimestampMixin, SQLModel, table=True):
    __tablename__ = "project_memberships"
    __table_args__ = (
        sa.Index(
            "uq_project_memberships_active",
            "user_id",
            "project_id",
            unique=True,
            postgresql_where=sa.text("is_active"),
            sqlite_where=sa.text("is_active = 1"),
        ),
        sa.CheckConstraint(
            "role IN ('admin', 'supplier_pm', 'customer_pm', 'contributor', 'viewer')",
            name="ck_project_memberships_role",
        ),
    )

    user_id: uuid.UUID = Field(foreign_key="users.id", nullable=False, index=True)
    project_id: uuid.UUID = Field(foreign_key="projects.id", nullable=False, index=True)
    # Denormalised from the project so row filters need no join.
    org_id: uuid.UUID = Field(foreign_key="organisations.id", nullable=False, index=True)
    role: str = Field(default=ProjectRole.VIEWER.value, nullable=False)
    is_active: bool = Field(default=True, nullable=False)
    is_default: bool = Field(default=False, nullable=False)
    added_by: Optional[uuid.UUID] = Field(default=None, foreign_key="users.id")
    deactivated_at: Optional[datetime] = Field(default=None, sa_type=sa.DateTime(timezone=True))

    @property
    def project_role(self) -> ProjectRole:
        return ProjectRole(self.role)
