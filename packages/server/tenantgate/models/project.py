"""Project model. A project's organisation never changes after creation."""

from typing import Optional
import uuid

import sqlalchemy as sa
from sqlmodel import Field, SQLModel

from tenantgate_shared.schemas.projects import ProjectStatus

from .base import SoftDeleteMixin, TimestampMixin, UUIDMixin


class Project(UUIDMixin, TimestampMixin, SoftDeleteMixin, SQLModel, table=True):
    __tablename__ = "projects"
    __table_args__ = (
        sa.Index(
            "uq_projects_org_reference",
            "org_id",
            "reference",
            unique=True,
            postgresql_where=sa.text("NOT is_deleted"),
            sqlite_where=sa.text("is_deleted = 0"),
        ),
    )

    org_id: uuid.UUID = Field(foreign_key="organisations.id", nullable=False, index=True)
    name: str = Field(nullable=False)
    reference: str = Field(nullable=False)
    description: Optional[str] = None
    status: str = Field(default=ProjectStatus.ACTIVE.value, nullable=False)
    created_by: Optional[uuid.UUID] = Field(default=None, foreign_key="users.id")
