"""Append-only audit log."""

from datetime import datetime
from typing import Optional
import uuid

import sqlalchemy as sa
from sqlmodel import Field, SQLModel

from .base import JSONType, UUIDMixin, _utcnow


class AuditEntry(UUIDMixin, SQLModel, table=True):
    __tablename__ = "audit_log"

    org_id: Optional[uuid.UUID] = Field(default=None, foreign_key="organisations.id", index=True)
    project_id: Optional[uuid.UUID] = Field(default=None, foreign_key="projects.id")
    actor_id: Optional[uuid.UUID] = Field(default=None, foreign_key="users.id", index=True)
    action: str = Field(nullable=False, index=True)  # e.g. "member.role_changed"
    target_type: Optional[str] = None
    target_id: Optional[uuid.UUID] = None
    details: dict = Field(default_factory=dict, sa_type=JSONType, nullable=False)
    impersonating: bool = Field(default=False, nullable=False)
    created_at: datetime = Field(
        default_factory=_utcnow,
        nullable=False,
        sa_column_kwargs={"server_default": sa.func.now()},
        sa_type=sa.DateTime(timezone=True),
    )
