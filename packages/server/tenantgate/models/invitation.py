"""Pending organisation invitations."""

from datetime import datetime
from typing import Optional
import uuid

import sqlalchemy as sa
from sqlmodel import Field, SQLModel

from tenantgate_shared.schemas.common import OrgRole
from tenantgate_shared.schemas.invitations import InvitationStatus

from .base import JSONType, TimestampMixin, UUIDMixin


class OrgInvitation(UUIDMixin, TimestampMixin, SQLModel, table=True):
    __tablename__ = "org_invitations"
    __table_args__ = (
        sa.Index(
            "uq_org_invitations_pending_email",
            "org_id",
            "email",
            unique=True,
            postgresql_where=sa.text("status = 'pending'"),
            sqlite_where=sa.text("status = 'pending'"),
        ),
    )

    org_id: uuid.UUID = Field(foreign_key="organisations.id", nullable=False, index=True)
    email: str = Field(nullable=False, index=True)  # stored lower-cased
    role: str = Field(default=OrgRole.MEMBER.value, nullable=False)
    token: str = Field(unique=True, nullable=False, index=True)
    status: str = Field(default=InvitationStatus.PENDING.value, nullable=False)
    # [{"project_id": "...", "role": "viewer"}, ...]
    project_assignments: list = Field(default_factory=list, sa_type=JSONType, nullable=False)
    invited_by: Optional[uuid.UUID] = Field(default=None, foreign_key="users.id")
    expires_at: datetime = Field(nullable=False, sa_type=sa.DateTime(timezone=True))
    accepted_at: Optional[datetime] = Field(default=None, sa_type=sa.DateTime(timezone=True))
    accepted_by: Optional[uuid.UUID] = Field(default=None, foreign_key="users.id")
