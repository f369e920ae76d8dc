"""Organisation invitation schemas."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, EmailStr, Field, UUID4

from .common import OrgRole, ProjectRole


class InvitationStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    EXPIRED = "expired"
    REVOKED = "revoked"


class ProjectAssignment(BaseModel):
    """A project membership to grant once the invitation is accepted."""
    project_id: UUID4
    role: ProjectRole = ProjectRole.VIEWER


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------

class InvitationCreate(BaseModel):
    email: EmailStr
    role: OrgRole = OrgRole.MEMBER
    project_assignments: List[ProjectAssignment] = Field(default_factory=list)


class InvitationAccept(BaseModel):
    token: str = Field(min_length=16, max_length=128)


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------

class InvitationRead(BaseModel):
    id: UUID4
    org_id: UUID4
    email: str
    role: OrgRole
    status: InvitationStatus
    project_assignments: List[ProjectAssignment] = Field(default_factory=list)
    invited_by: Optional[UUID4] = None
    expires_at: datetime
    accepted_at: Optional[datetime] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class InvitationCreated(BaseModel):
    """Returned to the inviter. The token is shown once, for the accept link."""
    invitation: InvitationRead
    token: str


class InvitationListResponse(BaseModel):
    data: List[InvitationRead]
