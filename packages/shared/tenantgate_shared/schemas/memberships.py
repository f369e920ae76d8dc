"""Organisation and project membership schemas."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, UUID4

from .common import OrgRole, ProjectRole


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------

class OrgMemberAdd(BaseModel):
    """Add an existing principal to the organisation directly."""
    user_id: UUID4
    role: OrgRole = OrgRole.MEMBER


class OrgRoleChange(BaseModel):
    role: OrgRole


class ProjectMemberAdd(BaseModel):
    user_id: UUID4
    role: ProjectRole = ProjectRole.VIEWER


class ProjectRoleChange(BaseModel):
    role: ProjectRole


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------

class OrgMemberRead(BaseModel):
    id: UUID4
    org_id: UUID4
    user_id: UUID4
    role: OrgRole
    is_active: bool
    is_default: bool
    email: Optional[str] = None
    display_name: Optional[str] = None
    invited_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class OrgMemberListResponse(BaseModel):
    data: List[OrgMemberRead]


class ProjectMemberRead(BaseModel):
    id: UUID4
    project_id: UUID4
    org_id: UUID4
    user_id: UUID4
    role: ProjectRole
    is_active: bool
    is_default: bool
    email: Optional[str] = None
    display_name: Optional[str] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class ProjectMemberListResponse(BaseModel):
    data: List[ProjectMemberRead]


class OrgMembershipSummary(BaseModel):
    """One of the principal's own organisation memberships, as the tenant context sees it."""
    org_id: UUID4
    name: str
    slug: str
    role: OrgRole
    is_default: bool = False
