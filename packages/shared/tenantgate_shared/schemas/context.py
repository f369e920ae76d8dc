"""Tenant context and view-as schemas."""

from __future__ import annotations

from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, UUID4, model_validator

from .common import OrgRole, ProjectRole
from .memberships import OrgMembershipSummary
from .projects import AccessibleProject


class ContextState(str, Enum):
    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    READY = "ready"
    NO_ACCESS = "no_access"
    ERROR = "error"


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------

class SwitchOrganisationRequest(BaseModel):
    organisation_id: UUID4


class SwitchProjectRequest(BaseModel):
    project_id: UUID4


class ViewAsRequest(BaseModel):
    org_role: Optional[OrgRole] = None
    project_role: Optional[ProjectRole] = None

    @model_validator(mode="after")
    def _require_one_role(self) -> "ViewAsRequest":
        if self.org_role is None and self.project_role is None:
            raise ValueError("Provide org_role, project_role or both")
        return self


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------

class OverlayRead(BaseModel):
    org_role: Optional[OrgRole] = None
    project_role: Optional[ProjectRole] = None
    is_active: bool = False


class TenantContextRead(BaseModel):
    state: ContextState
    organisation_id: Optional[UUID4] = None
    project_id: Optional[UUID4] = None
    org_role: Optional[OrgRole] = None
    project_role: Optional[ProjectRole] = None
    organisations: List[OrgMembershipSummary] = []
    projects: List[AccessibleProject] = []
    overlay: OverlayRead = OverlayRead()
    error: Optional[str] = None


class PermissionMapRead(BaseModel):
    """Overlay-aware permissions for UI gating. Never used for enforcement."""
    organisation_id: Optional[UUID4] = None
    project_id: Optional[UUID4] = None
    effective_org_role: Optional[OrgRole] = None
    effective_project_role: Optional[ProjectRole] = None
    is_impersonating: bool = False
    can_set_org_overlay: bool = False
    can_set_project_overlay: bool = False
    project_visible: bool = False
    org: Dict[str, Dict[str, bool]] = {}
    project: Dict[str, Dict[str, bool]] = {}


class ViewAsResult(BaseModel):
    applied: bool
    overlay: OverlayRead
