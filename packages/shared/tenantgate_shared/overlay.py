"""
"View as" impersonation overlay rules.

An overlay only changes the *effective* roles used to decide what the UI
offers. Enforcement always evaluates the real facts, so nothing in this module
is ever consulted by the data-access path.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from tenantgate_shared.decision import AccessFacts, decide
from tenantgate_shared.permissions import (
    ORG_ADMIN_ROLES,
    org_grant_set,
    project_grant_set,
)
from tenantgate_shared.schemas.common import (
    OrgAction,
    OrgResource,
    OrgRole,
    ProjectAction,
    ProjectListing,
    ProjectResource,
    ProjectRole,
    SystemRole,
)

PROJECT_OVERLAY_SETTERS = frozenset({ProjectRole.ADMIN, ProjectRole.SUPPLIER_PM})


@dataclass(frozen=True)
class ImpersonationOverlay:
    org_role: Optional[OrgRole] = None
    project_role: Optional[ProjectRole] = None

    @property
    def is_active(self) -> bool:
        return self.org_role is not None or self.project_role is not None

    def without_project_role(self) -> "ImpersonationOverlay":
        return ImpersonationOverlay(org_role=self.org_role)

    def to_dict(self) -> dict:
        return {
            "org_role": self.org_role.value if self.org_role else None,
            "project_role": self.project_role.value if self.project_role else None,
        }

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "ImpersonationOverlay":
        if not data:
            return cls()
        org_role = data.get("org_role")
        project_role = data.get("project_role")
        return cls(
            org_role=OrgRole(org_role) if org_role else None,
            project_role=ProjectRole(project_role) if project_role else None,
        )


# ---------------------------------------------------------------------------
# Who may set an overlay
# ---------------------------------------------------------------------------

def can_set_org_overlay(facts: AccessFacts) -> bool:
    """Real org role owner/admin, or system admin."""
    if facts.is_system_admin:
        return True
    return facts.has_org_access and facts.org_role in ORG_ADMIN_ROLES


def can_set_project_overlay(facts: AccessFacts) -> bool:
    """Real org role owner/admin, or real project role admin/supplier_pm."""
    if not facts.project_in_org:
        return False
    if facts.is_system_admin:
        return True
    if not facts.has_org_access:
        return False
    return facts.org_role in ORG_ADMIN_ROLES or facts.project_role in PROJECT_OVERLAY_SETTERS


def is_org_downgrade(facts: AccessFacts, role: OrgRole) -> bool:
    """Whether every org action ``role`` allows is also allowed by the real role."""
    if facts.is_system_admin:
        return True
    if not facts.has_org_access:
        return False
    return org_grant_set(role) <= org_grant_set(facts.org_role)


def is_project_downgrade(facts: AccessFacts, role: ProjectRole) -> bool:
    if facts.is_system_admin:
        return True
    if facts.project_role is None:
        return False
    return project_grant_set(role) <= project_grant_set(facts.project_role)


def rejected_parts(facts: AccessFacts, overlay: ImpersonationOverlay) -> list[str]:
    """Names of the overlay halves the principal may not assume (empty when valid)."""
    rejected = []
    if overlay.org_role is not None and not (
        can_set_org_overlay(facts) and is_org_downgrade(facts, overlay.org_role)
    ):
        rejected.append("org_role")
    if overlay.project_role is not None and not (
        can_set_project_overlay(facts) and is_project_downgrade(facts, overlay.project_role)
    ):
        rejected.append("project_role")
    return rejected


def prune_overlay(facts: AccessFacts, overlay: ImpersonationOverlay) -> ImpersonationOverlay:
    """Drop every half of ``overlay`` the principal is no longer allowed to assume."""
    rejected = rejected_parts(facts, overlay)
    return ImpersonationOverlay(
        org_role=None if "org_role" in rejected else overlay.org_role,
        project_role=None if "project_role" in rejected else overlay.project_role,
    )


# ---------------------------------------------------------------------------
# Effective roles and the UI permission map
# ---------------------------------------------------------------------------

def effective_facts(facts: AccessFacts, overlay: ImpersonationOverlay) -> AccessFacts:
    """Facts with overlay roles substituted, for UI gating only.

    A system admin previewing a role is treated as a regular user so the
    preview shows what that role would see.
    """
    if not overlay.is_active:
        return facts
    return facts.with_roles(
        system_role=SystemRole.USER if facts.is_system_admin else None,
        org_role=overlay.org_role,
        project_role=overlay.project_role,
    )


def build_permission_map(facts: AccessFacts) -> dict:
    """Allow/deny for every resource and action, keyed by their string values."""
    permissions: dict = {
        "org": {
            resource.value: {
                action.value: decide(facts, resource, action).allowed for action in OrgAction
            }
            for resource in OrgResource
        },
        "project_visible": False,
        "project": {},
    }
    if facts.project_id is not None:
        permissions["project_visible"] = decide(
            facts, ProjectListing.PROJECT, ProjectAction.VIEW
        ).allowed
        permissions["project"] = {
            resource.value: {
                action.value: decide(facts, resource, action).allowed for action in ProjectAction
            }
            for resource in ProjectResource
        }
    return permissions
