"""
The authorization decision procedure, as a pure function over membership facts.

Callers gather the facts for one (principal, organisation, project) triple and
ask ``decide`` about any number of (resource, action) pairs. The same
procedure is rendered into SQL by ``tenantgate.authz``; the two must agree on
every input.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, replace
from typing import Optional, Union

from tenantgate_shared.permissions import (
    ORG_ADMIN_ROLES,
    has_org_permission,
    has_project_permission,
)
from tenantgate_shared.schemas.common import (
    Action,
    Decision,
    OrgResource,
    OrgRole,
    ProjectAction,
    ProjectListing,
    ProjectRole,
    Resource,
    SystemRole,
    normalise_request,
)


@dataclass(frozen=True)
class AccessFacts:
    """Membership facts for one principal about one organisation and optional project.

    ``org_role`` is ``None`` when the principal has no active membership.
    ``org_available`` is false for an inactive or soft-deleted organisation.
    ``project_in_org`` is true only when the project exists, is not deleted and
    belongs to ``org_id``. ``project_role`` is the role of an *active* project
    membership, and is ``None`` whenever ``project_in_org`` is false.
    """

    principal_id: uuid.UUID
    system_role: SystemRole
    org_id: uuid.UUID
    org_role: Optional[OrgRole] = None
    org_available: bool = True
    project_id: Optional[uuid.UUID] = None
    project_in_org: bool = False
    project_role: Optional[ProjectRole] = None

    @property
    def is_system_admin(self) -> bool:
        return self.system_role == SystemRole.SYSTEM_ADMIN

    @property
    def has_org_access(self) -> bool:
        return self.org_role is not None and self.org_available

    def with_roles(
        self,
        *,
        system_role: Optional[SystemRole] = None,
        org_role: Optional[OrgRole] = None,
        project_role: Optional[ProjectRole] = None,
    ) -> "AccessFacts":
        """Copy with some roles replaced; ``None`` keeps the current value."""
        changes: dict = {}
        if system_role is not None:
            changes["system_role"] = system_role
        if org_role is not None:
            changes["org_role"] = org_role
        if project_role is not None and self.project_in_org:
            changes["project_role"] = project_role
        return replace(self, **changes)


def decide(
    facts: AccessFacts,
    resource: Union[str, Resource],
    action: Union[str, Action],
) -> Decision:
    """Decide whether the principal described by ``facts`` may act on ``resource``."""
    resource, action = normalise_request(resource, action)

    # 1. System admins satisfy every check.
    if facts.is_system_admin:
        return Decision.ALLOW

    # 2. No active membership in an available organisation hides the tenant.
    if not facts.has_org_access:
        return Decision.DENY

    # 3. Organisation-scoped resources.
    if isinstance(resource, OrgResource):
        return _verdict(has_org_permission(facts.org_role, resource, action))

    # 4. Project existence: org-wide visibility for owners/admins, else membership.
    if isinstance(resource, ProjectListing):
        if action is not ProjectAction.VIEW or not facts.project_in_org:
            return Decision.DENY
        return _verdict(facts.org_role in ORG_ADMIN_ROLES or facts.project_role is not None)

    # 5. Project data always needs a project membership, whatever the org role.
    if not facts.project_in_org or facts.project_role is None:
        return Decision.DENY
    return _verdict(has_project_permission(facts.project_role, resource, action))


def _verdict(allowed: bool) -> Decision:
    return Decision.ALLOW if allowed else Decision.DENY
