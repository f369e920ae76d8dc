"""
Organisation and project permission tables.

Both tables are total: every (role, resource, action) triple has an explicit
entry, and the grant lists below must name every action for every resource.
The tables are the single source both enforcement sites derive from: the pure
decision procedure reads them directly and the SQL predicates and the
PostgreSQL policy functions are rendered from them.

Changing a value here is a product decision, not a runtime branch.
"""

from __future__ import annotations

from typing import Iterable, Optional, Union

from tenantgate_shared.schemas.common import (
    OrgAction,
    OrgResource,
    OrgRole,
    ProjectAction,
    ProjectResource,
    ProjectRole,
)


# ---------------------------------------------------------------------------
# Role groupings
# ---------------------------------------------------------------------------

ALL_ORG_ROLES = frozenset(OrgRole)
ORG_ADMIN_ROLES = frozenset({OrgRole.OWNER, OrgRole.ADMIN})
ORG_OWNER_ONLY = frozenset({OrgRole.OWNER})

ALL_PROJECT_ROLES = frozenset(ProjectRole)
PROJECT_ADMIN_ONLY = frozenset({ProjectRole.ADMIN})
SUPPLIER_SIDE = frozenset({ProjectRole.ADMIN, ProjectRole.SUPPLIER_PM})
CUSTOMER_SIDE = frozenset({ProjectRole.ADMIN, ProjectRole.CUSTOMER_PM})
MANAGERS = frozenset({ProjectRole.ADMIN, ProjectRole.SUPPLIER_PM, ProjectRole.CUSTOMER_PM})
WORKERS = frozenset({ProjectRole.ADMIN, ProjectRole.SUPPLIER_PM, ProjectRole.CONTRIBUTOR})

NOBODY: frozenset = frozenset()


# ---------------------------------------------------------------------------
# Grants: resource -> action -> roles allowed
# ---------------------------------------------------------------------------

ORG_GRANTS: dict[OrgResource, dict[OrgAction, frozenset[OrgRole]]] = {
    OrgResource.ORGANISATION: {
        OrgAction.VIEW: ALL_ORG_ROLES,
        OrgAction.CREATE: NOBODY,
        OrgAction.EDIT: ORG_ADMIN_ROLES,
        OrgAction.DELETE: ORG_OWNER_ONLY,
        OrgAction.MANAGE: ORG_OWNER_ONLY,
        OrgAction.INVITE: NOBODY,
        OrgAction.REMOVE: NOBODY,
    },
    OrgResource.MEMBERS: {
        OrgAction.VIEW: ALL_ORG_ROLES,
        OrgAction.CREATE: NOBODY,
        OrgAction.EDIT: ORG_ADMIN_ROLES,
        OrgAction.DELETE: NOBODY,
        OrgAction.MANAGE: ORG_ADMIN_ROLES,
        OrgAction.INVITE: ORG_ADMIN_ROLES,
        OrgAction.REMOVE: ORG_ADMIN_ROLES,
    },
    OrgResource.SETTINGS: {
        OrgAction.VIEW: ORG_ADMIN_ROLES,
        OrgAction.CREATE: NOBODY,
        OrgAction.EDIT: ORG_ADMIN_ROLES,
        OrgAction.DELETE: NOBODY,
        OrgAction.MANAGE: ORG_OWNER_ONLY,
        OrgAction.INVITE: NOBODY,
        OrgAction.REMOVE: NOBODY,
    },
    OrgResource.BILLING: {
        OrgAction.VIEW: ORG_ADMIN_ROLES,
        OrgAction.CREATE: NOBODY,
        OrgAction.EDIT: ORG_OWNER_ONLY,
        OrgAction.DELETE: NOBODY,
        OrgAction.MANAGE: ORG_OWNER_ONLY,
        OrgAction.INVITE: NOBODY,
        OrgAction.REMOVE: NOBODY,
    },
    OrgResource.ORG_PROJECTS: {
        OrgAction.VIEW: ALL_ORG_ROLES,
        OrgAction.CREATE: ORG_ADMIN_ROLES,
        OrgAction.EDIT: ORG_ADMIN_ROLES,
        OrgAction.DELETE: ORG_ADMIN_ROLES,
        OrgAction.MANAGE: ORG_ADMIN_ROLES,
        OrgAction.INVITE: NOBODY,
        OrgAction.REMOVE: NOBODY,
    },
}

PROJECT_GRANTS: dict[ProjectResource, dict[ProjectAction, frozenset[ProjectRole]]] = {
    ProjectResource.DASHBOARD: {
        ProjectAction.VIEW: ALL_PROJECT_ROLES,
        ProjectAction.CREATE: NOBODY,
        ProjectAction.EDIT: NOBODY,
        ProjectAction.DELETE: NOBODY,
        ProjectAction.SUBMIT: NOBODY,
        ProjectAction.APPROVE: NOBODY,
        ProjectAction.SIGN: NOBODY,
        ProjectAction.EXPORT: MANAGERS,
    },
    ProjectResource.MILESTONES: {
        ProjectAction.VIEW: ALL_PROJECT_ROLES,
        ProjectAction.CREATE: SUPPLIER_SIDE,
        ProjectAction.EDIT: SUPPLIER_SIDE,
        ProjectAction.DELETE: PROJECT_ADMIN_ONLY,
        ProjectAction.SUBMIT: SUPPLIER_SIDE,
        ProjectAction.APPROVE: CUSTOMER_SIDE,
        ProjectAction.SIGN: MANAGERS,
        ProjectAction.EXPORT: MANAGERS,
    },
    ProjectResource.DELIVERABLES: {
        ProjectAction.VIEW: ALL_PROJECT_ROLES,
        ProjectAction.CREATE: WORKERS,
        ProjectAction.EDIT: WORKERS,
        ProjectAction.DELETE: SUPPLIER_SIDE,
        ProjectAction.SUBMIT: WORKERS,
        ProjectAction.APPROVE: CUSTOMER_SIDE,
        ProjectAction.SIGN: CUSTOMER_SIDE,
        ProjectAction.EXPORT: MANAGERS,
    },
    ProjectResource.RESOURCES: {
        ProjectAction.VIEW: ALL_PROJECT_ROLES,
        ProjectAction.CREATE: SUPPLIER_SIDE,
        ProjectAction.EDIT: SUPPLIER_SIDE,
        ProjectAction.DELETE: PROJECT_ADMIN_ONLY,
        ProjectAction.SUBMIT: NOBODY,
        ProjectAction.APPROVE: NOBODY,
        ProjectAction.SIGN: NOBODY,
        ProjectAction.EXPORT: SUPPLIER_SIDE,
    },
    ProjectResource.TIMESHEETS: {
        ProjectAction.VIEW: ALL_PROJECT_ROLES,
        ProjectAction.CREATE: WORKERS,
        ProjectAction.EDIT: WORKERS,
        ProjectAction.DELETE: SUPPLIER_SIDE,
        ProjectAction.SUBMIT: WORKERS,
        ProjectAction.APPROVE: CUSTOMER_SIDE,
        ProjectAction.SIGN: NOBODY,
        ProjectAction.EXPORT: MANAGERS,
    },
    ProjectResource.EXPENSES: {
        ProjectAction.VIEW: ALL_PROJECT_ROLES,
        ProjectAction.CREATE: WORKERS,
        ProjectAction.EDIT: WORKERS,
        ProjectAction.DELETE: SUPPLIER_SIDE,
        ProjectAction.SUBMIT: WORKERS,
        ProjectAction.APPROVE: MANAGERS,
        ProjectAction.SIGN: NOBODY,
        ProjectAction.EXPORT: MANAGERS,
    },
    ProjectResource.FINANCIAL_DOCS: {
        ProjectAction.VIEW: ALL_PROJECT_ROLES,
        ProjectAction.CREATE: MANAGERS,
        ProjectAction.EDIT: SUPPLIER_SIDE,
        ProjectAction.DELETE: PROJECT_ADMIN_ONLY,
        ProjectAction.SUBMIT: SUPPLIER_SIDE,
        ProjectAction.APPROVE: CUSTOMER_SIDE,
        ProjectAction.SIGN: MANAGERS,
        ProjectAction.EXPORT: MANAGERS,
    },
    ProjectResource.PROJECT_SETTINGS: {
        ProjectAction.VIEW: ALL_PROJECT_ROLES,
        ProjectAction.CREATE: NOBODY,
        ProjectAction.EDIT: SUPPLIER_SIDE,
        ProjectAction.DELETE: NOBODY,
        ProjectAction.SUBMIT: NOBODY,
        ProjectAction.APPROVE: NOBODY,
        ProjectAction.SIGN: NOBODY,
        ProjectAction.EXPORT: NOBODY,
    },
    ProjectResource.TEAM: {
        ProjectAction.VIEW: ALL_PROJECT_ROLES,
        ProjectAction.CREATE: SUPPLIER_SIDE,
        ProjectAction.EDIT: SUPPLIER_SIDE,
        ProjectAction.DELETE: SUPPLIER_SIDE,
        ProjectAction.SUBMIT: NOBODY,
        ProjectAction.APPROVE: NOBODY,
        ProjectAction.SIGN: NOBODY,
        ProjectAction.EXPORT: NOBODY,
    },
}


def _expand(grants, roles, resources, actions) -> dict:
    """Expand a grant list into a total role -> resource -> action -> bool table."""
    table: dict = {}
    for role in roles:
        table[role] = {}
        for resource in resources:
            row = grants.get(resource)
            if row is None:
                raise ValueError(f"No grants declared for resource {resource.value!r}")
            missing = [a.value for a in actions if a not in row]
            if missing:
                raise ValueError(
                    f"Grants for {resource.value!r} omit actions: {', '.join(missing)}"
                )
            table[role][resource] = {action: role in row[action] for action in actions}
    return table


ORG_TABLE: dict[OrgRole, dict[OrgResource, dict[OrgAction, bool]]] = _expand(
    ORG_GRANTS, OrgRole, OrgResource, OrgAction
)
PROJECT_TABLE: dict[ProjectRole, dict[ProjectResource, dict[ProjectAction, bool]]] = _expand(
    PROJECT_GRANTS, ProjectRole, ProjectResource, ProjectAction
)


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------

def has_org_permission(
    role: Optional[Union[OrgRole, str]],
    resource: Union[OrgResource, str],
    action: Union[OrgAction, str],
) -> bool:
    """Return whether ``role`` may perform ``action`` on an organisation resource.

    ``None`` (no membership) is never allowed. Unknown role, resource or action
    names raise ``ValueError``.
    """
    if role is None:
        return False
    return ORG_TABLE[OrgRole(role)][OrgResource(resource)][OrgAction(action)]


def has_project_permission(
    role: Optional[Union[ProjectRole, str]],
    resource: Union[ProjectResource, str],
    action: Union[ProjectAction, str],
) -> bool:
    """Return whether ``role`` may perform ``action`` on a project resource."""
    if role is None:
        return False
    return PROJECT_TABLE[ProjectRole(role)][ProjectResource(resource)][ProjectAction(action)]


def org_roles_allowing(resource: OrgResource, action: OrgAction) -> list[OrgRole]:
    """Roles granted ``action`` on ``resource``, in declaration order."""
    return [role for role in OrgRole if ORG_TABLE[role][resource][action]]


def project_roles_allowing(resource: ProjectResource, action: ProjectAction) -> list[ProjectRole]:
    return [role for role in ProjectRole if PROJECT_TABLE[role][resource][action]]


def org_grant_set(role: OrgRole) -> frozenset[tuple[OrgResource, OrgAction]]:
    """Every (resource, action) pair ``role`` is allowed."""
    return frozenset(
        (resource, action)
        for resource, actions in ORG_TABLE[role].items()
        for action, allowed in actions.items()
        if allowed
    )


def project_grant_set(role: ProjectRole) -> frozenset[tuple[ProjectResource, ProjectAction]]:
    return frozenset(
        (resource, action)
        for resource, actions in PROJECT_TABLE[role].items()
        for action, allowed in actions.items()
        if allowed
    )


def iter_allowed_triples(table: dict) -> Iterable[tuple[str, str, str]]:
    """Yield ``(resource, action, role)`` string triples for every allowed entry."""
    for role, resources in table.items():
        for resource, actions in resources.items():
            for action, allowed in actions.items():
                if allowed:
                    yield resource.value, action.value, role.value


# ---------------------------------------------------------------------------
# Role assignment
# ---------------------------------------------------------------------------

# Which org roles a holder of the key role may hand out. Admins never touch
# owners: they cannot promote to, demote or remove one.
ASSIGNABLE_ORG_ROLES: dict[OrgRole, frozenset[OrgRole]] = {
    OrgRole.OWNER: frozenset({OrgRole.OWNER, OrgRole.ADMIN, OrgRole.MEMBER}),
    OrgRole.ADMIN: frozenset({OrgRole.ADMIN, OrgRole.MEMBER}),
    OrgRole.MEMBER: frozenset(),
}


def can_assign_org_role(assigner: Optional[OrgRole], target_current: Optional[OrgRole], new_role: OrgRole) -> bool:
    """Whether ``assigner`` may move a membership from ``target_current`` to ``new_role``.

    ``target_current`` is ``None`` when a membership is being created.
    """
    if assigner is None:
        return False
    allowed = ASSIGNABLE_ORG_ROLES[assigner]
    if new_role not in allowed:
        return False
    if target_current is not None and target_current not in allowed:
        return False
    return True


def can_remove_org_member(remover: Optional[OrgRole], target: OrgRole) -> bool:
    if remover is None or not ORG_TABLE[remover][OrgResource.MEMBERS][OrgAction.REMOVE]:
        return False
    return target in ASSIGNABLE_ORG_ROLES[remover]


# ---------------------------------------------------------------------------
# Organisation settings sections
# ---------------------------------------------------------------------------

SETTINGS_SECTION_PERMISSIONS: dict[str, tuple[OrgResource, OrgAction]] = {
    "features": (OrgResource.SETTINGS, OrgAction.MANAGE),
    "limits": (OrgResource.SETTINGS, OrgAction.MANAGE),
    "defaults": (OrgResource.SETTINGS, OrgAction.EDIT),
    "branding": (OrgResource.SETTINGS, OrgAction.EDIT),
    "billing": (OrgResource.BILLING, OrgAction.EDIT),
}
