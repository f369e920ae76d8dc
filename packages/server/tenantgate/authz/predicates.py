"""
The decision procedure rendered as a SQLAlchemy boolean expression.

Every role list comes from the shared permission tables, so this clause and
``tenantgate_shared.decision.decide`` cannot drift apart by hand-editing one
of them. ``org_id`` and ``project_id`` may be literal values (a point check)
or columns of an outer query (a row filter); inner tables are aliased so only
genuine outer references correlate.
"""

from __future__ import annotations

import uuid
from typing import Any, Iterable, Optional, Union

import sqlalchemy as sa
from sqlalchemy.orm import aliased
from sqlmodel import select

from tenantgate_shared.permissions import (
    ORG_ADMIN_ROLES,
    org_roles_allowing,
    project_roles_allowing,
)
from tenantgate_shared.schemas.common import (
    Action,
    OrgResource,
    OrgRole,
    ProjectAction,
    ProjectListing,
    ProjectRole,
    Resource,
    SystemRole,
    normalise_request,
)

from tenantgate.models.org_membership import OrgMembership
from tenantgate.models.organisation import Organisation
from tenantgate.models.project import Project
from tenantgate.models.project_membership import ProjectMembership
from tenantgate.models.user import User

# A literal id or a column expression from an enclosing query.
IdExpr = Union[uuid.UUID, Any]


def is_system_admin(principal_id: IdExpr) -> sa.ColumnElement[bool]:
    u = aliased(User)
    return (
        select(u.id)
        .where(u.id == principal_id, u.system_role == SystemRole.SYSTEM_ADMIN.value)
        .exists()
    )


def org_member(
    principal_id: IdExpr,
    org_id: IdExpr,
    roles: Optional[Iterable[OrgRole]] = None,
) -> sa.ColumnElement[bool]:
    """Active membership in an active, non-deleted organisation, optionally role-restricted."""
    m = aliased(OrgMembership)
    o = aliased(Organisation)
    stmt = (
        select(m.id)
        .join(o, o.id == m.org_id)
        .where(
            m.user_id == principal_id,
            m.org_id == org_id,
            m.is_active.is_(True),
            o.is_active.is_(True),
            o.is_deleted.is_(False),
        )
    )
    if roles is not None:
        values = sorted(r.value for r in roles)
        if not values:
            return sa.false()
        stmt = stmt.where(m.role.in_(values))
    return stmt.exists()


def project_available(org_id: IdExpr, project_id: Optional[IdExpr]) -> sa.ColumnElement[bool]:
    """The project exists, is not deleted and belongs to ``org_id``."""
    if project_id is None:
        return sa.false()
    p = aliased(Project)
    return (
        select(p.id)
        .where(p.id == project_id, p.org_id == org_id, p.is_deleted.is_(False))
        .exists()
    )


def project_member(
    principal_id: IdExpr,
    org_id: IdExpr,
    project_id: Optional[IdExpr],
    roles: Optional[Iterable[ProjectRole]] = None,
) -> sa.ColumnElement[bool]:
    """Active membership of a live project that belongs to ``org_id``."""
    if project_id is None:
        return sa.false()
    pm = aliased(ProjectMembership)
    p = aliased(Project)
    stmt = (
        select(pm.id)
        .join(p, p.id == pm.project_id)
        .where(
            pm.user_id == principal_id,
            pm.project_id == project_id,
            pm.is_active.is_(True),
            p.org_id == org_id,
            p.is_deleted.is_(False),
        )
    )
    if roles is not None:
        values = sorted(r.value for r in roles)
        if not values:
            return sa.false()
        stmt = stmt.where(pm.role.in_(values))
    return stmt.exists()


def decision_clause(
    principal_id: IdExpr,
    org_id: IdExpr,
    project_id: Optional[IdExpr],
    resource: Union[str, Resource],
    action: Union[str, Action],
) -> sa.ColumnElement[bool]:
    """Boolean SQL expression that is true exactly when ``decide`` would allow."""
    resource, action = normalise_request(resource, action)

    if isinstance(resource, OrgResource):
        branch = org_member(principal_id, org_id, org_roles_allowing(resource, action))
    elif isinstance(resource, ProjectListing):
        if action is not ProjectAction.VIEW:
            branch = sa.false()
        else:
            branch = sa.and_(
                project_available(org_id, project_id),
                sa.or_(
                    org_member(principal_id, org_id, ORG_ADMIN_ROLES),
                    sa.and_(
                        org_member(principal_id, org_id),
                        project_member(principal_id, org_id, project_id),
                    ),
                ),
            )
    else:
        branch = sa.and_(
            org_member(principal_id, org_id),
            project_member(
                principal_id, org_id, project_id, project_roles_allowing(resource, action)
            ),
        )

    return sa.or_(is_system_admin(principal_id), branch)


def scoped_select(
    entity: Any,
    principal_id: uuid.UUID,
    resource: Union[str, Resource],
    action: Union[str, Action] = "view",
    *,
    org_id: Optional[IdExpr] = None,
    project_id: Optional[IdExpr] = None,
):
    """``SELECT entity`` filtered to the rows ``principal_id`` may act on.

    ``org_id`` / ``project_id`` default to the entity's own ``org_id`` and
    ``project_id`` columns. Denied rows are simply absent.
    """
    org_expr = org_id if org_id is not None else entity.org_id
    project_expr = project_id if project_id is not None else getattr(entity, "project_id", None)
    return select(entity).where(
        decision_clause(principal_id, org_expr, project_expr, resource, action)
    )
