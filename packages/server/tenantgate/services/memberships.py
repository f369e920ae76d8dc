"""
Role & Membership Store: organisation and project memberships.

Reads return active memberships only. Every write re-checks its invariants
inside the caller's transaction, locking the rows the check depends on:

- a project membership needs an active membership in the project's
  organisation (``PrerequisiteMissing``);
- an organisation keeps at least one active owner (``LastOwnerProtected``);
- org roles are assigned under ``ASSIGNABLE_ORG_ROLES``.

Memberships are deactivated, never deleted. Each write marks the affected
principal's tenant-scoped cache stale; it is flushed after commit.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Optional

import structlog
from sqlalchemy import func, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from tenantgate_shared.decision import AccessFacts
from tenantgate_shared.permissions import (
    can_assign_org_role,
    can_remove_org_member,
)
from tenantgate_shared.schemas.common import (
    OrgAction,
    OrgResource,
    OrgRole,
    ProjectAction,
    ProjectListing,
    ProjectResource,
    ProjectRole,
)
from tenantgate_shared.schemas.memberships import OrgMembershipSummary
from tenantgate_shared.schemas.organisations import OrgSettings
from tenantgate_shared.schemas.projects import AccessibleProject

from tenantgate.authz.facts import load_access_facts
from tenantgate.authz.guard import AccessGuard
from tenantgate.authz.predicates import scoped_select
from tenantgate.core.audit import record_audit
from tenantgate.core.auth import Principal
from tenantgate.core.cache import mark_subject_stale
from tenantgate.core.errors import (
    Conflict,
    Denied,
    LastOwnerProtected,
    NotFound,
    PrerequisiteMissing,
)
from tenantgate.models.org_membership import OrgMembership
from tenantgate.models.organisation import Organisation
from tenantgate.models.project import Project
from tenantgate.models.project_membership import ProjectMembership
from tenantgate.models.user import User

log = structlog.get_logger()


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

async def get_org_membership(
    principal_id: uuid.UUID, org_id: uuid.UUID, session: AsyncSession
) -> Optional[OrgMembership]:
    """The principal's active membership in ``org_id``, or None."""
    result = await session.execute(
        select(OrgMembership).where(
            OrgMembership.user_id == principal_id,
            OrgMembership.org_id == org_id,
            OrgMembership.is_active.is_(True),
        )
    )
    return result.scalar_one_or_none()


async def get_project_membership(
    principal_id: uuid.UUID, project_id: uuid.UUID, session: AsyncSession
) -> Optional[ProjectMembership]:
    result = await session.execute(
        select(ProjectMembership).where(
            ProjectMembership.user_id == principal_id,
            ProjectMembership.project_id == project_id,
            ProjectMembership.is_active.is_(True),
        )
    )
    return result.scalar_one_or_none()


async def list_orgs_for(
    principal_id: uuid.UUID, session: AsyncSession
) -> list[OrgMembershipSummary]:
    """Active memberships in active, non-deleted organisations, oldest first."""
    result = await session.execute(
        select(OrgMembership, Organisation)
        .join(Organisation, Organisation.id == OrgMembership.org_id)
        .where(
            OrgMembership.user_id == principal_id,
            OrgMembership.is_active.is_(True),
            Organisation.is_active.is_(True),
            Organisation.is_deleted.is_(False),
        )
        .order_by(OrgMembership.created_at, Organisation.name)
    )
    return [
        OrgMembershipSummary(
            org_id=org.id,
            name=org.name,
            slug=org.slug,
            role=membership.org_role,
            is_default=membership.is_default,
        )
        for membership, org in result.all()
    ]


async def list_org_accessible_projects(
    org_id: uuid.UUID, principal_id: uuid.UUID, session: AsyncSession
) -> list[AccessibleProject]:
    """Projects of ``org_id`` the principal may see.

    Organisation owners/admins see every project; everyone else sees the
    projects they are members of. The filter is the project-listing decision
    clause, so denied projects are simply absent.
    """
    stmt = (
        scoped_select(
            Project,
            principal_id,
            ProjectListing.PROJECT,
            ProjectAction.VIEW,
            org_id=Project.org_id,
            project_id=Project.id,
        )
        .where(Project.org_id == org_id, Project.is_deleted.is_(False))
        .order_by(Project.name)
    )
    projects = (await session.execute(stmt)).scalars().all()
    if not projects:
        return []

    result = await session.execute(
        select(ProjectMembership).where(
            ProjectMembership.user_id == principal_id,
            ProjectMembership.project_id.in_([p.id for p in projects]),
            ProjectMembership.is_active.is_(True),
        )
    )
    memberships = {m.project_id: m for m in result.scalars().all()}
    return [
        AccessibleProject(
            id=p.id,
            org_id=p.org_id,
            name=p.name,
            reference=p.reference,
            status=p.status,
            membership_role=memberships[p.id].project_role if p.id in memberships else None,
            is_default=memberships[p.id].is_default if p.id in memberships else False,
        )
        for p in projects
    ]


async def list_org_members(
    org_id: uuid.UUID, actor: Principal, session: AsyncSession
) -> list[dict]:
    """Active members of an organisation, for principals allowed to view members."""
    await AccessGuard(session, actor.user_id).require_visible(
        org_id, None, OrgResource.MEMBERS, "Organisation not found"
    )
    result = await session.execute(
        select(OrgMembership, User)
        .join(User, User.id == OrgMembership.user_id)
        .where(OrgMembership.org_id == org_id, OrgMembership.is_active.is_(True))
        .order_by(User.display_name)
    )
    return [_org_member_dict(m, u) for m, u in result.all()]


async def list_project_members(
    project_id: uuid.UUID, actor: Principal, session: AsyncSession
) -> list[dict]:
    project = await _get_live_project(project_id, session)
    guard = AccessGuard(session, actor.user_id)
    if not (
        await guard.allows(project.org_id, project.id, ProjectResource.TEAM, ProjectAction.VIEW)
        or await guard.allows(project.org_id, None, OrgResource.ORG_PROJECTS, OrgAction.MANAGE)
    ):
        raise NotFound("Project not found")
    result = await session.execute(
        select(ProjectMembership, User)
        .join(User, User.id == ProjectMembership.user_id)
        .where(ProjectMembership.project_id == project_id, ProjectMembership.is_active.is_(True))
        .order_by(User.display_name)
    )
    return [_project_member_dict(m, u) for m, u in result.all()]


class MembershipDirectory:
    """Membership lookups for the tenant context, bound to one session."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def organisations_for(self, principal_id: uuid.UUID) -> list[OrgMembershipSummary]:
        return await list_orgs_for(principal_id, self.session)

    async def projects_for(
        self, org_id: uuid.UUID, principal_id: uuid.UUID
    ) -> list[AccessibleProject]:
        return await list_org_accessible_projects(org_id, principal_id, self.session)

    async def access_facts(
        self,
        principal_id: uuid.UUID,
        org_id: uuid.UUID,
        project_id: Optional[uuid.UUID] = None,
    ) -> AccessFacts:
        return await load_access_facts(self.session, principal_id, org_id, project_id)


# ---------------------------------------------------------------------------
# Organisation membership writes
# ---------------------------------------------------------------------------

async def _check_member_limit(org_id: uuid.UUID, session: AsyncSession) -> None:
    org = await session.get(Organisation, org_id)
    if org is None:
        raise NotFound("Organisation not found")
    limits = OrgSettings.model_validate(org.settings or {}).limits
    if limits.max_members is None:
        return
    active = await session.scalar(
        select(func.count()).select_from(OrgMembership).where(
            OrgMembership.org_id == org_id, OrgMembership.is_active.is_(True)
        )
    )
    if active >= limits.max_members:
        raise Conflict(f"Organisation is limited to {limits.max_members} members")


async def insert_org_membership(
    user_id: uuid.UUID,
    org_id: uuid.UUID,
    role: OrgRole,
    session: AsyncSession,
    *,
    invited_by: Optional[uuid.UUID] = None,
    invited_at: Optional[datetime] = None,
) -> OrgMembership:
    """Create an active membership. Callers have already authorized the write."""
    existing = await session.execute(
        select(OrgMembership)
        .where(
            OrgMembership.user_id == user_id,
            OrgMembership.org_id == org_id,
            OrgMembership.is_active.is_(True),
        )
        .with_for_update()
    )
    if existing.scalar_one_or_none():
        raise Conflict("User is already a member of this organisation")
    await _check_member_limit(org_id, session)

    has_default = await session.scalar(
        select(OrgMembership.id).where(
            OrgMembership.user_id == user_id,
            OrgMembership.is_active.is_(True),
            OrgMembership.is_default.is_(True),
        )
    )
    now = _now()
    membership = OrgMembership(
        user_id=user_id,
        org_id=org_id,
        role=role.value,
        is_active=True,
        is_default=has_default is None,
        invited_by=invited_by,
        invited_at=invited_at,
        accepted_at=now,
    )
    session.add(membership)
    await session.flush()
    mark_subject_stale(session, user_id)
    log.info("membership.org_added", org_id=str(org_id), user_id=str(user_id), role=role.value)
    return membership


async def add_org_member(
    org_id: uuid.UUID,
    user_id: uuid.UUID,
    role: OrgRole,
    actor: Principal,
    session: AsyncSession,
) -> OrgMembership:
    """Add an existing principal to an organisation directly."""
    guard = AccessGuard(session, actor.user_id)
    await guard.require(org_id, None, OrgResource.MEMBERS, OrgAction.INVITE)
    facts = await guard.facts(org_id)
    if not facts.is_system_admin and not can_assign_org_role(facts.org_role, None, role):
        raise Denied(f"Your role cannot grant the {role.value} role")

    user = await session.get(User, user_id)
    if user is None:
        raise NotFound("User not found")

    membership = await insert_org_membership(
        user_id, org_id, role, session, invited_by=actor.user_id, invited_at=_now()
    )
    await record_audit(
        session,
        "member.added",
        actor_id=actor.user_id,
        org_id=org_id,
        target_type="org_membership",
        target_id=membership.id,
        details={"user_id": str(user_id), "role": role.value},
    )
    return membership


async def _lock_org_membership(
    org_id: uuid.UUID, membership_id: uuid.UUID, session: AsyncSession
) -> OrgMembership:
    result = await session.execute(
        select(OrgMembership)
        .where(
            OrgMembership.id == membership_id,
            OrgMembership.org_id == org_id,
            OrgMembership.is_active.is_(True),
        )
        .with_for_update()
    )
    membership = result.scalar_one_or_none()
    if membership is None:
        raise NotFound("Membership not found")
    return membership


async def _ensure_not_last_owner(membership: OrgMembership, session: AsyncSession) -> None:
    """Reject losing ``membership``'s owner role if it is the organisation's only owner."""
    if membership.org_role is not OrgRole.OWNER:
        return
    result = await session.execute(
        select(OrgMembership.id)
        .where(
            OrgMembership.org_id == membership.org_id,
            OrgMembership.role == OrgRole.OWNER.value,
            OrgMembership.is_active.is_(True),
        )
        .with_for_update()
    )
    if len(result.scalars().all()) <= 1:
        raise LastOwnerProtected(
            "Cannot remove or demote the last owner; promote another owner first"
        )


async def change_org_role(
    org_id: uuid.UUID,
    membership_id: uuid.UUID,
    new_role: OrgRole,
    actor: Principal,
    session: AsyncSession,
) -> OrgMembership:
    guard = AccessGuard(session, actor.user_id)
    await guard.require(org_id, None, OrgResource.MEMBERS, OrgAction.MANAGE)
    membership = await _lock_org_membership(org_id, membership_id, session)
    old_role = membership.org_role
    if old_role is new_role:
        return membership

    facts = await guard.facts(org_id)
    if not facts.is_system_admin and not can_assign_org_role(facts.org_role, old_role, new_role):
        raise Denied(f"Your role cannot change a {old_role.value} to {new_role.value}")
    if new_role is not OrgRole.OWNER:
        await _ensure_not_last_owner(membership, session)

    membership.role = new_role.value
    membership.updated_at = _now()
    session.add(membership)
    await session.flush()
    mark_subject_stale(session, membership.user_id)

    await record_audit(
        session,
        "member.role_changed",
        actor_id=actor.user_id,
        org_id=org_id,
        target_type="org_membership",
        target_id=membership.id,
        details={"from": old_role.value, "to": new_role.value},
    )
    log.info(
        "membership.org_role_changed",
        org_id=str(org_id),
        user_id=str(membership.user_id),
        old_role=old_role.value,
        new_role=new_role.value,
    )
    return membership


async def remove_org_member(
    org_id: uuid.UUID,
    membership_id: uuid.UUID,
    actor: Principal,
    session: AsyncSession,
) -> OrgMembership:
    """Deactivate an org membership and every project membership it enabled."""
    guard = AccessGuard(session, actor.user_id)
    await guard.require(org_id, None, OrgResource.MEMBERS, OrgAction.REMOVE)
    membership = await _lock_org_membership(org_id, membership_id, session)

    facts = await guard.facts(org_id)
    if not facts.is_system_admin and not can_remove_org_member(facts.org_role, membership.org_role):
        raise Denied(f"Your role cannot remove a {membership.role}")
    await _ensure_not_last_owner(membership, session)

    now = _now()
    membership.is_active = False
    membership.is_default = False
    membership.deactivated_at = now
    membership.updated_at = now
    session.add(membership)

    # Project access never outlives organisation access.
    await session.execute(
        update(ProjectMembership)
        .where(
            ProjectMembership.user_id == membership.user_id,
            ProjectMembership.org_id == org_id,
            ProjectMembership.is_active.is_(True),
        )
        .values(is_active=False, is_default=False, deactivated_at=now, updated_at=now)
        .execution_options(synchronize_session="fetch")
    )
    await session.flush()
    mark_subject_stale(session, membership.user_id)

    await record_audit(
        session,
        "member.removed",
        actor_id=actor.user_id,
        org_id=org_id,
        target_type="org_membership",
        target_id=membership.id,
        details={"user_id": str(membership.user_id), "role": membership.role},
    )
    log.info("membership.org_removed", org_id=str(org_id), user_id=str(membership.user_id))
    return membership


async def set_default_organisation(
    org_id: uuid.UUID, principal: Principal, session: AsyncSession
) -> OrgMembership:
    """Make ``org_id`` the principal's default; at most one default per principal."""
    membership = await get_org_membership(principal.user_id, org_id, session)
    if membership is None:
        raise NotFound("Organisation not found")
    await session.execute(
        update(OrgMembership)
        .where(OrgMembership.user_id == principal.user_id, OrgMembership.id != membership.id)
        .values(is_default=False)
        .execution_options(synchronize_session="fetch")
    )
    membership.is_default = True
    session.add(membership)
    await session.flush()
    mark_subject_stale(session, principal.user_id)
    return membership


# ---------------------------------------------------------------------------
# Project membership writes
# ---------------------------------------------------------------------------

async def _get_live_project(project_id: uuid.UUID, session: AsyncSession) -> Project:
    project = await session.get(Project, project_id)
    if project is None or project.is_deleted:
        raise NotFound("Project not found")
    return project


async def _require_staffing(
    guard: AccessGuard, project: Project, team_action: ProjectAction
) -> None:
    """Staffing is allowed to org owners/admins, or by the project's team permissions."""
    if await guard.allows(project.org_id, None, OrgResource.ORG_PROJECTS, OrgAction.MANAGE):
        return
    if await guard.allows(project.org_id, project.id, ProjectResource.TEAM, team_action):
        return
    if not await guard.allows(project.org_id, project.id, ProjectListing.PROJECT, ProjectAction.VIEW):
        raise NotFound("Project not found")
    raise Denied("You cannot manage this project's team")


async def insert_project_membership(
    user_id: uuid.UUID,
    project: Project,
    role: ProjectRole,
    session: AsyncSession,
    *,
    added_by: Optional[uuid.UUID] = None,
) -> ProjectMembership:
    """Create an active project membership after re-checking the org prerequisite.

    The organisation membership row is locked so a concurrent removal cannot
    slip between the check and the insert.
    """
    org_membership = await session.execute(
        select(OrgMembership)
        .where(
            OrgMembership.user_id == user_id,
            OrgMembership.org_id == project.org_id,
            OrgMembership.is_active.is_(True),
        )
        .with_for_update()
    )
    if org_membership.scalar_one_or_none() is None:
        raise PrerequisiteMissing(
            "User must be an active member of the project's organisation first"
        )

    existing = await get_project_membership(user_id, project.id, session)
    if existing is not None:
        raise Conflict("User is already a member of this project")

    has_default = await session.scalar(
        select(ProjectMembership.id).where(
            ProjectMembership.user_id == user_id,
            ProjectMembership.org_id == project.org_id,
            ProjectMembership.is_active.is_(True),
            ProjectMembership.is_default.is_(True),
        )
    )
    membership = ProjectMembership(
        user_id=user_id,
        project_id=project.id,
        org_id=project.org_id,
        role=role.value,
        is_active=True,
        is_default=has_default is None,
        added_by=added_by,
    )
    session.add(membership)
    await session.flush()
    mark_subject_stale(session, user_id)
    log.info(
        "membership.project_added",
        project_id=str(project.id),
        user_id=str(user_id),
        role=role.value,
    )
    return membership


async def add_project_member(
    project_id: uuid.UUID,
    user_id: uuid.UUID,
    role: ProjectRole,
    actor: Principal,
    session: AsyncSession,
) -> ProjectMembership:
    project = await _get_live_project(project_id, session)
    await _require_staffing(AccessGuard(session, actor.user_id), project, ProjectAction.CREATE)
    membership = await insert_project_membership(
        user_id, project, role, session, added_by=actor.user_id
    )
    await record_audit(
        session,
        "project_member.added",
        actor_id=actor.user_id,
        org_id=project.org_id,
        project_id=project.id,
        target_type="project_membership",
        target_id=membership.id,
        details={"user_id": str(user_id), "role": role.value},
    )
    return membership


async def _lock_project_membership(
    project_id: uuid.UUID, membership_id: uuid.UUID, session: AsyncSession
) -> ProjectMembership:
    result = await session.execute(
        select(ProjectMembership)
        .where(
            ProjectMembership.id == membership_id,
            ProjectMembership.project_id == project_id,
            ProjectMembership.is_active.is_(True),
        )
        .with_for_update()
    )
    membership = result.scalar_one_or_none()
    if membership is None:
        raise NotFound("Project membership not found")
    return membership


async def change_project_role(
    project_id: uuid.UUID,
    membership_id: uuid.UUID,
    new_role: ProjectRole,
    actor: Principal,
    session: AsyncSession,
) -> ProjectMembership:
    project = await _get_live_project(project_id, session)
    await _require_staffing(AccessGuard(session, actor.user_id), project, ProjectAction.EDIT)
    membership = await _lock_project_membership(project_id, membership_id, session)
    old_role = membership.project_role
    if old_role is new_role:
        return membership

    membership.role = new_role.value
    membership.updated_at = _now()
    session.add(membership)
    await session.flush()
    mark_subject_stale(session, membership.user_id)

    await record_audit(
        session,
        "project_member.role_changed",
        actor_id=actor.user_id,
        org_id=project.org_id,
        project_id=project.id,
        target_type="project_membership",
        target_id=membership.id,
        details={"from": old_role.value, "to": new_role.value},
    )
    return membership


async def remove_project_member(
    project_id: uuid.UUID,
    membership_id: uuid.UUID,
    actor: Principal,
    session: AsyncSession,
) -> ProjectMembership:
    project = await _get_live_project(project_id, session)
    await _require_staffing(AccessGuard(session, actor.user_id), project, ProjectAction.DELETE)
    membership = await _lock_project_membership(project_id, membership_id, session)

    now = _now()
    membership.is_active = False
    membership.is_default = False
    membership.deactivated_at = now
    membership.updated_at = now
    session.add(membership)
    await session.flush()
    mark_subject_stale(session, membership.user_id)

    await record_audit(
        session,
        "project_member.removed",
        actor_id=actor.user_id,
        org_id=project.org_id,
        project_id=project.id,
        target_type="project_membership",
        target_id=membership.id,
        details={"user_id": str(membership.user_id)},
    )
    log.info("membership.project_removed", project_id=str(project_id), user_id=str(membership.user_id))
    return membership


async def set_default_project(
    project_id: uuid.UUID, principal: Principal, session: AsyncSession
) -> ProjectMembership:
    membership = await get_project_membership(principal.user_id, project_id, session)
    if membership is None:
        raise NotFound("Project not found")
    await session.execute(
        update(ProjectMembership)
        .where(
            ProjectMembership.user_id == principal.user_id,
            ProjectMembership.org_id == membership.org_id,
            ProjectMembership.id != membership.id,
        )
        .values(is_default=False)
        .execution_options(synchronize_session="fetch")
    )
    membership.is_default = True
    session.add(membership)
    await session.flush()
    mark_subject_stale(session, principal.user_id)
    return membership


# ---------------------------------------------------------------------------
# Serialisation helpers
# ---------------------------------------------------------------------------

def _org_member_dict(membership: OrgMembership, user: User) -> dict:
    return {
        "id": membership.id,
        "org_id": membership.org_id,
        "user_id": membership.user_id,
        "role": membership.role,
        "is_active": membership.is_active,
        "is_default": membership.is_default,
        "email": user.email,
        "display_name": user.display_name,
        "invited_at": membership.invited_at,
        "accepted_at": membership.accepted_at,
        "created_at": membership.created_at,
    }


def _project_member_dict(membership: ProjectMembership, user: User) -> dict:
    return {
        "id": membership.id,
        "project_id": membership.project_id,
        "org_id": membership.org_id,
        "user_id": membership.user_id,
        "role": membership.role,
        "is_active": membership.is_active,
        "is_default": membership.is_default,
        "email": user.email,
        "display_name": user.display_name,
        "created_at": membership.created_at,
    }


async def mark_org_members_stale(org_id: uuid.UUID, session: AsyncSession) -> None:
    """Queue cache invalidation for every active member of an organisation."""
    result = await session.execute(
        select(OrgMembership.user_id).where(
            OrgMembership.org_id == org_id, OrgMembership.is_active.is_(True)
        )
    )
    for user_id in result.scalars().all():
        mark_subject_stale(session, user_id)
