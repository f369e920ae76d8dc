"""
Project service: projects nested under exactly one organisation.

Creating, editing, deleting and staffing projects are organisation-level
permissions (``org_projects``); a project's business data stays behind project
membership.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

import structlog
from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from tenantgate_shared.schemas.common import (
    OrgAction,
    OrgResource,
    ProjectAction,
    ProjectListing,
    ProjectResource,
    ProjectRole,
)
from tenantgate_shared.schemas.organisations import OrgSettings
from tenantgate_shared.schemas.projects import AccessibleProject, ProjectCreate, ProjectUpdate

from tenantgate.authz.guard import AccessGuard
from tenantgate.core.audit import record_audit
from tenantgate.core.auth import Principal
from tenantgate.core.errors import Conflict, Denied, NotFound
from tenantgate.models.org_membership import OrgMembership
from tenantgate.models.organisation import Organisation
from tenantgate.models.project import Project
from tenantgate.services.memberships import (
    insert_project_membership,
    list_org_accessible_projects,
    mark_org_members_stale,
)

log = structlog.get_logger()


async def list_projects(
    org_id: uuid.UUID, principal: Principal, session: AsyncSession
) -> list[AccessibleProject]:
    """Projects of the organisation visible to the principal. Others are omitted."""
    return await list_org_accessible_projects(org_id, principal.user_id, session)


async def get_project(
    org_id: uuid.UUID,
    project_id: uuid.UUID,
    principal: Principal,
    session: AsyncSession,
) -> Project:
    await AccessGuard(session, principal.user_id).require_visible(
        org_id, project_id, ProjectListing.PROJECT, "Project not found"
    )
    project = await session.get(Project, project_id)
    if project is None or project.is_deleted or project.org_id != org_id:
        raise NotFound("Project not found")
    return project


async def _check_project_limit(org_id: uuid.UUID, session: AsyncSession) -> None:
    org = await session.get(Organisation, org_id)
    limits = OrgSettings.model_validate(org.settings or {}).limits
    if limits.max_projects is None:
        return
    live = await session.scalar(
        select(func.count()).select_from(Project).where(
            Project.org_id == org_id, Project.is_deleted.is_(False)
        )
    )
    if live >= limits.max_projects:
        raise Conflict(f"Organisation is limited to {limits.max_projects} projects")


async def create_project(
    org_id: uuid.UUID,
    req: ProjectCreate,
    creator: Principal,
    session: AsyncSession,
) -> Project:
    """Create a project; a creator with an org membership becomes its admin."""
    await AccessGuard(session, creator.user_id).require(
        org_id, None, OrgResource.ORG_PROJECTS, OrgAction.CREATE
    )

    existing = await session.execute(
        select(Project).where(
            Project.org_id == org_id,
            Project.reference == req.reference,
            Project.is_deleted.is_(False),
        )
    )
    if existing.scalar_one_or_none():
        raise Conflict(f"Project reference {req.reference!r} already exists in this organisation")
    await _check_project_limit(org_id, session)

    project = Project(
        org_id=org_id,
        name=req.name,
        reference=req.reference,
        description=req.description,
        status=req.status.value,
        created_by=creator.user_id,
    )
    session.add(project)
    await session.flush()

    # System admins without an org membership create projects without joining them.
    org_membership = await session.scalar(
        select(OrgMembership.id).where(
            OrgMembership.user_id == creator.user_id,
            OrgMembership.org_id == org_id,
            OrgMembership.is_active.is_(True),
        )
    )
    if org_membership is not None:
        await insert_project_membership(
            creator.user_id, project, ProjectRole.ADMIN, session, added_by=creator.user_id
        )
    await mark_org_members_stale(org_id, session)

    await record_audit(
        session,
        "project.created",
        actor_id=creator.user_id,
        org_id=org_id,
        project_id=project.id,
        target_type="project",
        target_id=project.id,
        details={"reference": project.reference},
    )
    log.info("project.created", org_id=str(org_id), project_id=str(project.id), reference=project.reference)
    return project


async def update_project(
    org_id: uuid.UUID,
    project_id: uuid.UUID,
    req: ProjectUpdate,
    actor: Principal,
    session: AsyncSession,
) -> Project:
    project = await get_project(org_id, project_id, actor, session)
    guard = AccessGuard(session, actor.user_id)
    if not (
        await guard.allows(org_id, None, OrgResource.ORG_PROJECTS, OrgAction.EDIT)
        or await guard.allows(org_id, project_id, ProjectResource.PROJECT_SETTINGS, ProjectAction.EDIT)
    ):
        raise Denied("You cannot edit this project")

    updates = req.model_dump(exclude_unset=True)
    for field, value in updates.items():
        if value is None and field != "description":
            continue
        setattr(project, field, value.value if hasattr(value, "value") else value)
    project.updated_at = datetime.now(timezone.utc)
    session.add(project)
    await session.flush()

    # Cached project lists carry names and statuses.
    await mark_org_members_stale(org_id, session)

    await record_audit(
        session,
        "project.updated",
        actor_id=actor.user_id,
        org_id=org_id,
        project_id=project.id,
        target_type="project",
        target_id=project.id,
        details={"fields": sorted(updates)},
    )
    log.info("project.updated", project_id=str(project.id), fields=sorted(updates))
    return project


async def delete_project(
    org_id: uuid.UUID,
    project_id: uuid.UUID,
    actor: Principal,
    session: AsyncSession,
) -> Project:
    """Soft-delete a project. Its memberships stay, but it is no longer visible."""
    project = await get_project(org_id, project_id, actor, session)
    await AccessGuard(session, actor.user_id).require(
        org_id, None, OrgResource.ORG_PROJECTS, OrgAction.DELETE
    )

    now = datetime.now(timezone.utc)
    project.is_deleted = True
    project.deleted_at = now
    project.updated_at = now
    session.add(project)
    await session.flush()

    await mark_org_members_stale(org_id, session)

    await record_audit(
        session,
        "project.deleted",
        actor_id=actor.user_id,
        org_id=org_id,
        project_id=project.id,
        target_type="project",
        target_id=project.id,
    )
    log.info("project.deleted", org_id=str(org_id), project_id=str(project.id))
    return project
