"""
Project API endpoints (org-scoped).

GET    /api/v1/orgs/{org_id}/projects                                — Visible projects
POST   /api/v1/orgs/{org_id}/projects                                — Create a project
GET    /api/v1/orgs/{org_id}/projects/{project_id}                   — Get project
PATCH  /api/v1/orgs/{org_id}/projects/{project_id}                   — Update project
DELETE /api/v1/orgs/{org_id}/projects/{project_id}                   — Soft-delete project
POST   /api/v1/orgs/{org_id}/projects/{project_id}/default           — Default project
GET    /api/v1/orgs/{org_id}/projects/{project_id}/members           — Project team
POST   /api/v1/orgs/{org_id}/projects/{project_id}/members           — Add to team
PATCH  /api/v1/orgs/{org_id}/projects/{project_id}/members/{id}      — Change project role
DELETE /api/v1/orgs/{org_id}/projects/{project_id}/members/{id}      — Remove from team
"""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from tenantgate_shared.schemas.memberships import (
    ProjectMemberAdd,
    ProjectMemberListResponse,
    ProjectMemberRead,
    ProjectRoleChange,
)
from tenantgate_shared.schemas.projects import (
    ProjectCreate,
    ProjectListResponse,
    ProjectRead,
    ProjectUpdate,
)

from tenantgate.core.auth import Principal, get_principal
from tenantgate.core.database import get_session
from tenantgate.services import memberships as membership_service
from tenantgate.services import projects as project_service

router = APIRouter()


@router.get("", response_model=ProjectListResponse)
async def list_projects(
    org_id: uuid.UUID,
    principal: Principal = Depends(get_principal),
    session: AsyncSession = Depends(get_session),
):
    """Projects the principal can see. Org owners/admins see all; others their own."""
    projects = await project_service.list_projects(org_id, principal, session)
    return ProjectListResponse(data=projects)


@router.post("", response_model=ProjectRead, status_code=201)
async def create_project(
    org_id: uuid.UUID,
    body: ProjectCreate,
    principal: Principal = Depends(get_principal),
    session: AsyncSession = Depends(get_session),
):
    project = await project_service.create_project(org_id, body, principal, session)
    return ProjectRead.model_validate(project)


@router.get("/{project_id}", response_model=ProjectRead)
async def get_project(
    org_id: uuid.UUID,
    project_id: uuid.UUID,
    principal: Principal = Depends(get_principal),
    session: AsyncSession = Depends(get_session),
):
    project = await project_service.get_project(org_id, project_id, principal, session)
    return ProjectRead.model_validate(project)


@router.patch("/{project_id}", response_model=ProjectRead)
async def update_project(
    org_id: uuid.UUID,
    project_id: uuid.UUID,
    body: ProjectUpdate,
    principal: Principal = Depends(get_principal),
    session: AsyncSession = Depends(get_session),
):
    project = await project_service.update_project(org_id, project_id, body, principal, session)
    return ProjectRead.model_validate(project)


@router.delete("/{project_id}", status_code=204)
async def delete_project(
    org_id: uuid.UUID,
    project_id: uuid.UUID,
    principal: Principal = Depends(get_principal),
    session: AsyncSession = Depends(get_session),
):
    await project_service.delete_project(org_id, project_id, principal, session)


@router.post("/{project_id}/default", status_code=204)
async def set_default_project(
    org_id: uuid.UUID,
    project_id: uuid.UUID,
    principal: Principal = Depends(get_principal),
    session: AsyncSession = Depends(get_session),
):
    await project_service.get_project(org_id, project_id, principal, session)
    await membership_service.set_default_project(project_id, principal, session)


# ---------------------------------------------------------------------------
# Project team
# ---------------------------------------------------------------------------

@router.get("/{project_id}/members", response_model=ProjectMemberListResponse)
async def list_project_members(
    org_id: uuid.UUID,
    project_id: uuid.UUID,
    principal: Principal = Depends(get_principal),
    session: AsyncSession = Depends(get_session),
):
    await project_service.get_project(org_id, project_id, principal, session)
    rows = await membership_service.list_project_members(project_id, principal, session)
    return ProjectMemberListResponse(data=rows)


@router.post("/{project_id}/members", response_model=ProjectMemberRead, status_code=201)
async def add_project_member(
    org_id: uuid.UUID,
    project_id: uuid.UUID,
    body: ProjectMemberAdd,
    principal: Principal = Depends(get_principal),
    session: AsyncSession = Depends(get_session),
):
    """Add a principal to the project. They must already belong to the organisation."""
    await project_service.get_project(org_id, project_id, principal, session)
    membership = await membership_service.add_project_member(
        project_id, body.user_id, body.role, principal, session
    )
    return ProjectMemberRead.model_validate(membership)


@router.patch("/{project_id}/members/{membership_id}", response_model=ProjectMemberRead)
async def change_project_role(
    org_id: uuid.UUID,
    project_id: uuid.UUID,
    membership_id: uuid.UUID,
    body: ProjectRoleChange,
    principal: Principal = Depends(get_principal),
    session: AsyncSession = Depends(get_session),
):
    await project_service.get_project(org_id, project_id, principal, session)
    membership = await membership_service.change_project_role(
        project_id, membership_id, body.role, principal, session
    )
    return ProjectMemberRead.model_validate(membership)


@router.delete("/{project_id}/members/{membership_id}", response_model=ProjectMemberRead)
async def remove_project_member(
    org_id: uuid.UUID,
    project_id: uuid.UUID,
    membership_id: uuid.UUID,
    principal: Principal = Depends(get_principal),
    session: AsyncSession = Depends(get_session),
):
    await project_service.get_project(org_id, project_id, principal, session)
    membership = await membership_service.remove_project_member(
        project_id, membership_id, principal, session
    )
    return ProjectMemberRead.model_validate(membership)
