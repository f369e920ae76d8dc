"""Load membership facts for the pure decision procedure, straight from the database."""

from __future__ import annotations

import uuid
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from tenantgate_shared.decision import AccessFacts
from tenantgate_shared.schemas.common import OrgRole, ProjectRole, SystemRole

from tenantgate.models.org_membership import OrgMembership
from tenantgate.models.organisation import Organisation
from tenantgate.models.project import Project
from tenantgate.models.project_membership import ProjectMembership
from tenantgate.models.user import User


async def load_access_facts(
    session: AsyncSession,
    principal_id: uuid.UUID,
    org_id: uuid.UUID,
    project_id: Optional[uuid.UUID] = None,
) -> AccessFacts:
    """Read the facts ``decide`` needs. Never cached: every call hits the database."""
    system_role = await session.scalar(select(User.system_role).where(User.id == principal_id))

    org = (
        await session.execute(
            select(Organisation.is_active, Organisation.is_deleted).where(Organisation.id == org_id)
        )
    ).first()
    org_available = org is not None and org.is_active and not org.is_deleted

    org_role = await session.scalar(
        select(OrgMembership.role).where(
            OrgMembership.user_id == principal_id,
            OrgMembership.org_id == org_id,
            OrgMembership.is_active.is_(True),
        )
    )

    project_in_org = False
    project_role = None
    if project_id is not None:
        project = (
            await session.execute(
                select(Project.org_id, Project.is_deleted).where(Project.id == project_id)
            )
        ).first()
        project_in_org = project is not None and project.org_id == org_id and not project.is_deleted
        if project_in_org:
            project_role = await session.scalar(
                select(ProjectMembership.role).where(
                    ProjectMembership.user_id == principal_id,
                    ProjectMembership.project_id == project_id,
                    ProjectMembership.is_active.is_(True),
                )
            )

    return AccessFacts(
        principal_id=principal_id,
        system_role=SystemRole(system_role) if system_role else SystemRole.USER,
        org_id=org_id,
        org_role=OrgRole(org_role) if org_role else None,
        org_available=org_available,
        project_id=project_id,
        project_in_org=project_in_org,
        project_role=ProjectRole(project_role) if project_role else None,
    )
