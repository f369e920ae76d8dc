"""
Organisation membership endpoints.

GET    /api/v1/orgs/{org_id}/members                  — List active members
POST   /api/v1/orgs/{org_id}/members                  — Add an existing principal
PATCH  /api/v1/orgs/{org_id}/members/{membership_id}  — Change org role
DELETE /api/v1/orgs/{org_id}/members/{membership_id}  — Remove (deactivate) a member

Violations of the membership rules come back as typed errors:
``LAST_OWNER_PROTECTED``, ``DENIED``, ``CONFLICT``.
"""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from tenantgate_shared.schemas.memberships import (
    OrgMemberAdd,
    OrgMemberListResponse,
    OrgMemberRead,
    OrgRoleChange,
)

from tenantgate.core.auth import Principal, get_principal
from tenantgate.core.database import get_session
from tenantgate.services import memberships as membership_service

router = APIRouter()


@router.get("", response_model=OrgMemberListResponse)
async def list_members(
    org_id: uuid.UUID,
    principal: Principal = Depends(get_principal),
    session: AsyncSession = Depends(get_session),
):
    rows = await membership_service.list_org_members(org_id, principal, session)
    return OrgMemberListResponse(data=rows)


@router.post("", response_model=OrgMemberRead, status_code=201)
async def add_member(
    org_id: uuid.UUID,
    body: OrgMemberAdd,
    principal: Principal = Depends(get_principal),
    session: AsyncSession = Depends(get_session),
):
    membership = await membership_service.add_org_member(
        org_id, body.user_id, body.role, principal, session
    )
    return OrgMemberRead.model_validate(membership)


@router.patch("/{membership_id}", response_model=OrgMemberRead)
async def change_role(
    org_id: uuid.UUID,
    membership_id: uuid.UUID,
    body: OrgRoleChange,
    principal: Principal = Depends(get_principal),
    session: AsyncSession = Depends(get_session),
):
    membership = await membership_service.change_org_role(
        org_id, membership_id, body.role, principal, session
    )
    return OrgMemberRead.model_validate(membership)


@router.delete("/{membership_id}", response_model=OrgMemberRead)
async def remove_member(
    org_id: uuid.UUID,
    membership_id: uuid.UUID,
    principal: Principal = Depends(get_principal),
    session: AsyncSession = Depends(get_session),
):
    membership = await membership_service.remove_org_member(
        org_id, membership_id, principal, session
    )
    return OrgMemberRead.model_validate(membership)
