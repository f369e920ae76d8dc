"""
Organisation API endpoints.

GET    /api/v1/orgs                   — List orgs for the authenticated principal
POST   /api/v1/orgs                   — Create an org (creator becomes owner)
GET    /api/v1/orgs/{org_id}          — Get org details
PATCH  /api/v1/orgs/{org_id}          — Update name/settings (per-section permissions)
DELETE /api/v1/orgs/{org_id}          — Soft-delete (owner only)
POST   /api/v1/orgs/{org_id}/default  — Make this the principal's default org
"""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from tenantgate_shared.schemas.organisations import (
    OrgCreateRequest,
    OrgListResponse,
    OrgResponse,
    OrgUpdateRequest,
)

from tenantgate.core.auth import Principal, get_principal
from tenantgate.core.database import get_session
from tenantgate.services import memberships as membership_service
from tenantgate.services import organisations as org_service

router = APIRouter()


@router.get("", response_model=OrgListResponse)
async def list_orgs(
    principal: Principal = Depends(get_principal),
    session: AsyncSession = Depends(get_session),
):
    """List orgs the authenticated principal belongs to."""
    items = await org_service.list_my_orgs(principal, session)
    return OrgListResponse(data=items)


@router.post("", response_model=OrgResponse, status_code=201)
async def create_org(
    body: OrgCreateRequest,
    principal: Principal = Depends(get_principal),
    session: AsyncSession = Depends(get_session),
):
    org = await org_service.create_org(body, principal, session)
    return OrgResponse.model_validate(org)


@router.get("/{org_id}", response_model=OrgResponse)
async def get_org(
    org_id: uuid.UUID,
    principal: Principal = Depends(get_principal),
    session: AsyncSession = Depends(get_session),
):
    org = await org_service.get_org(org_id, principal, session)
    return OrgResponse.model_validate(org)


@router.patch("/{org_id}", response_model=OrgResponse)
async def update_org(
    org_id: uuid.UUID,
    body: OrgUpdateRequest,
    principal: Principal = Depends(get_principal),
    session: AsyncSession = Depends(get_session),
):
    """Update org name or settings. Settings are deep-merged section by section."""
    org = await org_service.update_org(org_id, body, principal, session)
    return OrgResponse.model_validate(org)


@router.delete("/{org_id}", status_code=204)
async def delete_org(
    org_id: uuid.UUID,
    principal: Principal = Depends(get_principal),
    session: AsyncSession = Depends(get_session),
):
    await org_service.delete_org(org_id, principal, session)


@router.post("/{org_id}/default", status_code=204)
async def set_default_org(
    org_id: uuid.UUID,
    principal: Principal = Depends(get_principal),
    session: AsyncSession = Depends(get_session),
):
    await membership_service.set_default_organisation(org_id, principal, session)
