"""
Invitation endpoints.

POST   /api/v1/orgs/{org_id}/invitations                   — Invite by email
GET    /api/v1/orgs/{org_id}/invitations                   — List pending invitations
DELETE /api/v1/orgs/{org_id}/invitations/{id}              — Revoke
POST   /api/v1/orgs/{org_id}/invitations/{id}/resend       — New token, new expiry
POST   /api/v1/invitations/accept                          — Accept with a token
"""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from tenantgate_shared.schemas.invitations import (
    InvitationAccept,
    InvitationCreate,
    InvitationCreated,
    InvitationListResponse,
    InvitationRead,
)

from tenantgate.core.auth import Principal, get_principal
from tenantgate.core.database import get_session
from tenantgate.services import invitations as invitation_service

router_scoped = APIRouter()
router_global = APIRouter()


@router_scoped.post("", response_model=InvitationCreated, status_code=201)
async def invite_member(
    org_id: uuid.UUID,
    body: InvitationCreate,
    principal: Principal = Depends(get_principal),
    session: AsyncSession = Depends(get_session),
):
    """Create an invitation. The token is shown once, for the accept link."""
    invitation = await invitation_service.invite_member(org_id, body, principal, session)
    return InvitationCreated(
        invitation=InvitationRead.model_validate(invitation), token=invitation.token
    )


@router_scoped.get("", response_model=InvitationListResponse)
async def list_invitations(
    org_id: uuid.UUID,
    principal: Principal = Depends(get_principal),
    session: AsyncSession = Depends(get_session),
):
    rows = await invitation_service.list_pending_invitations(org_id, principal, session)
    return InvitationListResponse(data=[InvitationRead.model_validate(r) for r in rows])


@router_scoped.delete("/{invitation_id}", response_model=InvitationRead)
async def revoke_invitation(
    org_id: uuid.UUID,
    invitation_id: uuid.UUID,
    principal: Principal = Depends(get_principal),
    session: AsyncSession = Depends(get_session),
):
    invitation = await invitation_service.revoke_invitation(
        org_id, invitation_id, principal, session
    )
    return InvitationRead.model_validate(invitation)


@router_scoped.post("/{invitation_id}/resend", response_model=InvitationCreated)
async def resend_invitation(
    org_id: uuid.UUID,
    invitation_id: uuid.UUID,
    principal: Principal = Depends(get_principal),
    session: AsyncSession = Depends(get_session),
):
    invitation = await invitation_service.resend_invitation(
        org_id, invitation_id, principal, session
    )
    return InvitationCreated(
        invitation=InvitationRead.model_validate(invitation), token=invitation.token
    )


@router_global.post("/invitations/accept", response_model=InvitationRead)
async def accept_invitation(
    body: InvitationAccept,
    principal: Principal = Depends(get_principal),
    session: AsyncSession = Depends(get_session),
):
    invitation = await invitation_service.accept_invitation(body.token, principal, session)
    return InvitationRead.model_validate(invitation)
