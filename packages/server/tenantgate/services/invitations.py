"""
Invitation service: invite by email, accept with a one-time token.

Accepting an invitation creates the organisation membership first and the
requested project memberships after it, in the same transaction, so the
membership prerequisite always holds.
"""

from __future__ import annotations

import secrets
import uuid
from datetime import datetime, timedelta, timezone

import structlog
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from tenantgate_shared.permissions import can_assign_org_role
from tenantgate_shared.schemas.common import OrgAction, OrgResource, OrgRole, ProjectRole
from tenantgate_shared.schemas.invitations import InvitationCreate, InvitationStatus

from tenantgate.authz.guard import AccessGuard
from tenantgate.core.audit import record_audit
from tenantgate.core.auth import Principal
from tenantgate.core.config import get_settings
from tenantgate.core.errors import Conflict, Denied, InvalidRequest, NotFound
from tenantgate.models.base import as_utc
from tenantgate.models.invitation import OrgInvitation
from tenantgate.models.project import Project
from tenantgate.services.memberships import (
    insert_org_membership,
    insert_project_membership,
)

log = structlog.get_logger()


def _new_token() -> str:
    return secrets.token_urlsafe(32)


def _expiry() -> datetime:
    return datetime.now(timezone.utc) + timedelta(days=get_settings().invitation_expiry_days)


async def invite_member(
    org_id: uuid.UUID,
    req: InvitationCreate,
    actor: Principal,
    session: AsyncSession,
) -> OrgInvitation:
    """Create a pending invitation. The token is returned to the inviter once."""
    guard = AccessGuard(session, actor.user_id)
    await guard.require(org_id, None, OrgResource.MEMBERS, OrgAction.INVITE)
    facts = await guard.facts(org_id)
    if not facts.is_system_admin and not can_assign_org_role(facts.org_role, None, req.role):
        raise Denied(f"Your role cannot invite a {req.role.value}")

    email = req.email.lower()
    existing = await session.execute(
        select(OrgInvitation).where(
            OrgInvitation.org_id == org_id,
            OrgInvitation.email == email,
            OrgInvitation.status == InvitationStatus.PENDING.value,
        )
    )
    if existing.scalar_one_or_none():
        raise Conflict("A pending invitation already exists for this email")

    assignments = []
    for assignment in req.project_assignments:
        project = await session.get(Project, assignment.project_id)
        if project is None or project.is_deleted or project.org_id != org_id:
            raise InvalidRequest(f"Project {assignment.project_id} is not in this organisation")
        assignments.append({"project_id": str(project.id), "role": assignment.role.value})

    invitation = OrgInvitation(
        org_id=org_id,
        email=email,
        role=req.role.value,
        token=_new_token(),
        status=InvitationStatus.PENDING.value,
        project_assignments=assignments,
        invited_by=actor.user_id,
        expires_at=_expiry(),
    )
    session.add(invitation)
    await session.flush()

    await record_audit(
        session,
        "invitation.created",
        actor_id=actor.user_id,
        org_id=org_id,
        target_type="invitation",
        target_id=invitation.id,
        details={"email": email, "role": req.role.value, "projects": len(assignments)},
    )
    log.info("invitation.created", org_id=str(org_id), invitation_id=str(invitation.id))
    return invitation


async def accept_invitation(token: str, principal: Principal, session: AsyncSession) -> OrgInvitation:
    """Accept an invitation addressed to the principal's email."""
    result = await session.execute(
        select(OrgInvitation).where(OrgInvitation.token == token).with_for_update()
    )
    invitation = result.scalar_one_or_none()
    if invitation is None or invitation.status != InvitationStatus.PENDING.value:
        raise NotFound("Invitation not found")
    if invitation.email != principal.email.lower():
        # Indistinguishable from a missing token to anyone but the invitee.
        raise NotFound("Invitation not found")
    if as_utc(invitation.expires_at) <= datetime.now(timezone.utc):
        # Left pending here; expire_invitations flips the status.
        raise InvalidRequest("Invitation has expired")

    await insert_org_membership(
        principal.user_id,
        invitation.org_id,
        OrgRole(invitation.role),
        session,
        invited_by=invitation.invited_by,
        invited_at=invitation.created_at,
    )
    for assignment in invitation.project_assignments:
        project = await session.get(Project, uuid.UUID(assignment["project_id"]))
        if project is None or project.is_deleted or project.org_id != invitation.org_id:
            log.warning(
                "invitation.assignment_skipped",
                invitation_id=str(invitation.id),
                project_id=assignment["project_id"],
            )
            continue
        await insert_project_membership(
            principal.user_id,
            project,
            ProjectRole(assignment["role"]),
            session,
            added_by=invitation.invited_by,
        )

    invitation.status = InvitationStatus.ACCEPTED.value
    invitation.accepted_at = datetime.now(timezone.utc)
    invitation.accepted_by = principal.user_id
    session.add(invitation)
    await session.flush()

    await record_audit(
        session,
        "invitation.accepted",
        actor_id=principal.user_id,
        org_id=invitation.org_id,
        target_type="invitation",
        target_id=invitation.id,
    )
    log.info("invitation.accepted", org_id=str(invitation.org_id), invitation_id=str(invitation.id))
    return invitation


async def _get_pending(
    org_id: uuid.UUID, invitation_id: uuid.UUID, session: AsyncSession
) -> OrgInvitation:
    result = await session.execute(
        select(OrgInvitation)
        .where(
            OrgInvitation.id == invitation_id,
            OrgInvitation.org_id == org_id,
            OrgInvitation.status == InvitationStatus.PENDING.value,
        )
        .with_for_update()
    )
    invitation = result.scalar_one_or_none()
    if invitation is None:
        raise NotFound("Invitation not found")
    return invitation


async def revoke_invitation(
    org_id: uuid.UUID, invitation_id: uuid.UUID, actor: Principal, session: AsyncSession
) -> OrgInvitation:
    await AccessGuard(session, actor.user_id).require(
        org_id, None, OrgResource.MEMBERS, OrgAction.INVITE
    )
    invitation = await _get_pending(org_id, invitation_id, session)
    invitation.status = InvitationStatus.REVOKED.value
    session.add(invitation)
    await session.flush()

    await record_audit(
        session,
        "invitation.revoked",
        actor_id=actor.user_id,
        org_id=org_id,
        target_type="invitation",
        target_id=invitation.id,
    )
    return invitation


async def resend_invitation(
    org_id: uuid.UUID, invitation_id: uuid.UUID, actor: Principal, session: AsyncSession
) -> OrgInvitation:
    """Issue a new token and push the expiry out. The old token stops working."""
    await AccessGuard(session, actor.user_id).require(
        org_id, None, OrgResource.MEMBERS, OrgAction.INVITE
    )
    invitation = await _get_pending(org_id, invitation_id, session)
    invitation.token = _new_token()
    invitation.expires_at = _expiry()
    session.add(invitation)
    await session.flush()

    await record_audit(
        session,
        "invitation.resent",
        actor_id=actor.user_id,
        org_id=org_id,
        target_type="invitation",
        target_id=invitation.id,
    )
    return invitation


async def list_pending_invitations(
    org_id: uuid.UUID, actor: Principal, session: AsyncSession
) -> list[OrgInvitation]:
    await AccessGuard(session, actor.user_id).require_visible(
        org_id, None, OrgResource.MEMBERS, "Organisation not found"
    )
    result = await session.execute(
        select(OrgInvitation)
        .where(
            OrgInvitation.org_id == org_id,
            OrgInvitation.status == InvitationStatus.PENDING.value,
        )
        .order_by(OrgInvitation.created_at.desc())
    )
    return list(result.scalars().all())


async def expire_invitations(session: AsyncSession) -> int:
    """Mark every overdue pending invitation expired. Returns how many changed."""
    result = await session.execute(
        update(OrgInvitation)
        .where(
            OrgInvitation.status == InvitationStatus.PENDING.value,
            OrgInvitation.expires_at <= datetime.now(timezone.utc),
        )
        .values(status=InvitationStatus.EXPIRED.value)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount:
        log.info("invitation.expired", count=result.rowcount)
    return result.rowcount
