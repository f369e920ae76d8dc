"""
Organisation service: tenant-root CRUD and the settings bag.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

import structlog
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from tenantgate_shared.permissions import SETTINGS_SECTION_PERMISSIONS
from tenantgate_shared.schemas.common import OrgAction, OrgResource, OrgRole
from tenantgate_shared.schemas.organisations import (
    OrgCreateRequest,
    OrgListItem,
    OrgSettings,
    OrgUpdateRequest,
)

from tenantgate.authz.guard import AccessGuard
from tenantgate.core.audit import record_audit
from tenantgate.core.auth import Principal
from tenantgate.core.config import get_settings
from tenantgate.core.errors import Conflict, Denied, InvalidRequest, NotFound
from tenantgate.models.organisation import Organisation
from tenantgate.services.memberships import (
    insert_org_membership,
    list_orgs_for,
    mark_org_members_stale,
)

log = structlog.get_logger()


def _deep_merge(base: dict, patch: dict) -> dict:
    """JSON Merge Patch style deep merge."""
    result = base.copy()
    for key, value in patch.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


async def list_my_orgs(principal: Principal, session: AsyncSession) -> list[OrgListItem]:
    """Organisations the principal is an active member of."""
    return [
        OrgListItem(
            id=m.org_id, name=m.name, slug=m.slug, role=m.role, is_default=m.is_default
        )
        for m in await list_orgs_for(principal.user_id, session)
    ]


async def create_org(
    req: OrgCreateRequest, creator: Principal, session: AsyncSession
) -> Organisation:
    """Create an organisation; the creator becomes its first owner."""
    if not creator.is_system_admin and not get_settings().allow_self_service_orgs:
        raise Denied("Only system administrators can create organisations")

    existing = await session.execute(
        select(Organisation).where(Organisation.slug == req.slug)
    )
    if existing.scalar_one_or_none():
        raise Conflict("Organisation slug already taken")

    org = Organisation(
        name=req.name,
        slug=req.slug,
        display_name=req.display_name,
        settings=OrgSettings().model_dump(mode="json"),
        is_active=True,
    )
    session.add(org)
    await session.flush()

    await insert_org_membership(creator.user_id, org.id, OrgRole.OWNER, session)
    await record_audit(
        session,
        "org.created",
        actor_id=creator.user_id,
        org_id=org.id,
        target_type="organisation",
        target_id=org.id,
        details={"slug": org.slug},
    )
    log.info("org.created", org_id=str(org.id), slug=req.slug, creator=str(creator.user_id))
    return org


async def get_org(org_id: uuid.UUID, principal: Principal, session: AsyncSession) -> Organisation:
    """The organisation, or 404 when it is absent or not visible to the principal."""
    await AccessGuard(session, principal.user_id).require_visible(
        org_id, None, OrgResource.ORGANISATION, "Organisation not found"
    )
    org = await session.get(Organisation, org_id)
    if org is None or org.is_deleted:
        raise NotFound("Organisation not found")
    return org


async def update_org(
    org_id: uuid.UUID,
    req: OrgUpdateRequest,
    actor: Principal,
    session: AsyncSession,
) -> Organisation:
    """Update name/display name and deep-merge settings, section by section.

    Each settings section carries its own permission, so an admin may change
    branding while only an owner may touch billing.
    """
    org = await get_org(org_id, actor, session)
    guard = AccessGuard(session, actor.user_id)
    changed: list[str] = []

    if req.name is not None or req.display_name is not None:
        await guard.require(org_id, None, OrgResource.ORGANISATION, OrgAction.EDIT)
        if req.name is not None:
            org.name = req.name
            changed.append("name")
        if req.display_name is not None:
            org.display_name = req.display_name
            changed.append("display_name")

    if req.settings:
        unknown = set(req.settings) - set(SETTINGS_SECTION_PERMISSIONS)
        if unknown:
            raise InvalidRequest(f"Unknown settings sections: {', '.join(sorted(unknown))}")
        for section in req.settings:
            resource, action = SETTINGS_SECTION_PERMISSIONS[section]
            await guard.require(
                org_id, None, resource, action, f"You cannot change {section} settings"
            )

        merged = _deep_merge(org.settings or {}, req.settings)
        try:
            validated = OrgSettings.model_validate(merged)
        except ValidationError as exc:
            raise InvalidRequest("Invalid organisation settings", errors=exc.errors(include_url=False))
        org.settings = validated.model_dump(mode="json")
        changed.extend(f"settings.{section}" for section in sorted(req.settings))

    if not changed:
        return org

    org.updated_at = datetime.now(timezone.utc)
    session.add(org)
    await session.flush()

    await record_audit(
        session,
        "org.updated",
        actor_id=actor.user_id,
        org_id=org.id,
        target_type="organisation",
        target_id=org.id,
        details={"fields": changed},
    )
    log.info("org.updated", org_id=str(org.id), fields=changed)
    return org


async def delete_org(org_id: uuid.UUID, actor: Principal, session: AsyncSession) -> Organisation:
    """Soft-delete an organisation. Owner only."""
    org = await get_org(org_id, actor, session)
    await AccessGuard(session, actor.user_id).require(
        org_id, None, OrgResource.ORGANISATION, OrgAction.DELETE
    )

    now = datetime.now(timezone.utc)
    org.is_deleted = True
    org.deleted_at = now
    org.updated_at = now
    session.add(org)
    await session.flush()

    await mark_org_members_stale(org_id, session)

    await record_audit(
        session,
        "org.deleted",
        actor_id=actor.user_id,
        org_id=org.id,
        target_type="organisation",
        target_id=org.id,
    )
    log.info("org.deleted", org_id=str(org.id), slug=org.slug)
    return org
