"""
Tenant context endpoints.

GET    /api/v1/context               — Load (and if needed choose) the current selection
POST   /api/v1/context/organisation  — Switch organisation
POST   /api/v1/context/project       — Switch project within the current organisation
PUT    /api/v1/context/view-as       — Set the view-as overlay
DELETE /api/v1/context/view-as       — Clear the view-as overlay
GET    /api/v1/context/permissions   — Overlay-aware permission map for UI gating
"""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from tenantgate_shared.schemas.context import (
    PermissionMapRead,
    SwitchOrganisationRequest,
    SwitchProjectRequest,
    TenantContextRead,
    ViewAsRequest,
    ViewAsResult,
)

from tenantgate.context import TenantContext, open_tenant_context
from tenantgate.core.audit import record_audit
from tenantgate.core.auth import Principal, get_principal
from tenantgate.core.database import get_session

router = APIRouter()


async def get_tenant_context(
    principal: Principal = Depends(get_principal),
    session: AsyncSession = Depends(get_session),
) -> TenantContext:
    return await open_tenant_context(principal, session)


async def get_ready_context(
    context: TenantContext = Depends(get_tenant_context),
) -> TenantContext:
    await context.initialise()
    return context


@router.get("", response_model=TenantContextRead)
async def read_context(context: TenantContext = Depends(get_ready_context)):
    return context.snapshot()


@router.post("/organisation", response_model=TenantContextRead)
async def switch_organisation(
    body: SwitchOrganisationRequest,
    context: TenantContext = Depends(get_tenant_context),
):
    """Switch organisation. The project selection and any overlay are cleared."""
    await context.switch_organisation(body.organisation_id)
    return context.snapshot()


@router.post("/project", response_model=TenantContextRead)
async def switch_project(
    body: SwitchProjectRequest,
    context: TenantContext = Depends(get_ready_context),
):
    await context.switch_project(body.project_id)
    return context.snapshot()


@router.put("/view-as", response_model=ViewAsResult)
async def set_view_as(
    body: ViewAsRequest,
    context: TenantContext = Depends(get_ready_context),
    session: AsyncSession = Depends(get_session),
):
    """Preview the application as a lesser role.

    A request the principal may not make changes nothing and answers
    ``applied: false``.
    """
    applied = await context.set_overlay(body.org_role, body.project_role)
    await record_audit(
        session,
        "overlay.set" if applied else "overlay.rejected",
        actor_id=context.principal_id,
        org_id=context.organisation_id,
        project_id=context.project_id,
        target_type="overlay",
        details=body.model_dump(mode="json"),
        impersonating=applied,
    )
    return ViewAsResult(applied=applied, overlay=context.overlay_read())


@router.delete("/view-as", response_model=ViewAsResult)
async def clear_view_as(
    context: TenantContext = Depends(get_ready_context),
    session: AsyncSession = Depends(get_session),
):
    was_active = context.overlay.is_active
    await context.clear_overlay()
    if was_active:
        await record_audit(
            session,
            "overlay.cleared",
            actor_id=context.principal_id,
            org_id=context.organisation_id,
            project_id=context.project_id,
            target_type="overlay",
        )
    return ViewAsResult(applied=True, overlay=context.overlay_read())


@router.get("/permissions", response_model=PermissionMapRead)
async def read_permissions(
    context: TenantContext = Depends(get_ready_context),
    session: AsyncSession = Depends(get_session),
):
    permissions = await context.permissions()
    if permissions.is_impersonating:
        await record_audit(
            session,
            "overlay.permissions_read",
            actor_id=context.principal_id,
            org_id=context.organisation_id,
            project_id=context.project_id,
            target_type="overlay",
            details=context.overlay.to_dict(),
            impersonating=True,
        )
    return permissions
