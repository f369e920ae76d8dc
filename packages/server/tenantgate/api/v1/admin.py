"""
Platform administration and access-check endpoints.

PUT /api/v1/admin/users/{user_id}/system-role — Change a principal's system role
GET /api/v1/authz/decide                      — Ask the decision procedure directly
"""

from __future__ import annotations

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from tenantgate_shared.schemas.common import DecisionRead, UnknownPermission, normalise_request
from tenantgate_shared.schemas.users import SystemRoleUpdate, UserResponse

from tenantgate.authz.guard import AccessGuard
from tenantgate.core.auth import Principal, get_principal, require_system_admin
from tenantgate.core.database import get_session
from tenantgate.core.errors import InvalidRequest
from tenantgate.services import users as user_service

router = APIRouter()


@router.put("/admin/users/{user_id}/system-role", response_model=UserResponse)
async def set_system_role(
    user_id: uuid.UUID,
    body: SystemRoleUpdate,
    principal: Principal = Depends(require_system_admin),
    session: AsyncSession = Depends(get_session),
):
    user = await user_service.set_system_role(user_id, body.system_role, principal, session)
    return UserResponse.model_validate(user)


@router.get("/authz/decide", response_model=DecisionRead)
async def decide(
    organisation_id: uuid.UUID,
    resource: str,
    action: str,
    project_id: Optional[uuid.UUID] = Query(default=None),
    principal: Principal = Depends(get_principal),
    session: AsyncSession = Depends(get_session),
):
    """Evaluate one (resource, action) for the caller with their real roles."""
    try:
        parsed_resource, parsed_action = normalise_request(resource, action)
    except UnknownPermission as exc:
        raise InvalidRequest(str(exc))
    verdict = await AccessGuard(session, principal.user_id).decide(
        organisation_id, project_id, parsed_resource, parsed_action
    )
    return DecisionRead(
        organisation_id=str(organisation_id),
        project_id=str(project_id) if project_id else None,
        resource=parsed_resource.value,
        action=parsed_action.value,
        decision=verdict,
        allowed=verdict.allowed,
    )
