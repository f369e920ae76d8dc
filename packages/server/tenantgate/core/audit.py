"""Audit-log appends for administrative actions and impersonated access."""

from __future__ import annotations

import uuid
from typing import Any, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from tenantgate.models.audit import AuditEntry

log = structlog.get_logger()


async def record_audit(
    session: AsyncSession,
    action: str,
    *,
    actor_id: Optional[uuid.UUID],
    org_id: Optional[uuid.UUID] = None,
    project_id: Optional[uuid.UUID] = None,
    target_type: Optional[str] = None,
    target_id: Optional[uuid.UUID] = None,
    details: Optional[dict[str, Any]] = None,
    impersonating: bool = False,
) -> AuditEntry:
    """Append one audit entry in the caller's transaction."""
    entry = AuditEntry(
        org_id=org_id,
        project_id=project_id,
        actor_id=actor_id,
        action=action,
        target_type=target_type,
        target_id=target_id,
        details=details or {},
        impersonating=impersonating,
    )
    session.add(entry)
    await session.flush()
    log.info(
        "audit.recorded",
        action=action,
        org_id=str(org_id) if org_id else None,
        actor_id=str(actor_id) if actor_id else None,
        impersonating=impersonating,
    )
    return entry
