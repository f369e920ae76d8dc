"""Tenant context: session-scoped organisation/project selection and view-as."""

from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession

from tenantgate.context.stores import SelectionStore, SessionStore
from tenantgate.context.tenant import TenantContext
from tenantgate.core.auth import Principal
from tenantgate.core.cache import TenantScopedCache
from tenantgate.core.redis import get_redis
from tenantgate.services.memberships import MembershipDirectory

__all__ = ["SelectionStore", "SessionStore", "TenantContext", "open_tenant_context"]


async def open_tenant_context(principal: Principal, session: AsyncSession) -> TenantContext:
    """Wire a context for the principal's current session onto the shared Redis client."""
    client = await get_redis()
    return TenantContext(
        principal.user_id,
        MembershipDirectory(session),
        SelectionStore(client, principal.user_id),
        SessionStore(client, principal.session_id),
        TenantScopedCache(client),
        session_id=principal.session_id,
    )
