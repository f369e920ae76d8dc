"""
Redis-backed state behind the tenant context.

- ``SelectionStore``: the principal's persisted organisation/project choice
  plus a generation counter used to detect superseded switches. Survives
  across sessions; cleared on logout.
- ``SessionStore``: the view-as overlay, keyed by session id (the JWT id) and
  expiring with the session, so an overlay never outlives a login.
"""

from __future__ import annotations

import json
import uuid
from typing import Optional

import redis.asyncio as redis

from tenantgate_shared.overlay import ImpersonationOverlay

from tenantgate.core.config import get_settings

settings = get_settings()


def _uuid_or_none(value: Optional[str]) -> Optional[uuid.UUID]:
    if not value:
        return None
    try:
        return uuid.UUID(value)
    except ValueError:
        return None


class SelectionStore:
    """Persisted organisation/project selection for one principal."""

    def __init__(self, client: redis.Redis, principal_id: uuid.UUID):
        self._redis = client
        self._base = f"tg:selection:{principal_id}"

    @property
    def _org_key(self) -> str:
        return f"{self._base}:org"

    @property
    def _project_key(self) -> str:
        return f"{self._base}:project"

    @property
    def _generation_key(self) -> str:
        return f"{self._base}:gen"

    async def get(self) -> tuple[Optional[uuid.UUID], Optional[uuid.UUID]]:
        org_id = await self._redis.get(self._org_key)
        project_id = await self._redis.get(self._project_key)
        return _uuid_or_none(org_id), _uuid_or_none(project_id)

    async def set_organisation(self, org_id: uuid.UUID) -> None:
        """Persist an organisation choice. Always clears the project choice."""
        await self._redis.set(self._org_key, str(org_id))
        await self._redis.delete(self._project_key)

    async def set_project(self, project_id: Optional[uuid.UUID]) -> None:
        if project_id is None:
            await self._redis.delete(self._project_key)
        else:
            await self._redis.set(self._project_key, str(project_id))

    async def clear(self) -> None:
        await self._redis.delete(self._org_key, self._project_key)

    # -- supersession --------------------------------------------------------

    async def generation(self) -> int:
        value = await self._redis.get(self._generation_key)
        return int(value) if value else 0

    async def advance(self, seen: int) -> bool:
        """Claim the next generation if nobody advanced past ``seen`` meanwhile.

        A caller that loses must discard whatever it fetched.
        """
        return await self._redis.incr(self._generation_key) == seen + 1


class SessionStore:
    """Per-session view-as overlay."""

    def __init__(self, client: redis.Redis, session_id: str, ttl_seconds: Optional[int] = None):
        self._redis = client
        self._key = f"tg:session:{session_id}:overlay"
        self._ttl = ttl_seconds or settings.jwt_expire_minutes * 60

    async def get_overlay(self) -> ImpersonationOverlay:
        raw = await self._redis.get(self._key)
        if not raw:
            return ImpersonationOverlay()
        return ImpersonationOverlay.from_dict(json.loads(raw))

    async def set_overlay(self, overlay: ImpersonationOverlay) -> None:
        if not overlay.is_active:
            await self.clear_overlay()
            return
        await self._redis.set(self._key, json.dumps(overlay.to_dict()), ex=self._ttl)

    async def clear_overlay(self) -> None:
        await self._redis.delete(self._key)
