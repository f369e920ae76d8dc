"""
Tenant-scoped read cache on Redis.

Keys carry the full tenant scope:

    tg:cache:{namespace}:{org_id or -}:{project_id or -}:{subject}[:{variant}]

and every key written for a subject is recorded in that subject's index set,
so ``invalidate_subject`` removes all of them. Each invalidation also bumps the
subject's generation counter, and a load that started before the bump does not
write its result back. A missed invalidation is a tenant-isolation bug. The
enforcement path never reads from here.
"""

from __future__ import annotations

import json
from typing import Any, Awaitable, Callable, Iterable, Optional
from uuid import UUID

import redis.asyncio as redis
import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from tenantgate.core.config import get_settings
from tenantgate.core.redis import get_redis

log = structlog.get_logger()
settings = get_settings()

KEY_PREFIX = "tg:cache"
INDEX_PREFIX = "tg:cache-index"
GENERATION_PREFIX = "tg:gen:cache"

# Namespaces
NS_ORG_MEMBERSHIPS = "org_memberships"
NS_ACCESSIBLE_PROJECTS = "accessible_projects"
NS_UI_PERMISSIONS = "ui_permissions"

TENANT_NAMESPACES = (NS_ORG_MEMBERSHIPS, NS_ACCESSIBLE_PROJECTS, NS_UI_PERMISSIONS)

_PENDING_KEY = "tg_stale_subjects"


def _part(value: Optional[UUID | str]) -> str:
    return "-" if value is None else str(value)


class TenantScopedCache:
    """JSON read cache keyed by (namespace, organisation, project, subject)."""

    def __init__(self, client: redis.Redis, ttl_seconds: Optional[int] = None) -> None:
        self._redis = client
        self._ttl = ttl_seconds if ttl_seconds is not None else settings.cache_ttl_seconds

    @staticmethod
    def key(
        namespace: str,
        org_id: Optional[UUID],
        project_id: Optional[UUID],
        subject: UUID | str,
        variant: Optional[str] = None,
    ) -> str:
        if namespace not in TENANT_NAMESPACES:
            raise ValueError(f"Unknown cache namespace: {namespace!r}")
        key = f"{KEY_PREFIX}:{namespace}:{_part(org_id)}:{_part(project_id)}:{subject}"
        return f"{key}:{variant}" if variant else key

    @staticmethod
    def index_key(subject: UUID | str) -> str:
        return f"{INDEX_PREFIX}:{subject}"

    @staticmethod
    def generation_key(subject: UUID | str) -> str:
        return f"{GENERATION_PREFIX}:{subject}"

    async def generation(self, subject: UUID | str) -> int:
        raw = await self._redis.get(self.generation_key(subject))
        return int(raw) if raw is not None else 0

    async def get(
        self,
        namespace: str,
        org_id: Optional[UUID],
        project_id: Optional[UUID],
        subject: UUID | str,
        variant: Optional[str] = None,
    ) -> Optional[Any]:
        raw = await self._redis.get(self.key(namespace, org_id, project_id, subject, variant))
        if raw is None:
            return None
        return json.loads(raw)

    async def set(
        self,
        namespace: str,
        org_id: Optional[UUID],
        project_id: Optional[UUID],
        subject: UUID | str,
        value: Any,
        variant: Optional[str] = None,
    ) -> None:
        key = self.key(namespace, org_id, project_id, subject, variant)
        index = self.index_key(subject)
        # Index first: a key that exists is always findable by invalidate_subject.
        await self._redis.sadd(index, key)
        await self._redis.expire(index, self._ttl * 2)
        await self._redis.set(key, json.dumps(value, default=str), ex=self._ttl)

    async def get_or_load(
        self,
        namespace: str,
        org_id: Optional[UUID],
        project_id: Optional[UUID],
        subject: UUID | str,
        loader: Callable[[], Awaitable[Any]],
        variant: Optional[str] = None,
    ) -> Any:
        cached = await self.get(namespace, org_id, project_id, subject, variant)
        if cached is not None:
            return cached
        seen = await self.generation(subject)
        value = await loader()
        # An invalidation that landed during the load makes this value stale.
        if await self.generation(subject) != seen:
            log.debug("cache.write_skipped", namespace=namespace, subject=str(subject))
            return value
        await self.set(namespace, org_id, project_id, subject, value, variant)
        if await self.generation(subject) != seen:
            await self._redis.delete(self.key(namespace, org_id, project_id, subject, variant))
            log.debug("cache.write_retracted", namespace=namespace, subject=str(subject))
        return value

    async def invalidate_subject(self, subject: UUID | str) -> int:
        """Drop every cached entry for ``subject`` across all tenants. Returns keys removed."""
        await self._redis.incr(self.generation_key(subject))
        index = self.index_key(subject)
        keys = list(await self._redis.smembers(index))
        removed = 0
        if keys:
            removed = await self._redis.delete(*keys)
        await self._redis.delete(index)
        log.debug("cache.invalidated", subject=str(subject), keys=len(keys))
        return removed

    async def invalidate_subjects(self, subjects: Iterable[UUID | str]) -> None:
        for subject in subjects:
            await self.invalidate_subject(subject)


async def get_cache() -> TenantScopedCache:
    """FastAPI dependency: the cache on the shared Redis connection."""
    return TenantScopedCache(await get_redis())


# ---------------------------------------------------------------------------
# Post-commit invalidation for membership writes
# ---------------------------------------------------------------------------

def mark_subject_stale(session: AsyncSession, subject: UUID | str) -> None:
    """Queue a subject's cache for invalidation once ``session`` commits."""
    session.info.setdefault(_PENDING_KEY, set()).add(str(subject))


def pending_invalidations(session: AsyncSession) -> set[str]:
    return set(session.info.get(_PENDING_KEY, ()))


async def flush_pending_invalidations(
    session: AsyncSession, cache: Optional[TenantScopedCache] = None
) -> None:
    subjects = session.info.pop(_PENDING_KEY, None)
    if not subjects:
        return
    cache = cache or await get_cache()
    await cache.invalidate_subjects(subjects)
