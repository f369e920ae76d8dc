"""
Shared fixtures: a throwaway SQLite database per test, an in-memory Redis
double, and factories for principals, organisations, projects and memberships.
"""

from __future__ import annotations

import fnmatch
import os
import uuid
from types import SimpleNamespace
from typing import Optional

os.environ["TG_DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["TG_SECURE_COOKIES"] = "false"
os.environ["TG_LOG_FORMAT"] = "text"

import pytest
from httpx import ASGITransport, AsyncClient
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool
from sqlmodel import SQLModel

from tenantgate_shared.schemas.common import OrgRole, ProjectRole, SystemRole
from tenantgate_shared.schemas.organisations import OrgSettings

import tenantgate.models  # noqa: F401
from tenantgate.context import SelectionStore, SessionStore, TenantContext
from tenantgate.core import database
from tenantgate.core import redis as redis_module
from tenantgate.core.auth import Principal, create_jwt, hash_password
from tenantgate.core.cache import TenantScopedCache
from tenantgate.core.metrics import MetricsCollector, metrics
from tenantgate.models.org_membership import OrgMembership
from tenantgate.models.organisation import Organisation
from tenantgate.models.project import Project
from tenantgate.models.project_membership import ProjectMembership
from tenantgate.models.user import User
from tenantgate.services.memberships import MembershipDirectory

TEST_PASSWORD = "correct-horse-battery"


# ---------------------------------------------------------------------------
# Redis double
# ---------------------------------------------------------------------------

class InMemoryRedis:
    """The subset of ``redis.asyncio.Redis`` the service uses. TTLs are recorded, not enforced."""

    def __init__(self):
        self.values: dict[str, str] = {}
        self.sets: dict[str, set[str]] = {}
        self.ttls: dict[str, int] = {}
        self.fail = False

    def _check(self):
        if self.fail:
            raise RedisConnectionError("redis unavailable")

    async def get(self, key):
        self._check()
        return self.values.get(key)

    async def set(self, key, value, ex=None):
        self._check()
        self.values[key] = str(value)
        if ex is not None:
            self.ttls[key] = ex
        return True

    async def setex(self, key, ttl, value):
        return await self.set(key, value, ex=ttl)

    async def incr(self, key):
        self._check()
        value = int(self.values.get(key, 0)) + 1
        self.values[key] = str(value)
        return value

    async def exists(self, *keys):
        self._check()
        return sum(1 for k in keys if k in self.values or k in self.sets)

    async def delete(self, *keys):
        self._check()
        removed = 0
        for key in keys:
            if self.values.pop(key, None) is not None:
                removed += 1
            elif self.sets.pop(key, None) is not None:
                removed += 1
            self.ttls.pop(key, None)
        return removed

    async def sadd(self, key, *members):
        self._check()
        bucket = self.sets.setdefault(key, set())
        before = len(bucket)
        bucket.update(str(m) for m in members)
        return len(bucket) - before

    async def smembers(self, key):
        self._check()
        return set(self.sets.get(key, set()))

    async def expire(self, key, ttl):
        self._check()
        self.ttls[key] = ttl
        return True

    async def ping(self):
        self._check()
        return True

    async def aclose(self):
        return None

    def keys_matching(self, pattern: str) -> list[str]:
        return sorted(k for k in [*self.values, *self.sets] if fnmatch.fnmatch(k, pattern))


# ---------------------------------------------------------------------------
# Infrastructure fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def fake_redis(monkeypatch):
    client = InMemoryRedis()
    monkeypatch.setattr(redis_module, "_redis_pool", client)
    return client


@pytest.fixture
async def engine(tmp_path, monkeypatch):
    """A fresh SQLite database file per test, wired into the app's session factory."""
    test_engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'tenantgate.db'}", poolclass=NullPool
    )
    async with test_engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    factory = sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)
    monkeypatch.setattr(database, "engine", test_engine)
    monkeypatch.setattr(database, "async_session_factory", factory)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
async def session(engine, fake_redis):
    async with database.async_session_factory() as s:
        yield s


@pytest.fixture(autouse=True)
def reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
async def client(engine, fake_redis, monkeypatch):
    from tenantgate import main

    monkeypatch.setattr(main, "engine", engine)
    async with AsyncClient(transport=ASGITransport(app=main.app), base_url="http://test") as ac:
        yield ac


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------

class Factory:
    """Seed rows directly, bypassing the services, and commit them."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def _save(self, row):
        self.session.add(row)
        await self.session.commit()
        return row

    async def user(
        self,
        name: str = "user",
        *,
        system_role: SystemRole = SystemRole.USER,
        email: Optional[str] = None,
        password: Optional[str] = None,
    ) -> User:
        return await self._save(
            User(
                email=email or f"{name}-{uuid.uuid4().hex[:8]}@example.com",
                display_name=name.title(),
                system_role=system_role.value,
                password_hash=hash_password(password) if password else None,
            )
        )

    async def org(self, name: str = "Acme", *, settings: Optional[dict] = None, **kwargs) -> Organisation:
        slug = kwargs.pop("slug", None) or f"{name.lower()}-{uuid.uuid4().hex[:6]}"
        return await self._save(
            Organisation(
                name=name,
                slug=slug,
                settings=settings or OrgSettings().model_dump(mode="json"),
                **kwargs,
            )
        )

    async def org_member(
        self, user: User, org: Organisation, role: OrgRole = OrgRole.MEMBER, *, is_default: bool = False
    ) -> OrgMembership:
        return await self._save(
            OrgMembership(user_id=user.id, org_id=org.id, role=role.value, is_default=is_default)
        )

    async def project(self, org: Organisation, name: str = "P1", **kwargs) -> Project:
        reference = kwargs.pop("reference", None) or f"{name}-{uuid.uuid4().hex[:4]}"
        return await self._save(Project(org_id=org.id, name=name, reference=reference, **kwargs))

    async def project_member(
        self,
        user: User,
        project: Project,
        role: ProjectRole = ProjectRole.VIEWER,
        *,
        is_default: bool = False,
    ) -> ProjectMembership:
        return await self._save(
            ProjectMembership(
                user_id=user.id,
                project_id=project.id,
                org_id=project.org_id,
                role=role.value,
                is_default=is_default,
            )
        )


@pytest.fixture
def factory(session):
    return Factory(session)


def principal_for(user: User, session_id: Optional[str] = None) -> Principal:
    return Principal(user=user, session_id=session_id or uuid.uuid4().hex)


def bearer(user: User) -> dict:
    token, _ = create_jwt(user.id)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
async def acme(factory):
    """Acme: alice owner, bob admin, carol member; P1 has carol as viewer only."""
    alice = await factory.user("alice")
    bob = await factory.user("bob")
    carol = await factory.user("carol")
    dave = await factory.user("dave")  # belongs to no organisation
    org = await factory.org("Acme")
    await factory.org_member(alice, org, OrgRole.OWNER, is_default=True)
    await factory.org_member(bob, org, OrgRole.ADMIN, is_default=True)
    await factory.org_member(carol, org, OrgRole.MEMBER, is_default=True)
    p1 = await factory.project(org, "P1")
    await factory.project_member(carol, p1, ProjectRole.VIEWER)
    return SimpleNamespace(org=org, p1=p1, alice=alice, bob=bob, carol=carol, dave=dave)


def make_context(session, redis_client, user, *, session_id="sess-1", directory=None, collector=None):
    """A tenant context over the test database and Redis double, with its own metrics."""
    return TenantContext(
        user.id,
        directory or MembershipDirectory(session),
        SelectionStore(redis_client, user.id),
        SessionStore(redis_client, session_id, ttl_seconds=600),
        TenantScopedCache(redis_client, ttl_seconds=60),
        session_id=session_id,
        collector=collector or MetricsCollector(),
    )
