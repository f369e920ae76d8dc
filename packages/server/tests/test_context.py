"""
Tests for the tenant context.

Covers:
- Initialisation: no access, selection priority, persistence
- Organisation and project switches, including rejected switches
- Supersession of a switch by a newer one
- Fetch failures and recovery
- Logout and cache invalidation ordering
"""

from __future__ import annotations

import pytest
from sqlalchemy.exc import OperationalError

from tenantgate_shared.schemas.common import OrgRole, ProjectRole, SystemRole
from tenantgate_shared.schemas.context import ContextState

from tenantgate.context import SelectionStore, SessionStore
from tenantgate.core.cache import NS_ORG_MEMBERSHIPS, TenantScopedCache, flush_pending_invalidations
from tenantgate.core.errors import (
    ContextSuperseded,
    ContextUnavailable,
    InvalidTenantSelection,
)
from tenantgate.core.metrics import MetricsCollector
from tenantgate.services.memberships import MembershipDirectory, get_org_membership, remove_org_member

from conftest import make_context, principal_for


class RacingDirectory(MembershipDirectory):
    """Simulates a newer switch for the same principal landing mid-fetch."""

    def __init__(self, session, rival: SelectionStore):
        super().__init__(session)
        self.rival = rival

    async def projects_for(self, org_id, principal_id):
        await self.rival.advance(await self.rival.generation())
        return await super().projects_for(org_id, principal_id)


class RevokingDirectory(MembershipDirectory):
    """Commits a membership removal between reading the org list and returning it."""

    def __init__(self, session, revoke):
        super().__init__(session)
        self.revoke = revoke

    async def organisations_for(self, principal_id):
        rows = await super().organisations_for(principal_id)
        await self.revoke()
        return rows


class BrokenDirectory(MembershipDirectory):
    async def organisations_for(self, principal_id):
        raise OperationalError("SELECT 1", {}, Exception("database is down"))


@pytest.fixture
async def other_org(factory, acme):
    """A second organisation carol belongs to, with one project carol works on."""
    org = await factory.org("Globex")
    await factory.org_member(acme.carol, org, OrgRole.MEMBER)
    project = await factory.project(org, "G1")
    await factory.project_member(acme.carol, project, ProjectRole.CONTRIBUTOR)
    return org


# ---------------------------------------------------------------------------
# Initialisation
# ---------------------------------------------------------------------------

class TestInitialise:
    async def test_no_organisations(self, session, fake_redis, acme):
        ctx = make_context(session, fake_redis, acme.dave)
        assert await ctx.initialise() is ContextState.NO_ACCESS
        snapshot = ctx.snapshot()
        assert snapshot.organisation_id is None
        assert snapshot.organisations == []

    async def test_default_org_and_member_project(self, session, fake_redis, acme):
        ctx = make_context(session, fake_redis, acme.carol)
        assert await ctx.initialise() is ContextState.READY
        assert ctx.current_organisation_id == acme.org.id
        assert ctx.current_project_id == acme.p1.id
        assert ctx.facts.project_role is ProjectRole.VIEWER
        assert await SelectionStore(fake_redis, acme.carol.id).get() == (acme.org.id, acme.p1.id)

    async def test_org_admin_falls_back_to_visible_project(self, session, fake_redis, acme):
        ctx = make_context(session, fake_redis, acme.bob)
        await ctx.initialise()
        assert ctx.current_project_id == acme.p1.id
        assert ctx.snapshot().project_role is None

    async def test_plain_member_without_projects(self, session, fake_redis, acme, factory):
        frank = await factory.user("frank")
        await factory.org_member(frank, acme.org, OrgRole.MEMBER)
        ctx = make_context(session, fake_redis, frank)
        assert await ctx.initialise() is ContextState.READY
        assert ctx.current_organisation_id == acme.org.id
        assert ctx.current_project_id is None

    async def test_default_project_preferred(self, session, fake_redis, acme, factory):
        p0 = await factory.project(acme.org, "A-first")
        await factory.project_member(acme.carol, p0, ProjectRole.VIEWER)
        membership = await factory.project_member(
            acme.carol, await factory.project(acme.org, "Z-last"), ProjectRole.VIEWER, is_default=True
        )
        ctx = make_context(session, fake_redis, acme.carol)
        await ctx.initialise()
        assert ctx.current_project_id == membership.project_id

    async def test_persisted_choice_beats_default(self, session, fake_redis, acme, other_org):
        await SelectionStore(fake_redis, acme.carol.id).set_organisation(other_org.id)
        ctx = make_context(session, fake_redis, acme.carol)
        await ctx.initialise()
        assert ctx.current_organisation_id == other_org.id

    async def test_inaccessible_persisted_choice_is_ignored(self, session, fake_redis, acme, factory):
        elsewhere = await factory.org("Elsewhere")
        await SelectionStore(fake_redis, acme.carol.id).set_organisation(elsewhere.id)
        ctx = make_context(session, fake_redis, acme.carol)
        await ctx.initialise()
        assert ctx.current_organisation_id == acme.org.id
        assert await SelectionStore(fake_redis, acme.carol.id).get() == (acme.org.id, acme.p1.id)

    async def test_selection_survives_sessions(self, session, fake_redis, acme, other_org):
        first = make_context(session, fake_redis, acme.carol, session_id="first")
        await first.initialise()
        await first.switch_organisation(other_org.id)

        second = make_context(session, fake_redis, acme.carol, session_id="second")
        await second.initialise()
        assert second.current_organisation_id == other_org.id

    async def test_member_removed_mid_load_gets_no_access(self, session, fake_redis, acme):
        cache = TenantScopedCache(fake_redis, ttl_seconds=60)

        async def revoke():
            membership = await get_org_membership(acme.carol.id, acme.org.id, session)
            await remove_org_member(acme.org.id, membership.id, principal_for(acme.alice), session)
            await session.commit()
            await flush_pending_invalidations(session, cache)

        ctx = make_context(
            session, fake_redis, acme.carol, directory=RevokingDirectory(session, revoke)
        )
        assert await ctx.initialise() is ContextState.NO_ACCESS
        snapshot = ctx.snapshot()
        assert snapshot.organisation_id is None
        assert snapshot.organisations == []
        assert await cache.get(NS_ORG_MEMBERSHIPS, None, None, acme.carol.id) is None

    async def test_removed_member_keeps_remaining_org(self, session, fake_redis, acme, other_org):
        cache = TenantScopedCache(fake_redis, ttl_seconds=60)

        async def revoke():
            membership = await get_org_membership(acme.carol.id, acme.org.id, session)
            await remove_org_member(acme.org.id, membership.id, principal_for(acme.alice), session)
            await session.commit()
            await flush_pending_invalidations(session, cache)

        await SelectionStore(fake_redis, acme.carol.id).set_organisation(acme.org.id)
        ctx = make_context(
            session, fake_redis, acme.carol, directory=RevokingDirectory(session, revoke)
        )
        assert await ctx.initialise() is ContextState.READY
        assert ctx.current_organisation_id == other_org.id
        assert [o.org_id for o in ctx.snapshot().organisations] == [other_org.id]


# ---------------------------------------------------------------------------
# Switching
# ---------------------------------------------------------------------------

class TestSwitchOrganisation:
    async def test_switch_clears_project_and_overlay(self, session, fake_redis, acme, factory):
        globex = await factory.org("Globex")
        await factory.org_member(acme.bob, globex, OrgRole.MEMBER)
        collector = MetricsCollector()
        ctx = make_context(session, fake_redis, acme.bob, collector=collector)
        await ctx.initialise()
        assert await ctx.set_overlay(org_role=OrgRole.MEMBER)

        await ctx.switch_organisation(globex.id)

        assert ctx.current_organisation_id == globex.id
        assert ctx.current_project_id is None
        assert not ctx.overlay.is_active
        assert not (await SessionStore(fake_redis, "sess-1").get_overlay()).is_active
        assert await SelectionStore(fake_redis, acme.bob.id).get() == (globex.id, None)
        assert collector.get("context_switches_total", kind="organisation") == 1

    async def test_rejected_switch_leaves_selection(self, session, fake_redis, acme, factory):
        elsewhere = await factory.org("Elsewhere")
        ctx = make_context(session, fake_redis, acme.carol)
        await ctx.initialise()

        with pytest.raises(InvalidTenantSelection):
            await ctx.switch_organisation(elsewhere.id)
        assert ctx.current_organisation_id == acme.org.id
        assert ctx.is_ready
        assert await SelectionStore(fake_redis, acme.carol.id).get() == (acme.org.id, acme.p1.id)

    async def test_inactive_organisation_rejected(self, session, fake_redis, acme, other_org):
        other_org.is_active = False
        session.add(other_org)
        await session.commit()
        ctx = make_context(session, fake_redis, acme.carol)
        await ctx.initialise()
        with pytest.raises(InvalidTenantSelection):
            await ctx.switch_organisation(other_org.id)

    async def test_next_initialise_picks_project(self, session, fake_redis, acme, other_org):
        ctx = make_context(session, fake_redis, acme.carol)
        await ctx.initialise()
        await ctx.switch_organisation(other_org.id)
        assert ctx.current_project_id is None

        again = make_context(session, fake_redis, acme.carol)
        await again.initialise()
        assert again.current_organisation_id == other_org.id
        assert again.current_project_id is not None

    async def test_reads_are_fresh_after_switch(self, session, fake_redis, acme, factory):
        ctx = make_context(session, fake_redis, acme.carol)
        await ctx.initialise()
        assert [o.org_id for o in ctx.organisations] == [acme.org.id]

        # Membership granted out of band: the cached list is now stale.
        globex = await factory.org("Globex")
        await factory.org_member(acme.carol, globex, OrgRole.MEMBER)

        await ctx.switch_organisation(globex.id)
        assert {o.org_id for o in ctx.organisations} == {acme.org.id, globex.id}

    async def test_system_admin_enters_without_membership(self, session, fake_redis, acme, factory):
        root = await factory.user("root", system_role=SystemRole.SYSTEM_ADMIN)
        ctx = make_context(session, fake_redis, root)
        assert await ctx.initialise() is ContextState.NO_ACCESS

        await ctx.switch_organisation(acme.org.id)
        assert ctx.is_ready
        assert [p.id for p in ctx.projects] == [acme.p1.id]


class TestSwitchProject:
    async def test_requires_ready_context(self, session, fake_redis, acme):
        ctx = make_context(session, fake_redis, acme.carol)
        with pytest.raises(InvalidTenantSelection):
            await ctx.switch_project(acme.p1.id)

    async def test_switch_keeps_org_overlay_half(self, session, fake_redis, acme, factory):
        p2 = await factory.project(acme.org, "P2")
        await factory.project_member(acme.alice, acme.p1, ProjectRole.ADMIN)
        await factory.project_member(acme.alice, p2, ProjectRole.ADMIN)
        collector = MetricsCollector()
        ctx = make_context(session, fake_redis, acme.alice, collector=collector)
        await ctx.initialise()
        assert ctx.current_project_id == acme.p1.id
        assert await ctx.set_overlay(OrgRole.MEMBER, ProjectRole.VIEWER)

        await ctx.switch_project(p2.id)

        assert ctx.current_project_id == p2.id
        assert ctx.overlay.org_role is OrgRole.MEMBER
        assert ctx.overlay.project_role is None
        stored = await SessionStore(fake_redis, "sess-1").get_overlay()
        assert stored == ctx.overlay
        assert collector.get("context_switches_total", kind="project") == 1

    async def test_invisible_project_rejected(self, session, fake_redis, acme, factory):
        p2 = await factory.project(acme.org, "P2")
        ctx = make_context(session, fake_redis, acme.carol)
        await ctx.initialise()
        with pytest.raises(InvalidTenantSelection):
            await ctx.switch_project(p2.id)
        assert await SelectionStore(fake_redis, acme.carol.id).get() == (acme.org.id, acme.p1.id)

    async def test_project_of_another_organisation_rejected(self, session, fake_redis, acme, other_org):
        ctx = make_context(session, fake_redis, acme.carol)
        await ctx.initialise()
        globex_projects = await MembershipDirectory(session).projects_for(other_org.id, acme.carol.id)
        with pytest.raises(InvalidTenantSelection):
            await ctx.switch_project(globex_projects[0].id)


# ---------------------------------------------------------------------------
# Supersession and failure
# ---------------------------------------------------------------------------

class TestSupersession:
    async def test_initialise_loses_race(self, session, fake_redis, acme):
        rival = SelectionStore(fake_redis, acme.carol.id)
        ctx = make_context(session, fake_redis, acme.carol, directory=RacingDirectory(session, rival))
        with pytest.raises(ContextSuperseded):
            await ctx.initialise()
        assert ctx.state is ContextState.LOADING
        assert await rival.get() == (None, None)

    async def test_switch_loses_race(self, session, fake_redis, acme, other_org):
        ctx = make_context(session, fake_redis, acme.carol)
        await ctx.initialise()
        ctx.directory = RacingDirectory(session, SelectionStore(fake_redis, acme.carol.id))

        with pytest.raises(ContextSuperseded):
            await ctx.switch_organisation(other_org.id)
        assert ctx.state is ContextState.LOADING
        assert ctx.current_organisation_id == acme.org.id
        assert await SelectionStore(fake_redis, acme.carol.id).get() == (acme.org.id, acme.p1.id)


class TestFailures:
    async def test_redis_failure_moves_to_error(self, session, fake_redis, acme):
        ctx = make_context(session, fake_redis, acme.carol)
        fake_redis.fail = True
        with pytest.raises(ContextUnavailable):
            await ctx.initialise()
        assert ctx.state is ContextState.ERROR
        assert ctx.snapshot().error

        fake_redis.fail = False
        assert await ctx.initialise() is ContextState.READY
        assert ctx.snapshot().error is None

    async def test_database_failure_moves_to_error(self, session, fake_redis, acme):
        ctx = make_context(session, fake_redis, acme.carol, directory=BrokenDirectory(session))
        with pytest.raises(ContextUnavailable):
            await ctx.initialise()
        assert ctx.state is ContextState.ERROR

    async def test_failed_switch(self, session, fake_redis, acme, other_org):
        ctx = make_context(session, fake_redis, acme.carol)
        await ctx.initialise()
        fake_redis.fail = True
        with pytest.raises(ContextUnavailable):
            await ctx.switch_organisation(other_org.id)
        assert ctx.state is ContextState.ERROR


# ---------------------------------------------------------------------------
# Logout
# ---------------------------------------------------------------------------

class TestLogout:
    async def test_logout_forgets_everything(self, session, fake_redis, acme):
        ctx = make_context(session, fake_redis, acme.bob)
        await ctx.initialise()
        await ctx.set_overlay(org_role=OrgRole.MEMBER)
        await ctx.permissions()
        assert fake_redis.keys_matching(f"tg:cache:*:{acme.bob.id}*")

        await ctx.logout()

        assert ctx.state is ContextState.UNINITIALIZED
        assert ctx.current_organisation_id is None
        assert await SelectionStore(fake_redis, acme.bob.id).get() == (None, None)
        assert not (await SessionStore(fake_redis, "sess-1").get_overlay()).is_active
        assert fake_redis.keys_matching(f"tg:cache:*:{acme.bob.id}*") == []

    async def test_org_list_is_cached_per_subject(self, session, fake_redis, acme):
        ctx = make_context(session, fake_redis, acme.carol)
        await ctx.initialise()
        key = TenantScopedCache.key(NS_ORG_MEMBERSHIPS, None, None, acme.carol.id)
        assert key in fake_redis.values
        assert key in fake_redis.sets[TenantScopedCache.index_key(acme.carol.id)]
