"""
Tests for the "view as" impersonation overlay.

Covers:
- Who may set an org or project overlay
- Overlays are downgrade-only
- Pruning of halves that became invalid
- Effective roles for UI gating, and that enforcement ignores the overlay
"""

from __future__ import annotations

import uuid

import pytest
from sqlalchemy import update

from tenantgate_shared.decision import AccessFacts
from tenantgate_shared.overlay import (
    ImpersonationOverlay,
    build_permission_map,
    can_set_org_overlay,
    can_set_project_overlay,
    effective_facts,
    prune_overlay,
    rejected_parts,
)
from tenantgate_shared.schemas.common import (
    OrgAction,
    OrgResource,
    OrgRole,
    ProjectAction,
    ProjectResource,
    ProjectRole,
    SystemRole,
)

from tenantgate.authz.guard import AccessGuard
from tenantgate.context import SessionStore
from tenantgate.core.errors import InvalidTenantSelection
from tenantgate.core.metrics import MetricsCollector
from tenantgate.models.org_membership import OrgMembership

from conftest import make_context


def facts(org_role=None, project_role=None, system_role=SystemRole.USER, in_project=True) -> AccessFacts:
    return AccessFacts(
        principal_id=uuid.uuid4(),
        system_role=system_role,
        org_id=uuid.uuid4(),
        org_role=org_role,
        project_id=uuid.uuid4() if in_project else None,
        project_in_org=in_project,
        project_role=project_role if in_project else None,
    )


# ---------------------------------------------------------------------------
# Pure rules
# ---------------------------------------------------------------------------

class TestWhoMaySet:
    def test_org_overlay_needs_org_admin(self):
        assert can_set_org_overlay(facts(OrgRole.OWNER))
        assert can_set_org_overlay(facts(OrgRole.ADMIN))
        assert not can_set_org_overlay(facts(OrgRole.MEMBER))
        assert can_set_org_overlay(facts(system_role=SystemRole.SYSTEM_ADMIN))

    def test_project_overlay_setters(self):
        assert can_set_project_overlay(facts(OrgRole.ADMIN))
        assert can_set_project_overlay(facts(OrgRole.MEMBER, ProjectRole.ADMIN))
        assert can_set_project_overlay(facts(OrgRole.MEMBER, ProjectRole.SUPPLIER_PM))
        assert not can_set_project_overlay(facts(OrgRole.MEMBER, ProjectRole.CUSTOMER_PM))
        assert not can_set_project_overlay(facts(OrgRole.MEMBER, ProjectRole.VIEWER))

    def test_project_overlay_needs_a_project(self):
        assert not can_set_project_overlay(facts(OrgRole.OWNER, in_project=False))


class TestDowngradeOnly:
    def test_admin_cannot_view_as_owner(self):
        assert rejected_parts(facts(OrgRole.ADMIN), ImpersonationOverlay(org_role=OrgRole.OWNER)) == ["org_role"]

    def test_admin_views_as_member(self):
        assert rejected_parts(facts(OrgRole.ADMIN), ImpersonationOverlay(org_role=OrgRole.MEMBER)) == []

    def test_supplier_pm_cannot_view_as_customer_pm(self):
        f = facts(OrgRole.MEMBER, ProjectRole.SUPPLIER_PM)
        overlay = ImpersonationOverlay(project_role=ProjectRole.CUSTOMER_PM)
        assert rejected_parts(f, overlay) == ["project_role"]

    def test_supplier_pm_views_as_contributor(self):
        f = facts(OrgRole.MEMBER, ProjectRole.SUPPLIER_PM)
        assert rejected_parts(f, ImpersonationOverlay(project_role=ProjectRole.CONTRIBUTOR)) == []

    def test_org_admin_without_project_role_cannot_pick_one(self):
        f = facts(OrgRole.ADMIN)
        assert rejected_parts(f, ImpersonationOverlay(project_role=ProjectRole.VIEWER)) == ["project_role"]

    def test_system_admin_may_pick_anything(self):
        f = facts(system_role=SystemRole.SYSTEM_ADMIN)
        overlay = ImpersonationOverlay(org_role=OrgRole.OWNER, project_role=ProjectRole.ADMIN)
        assert rejected_parts(f, overlay) == []

    def test_prune_keeps_valid_half(self):
        f = facts(OrgRole.ADMIN, ProjectRole.CONTRIBUTOR)
        overlay = ImpersonationOverlay(org_role=OrgRole.OWNER, project_role=ProjectRole.VIEWER)
        assert prune_overlay(f, overlay) == ImpersonationOverlay(project_role=ProjectRole.VIEWER)


class TestEffectiveFacts:
    def test_inactive_overlay_changes_nothing(self):
        f = facts(OrgRole.OWNER)
        assert effective_facts(f, ImpersonationOverlay()) is f

    def test_substitutes_roles(self):
        f = facts(OrgRole.OWNER, ProjectRole.ADMIN)
        effective = effective_facts(f, ImpersonationOverlay(OrgRole.MEMBER, ProjectRole.VIEWER))
        assert effective.org_role is OrgRole.MEMBER
        assert effective.project_role is ProjectRole.VIEWER

    def test_system_admin_previews_as_user(self):
        f = facts(OrgRole.MEMBER, system_role=SystemRole.SYSTEM_ADMIN)
        effective = effective_facts(f, ImpersonationOverlay(org_role=OrgRole.MEMBER))
        assert effective.system_role is SystemRole.USER
        assert not build_permission_map(effective)["org"]["billing"]["view"]

    def test_permission_map_shape(self):
        permission_map = build_permission_map(facts(OrgRole.MEMBER, ProjectRole.VIEWER))
        assert set(permission_map["org"]) == {r.value for r in OrgResource}
        assert set(permission_map["project"]) == {r.value for r in ProjectResource}
        assert permission_map["project_visible"] is True
        assert permission_map["project"]["milestones"]["view"] is True
        assert permission_map["project"]["milestones"]["edit"] is False

    def test_permission_map_without_project(self):
        permission_map = build_permission_map(facts(OrgRole.MEMBER, in_project=False))
        assert permission_map["project"] == {}
        assert permission_map["project_visible"] is False

    def test_round_trip(self):
        overlay = ImpersonationOverlay(OrgRole.MEMBER, ProjectRole.CONTRIBUTOR)
        assert ImpersonationOverlay.from_dict(overlay.to_dict()) == overlay
        assert ImpersonationOverlay.from_dict(None) == ImpersonationOverlay()


# ---------------------------------------------------------------------------
# Through the tenant context
# ---------------------------------------------------------------------------

class TestContextOverlay:
    async def test_requires_ready_context(self, session, fake_redis, acme):
        ctx = make_context(session, fake_redis, acme.alice)
        with pytest.raises(InvalidTenantSelection):
            await ctx.set_overlay(org_role=OrgRole.MEMBER)

    async def test_escalation_rejected_without_change(self, session, fake_redis, acme):
        collector = MetricsCollector()
        ctx = make_context(session, fake_redis, acme.carol, collector=collector)
        await ctx.initialise()

        assert await ctx.set_overlay(org_role=OrgRole.ADMIN) is False
        assert not ctx.overlay.is_active
        assert not (await SessionStore(fake_redis, "sess-1").get_overlay()).is_active
        assert collector.get("overlay_rejected_total") == 1

    async def test_partially_invalid_request_is_rejected_whole(self, session, fake_redis, acme):
        ctx = make_context(session, fake_redis, acme.bob)
        await ctx.initialise()
        # bob holds no project role on P1, so the project half is refused.
        assert await ctx.set_overlay(OrgRole.MEMBER, ProjectRole.VIEWER) is False
        assert not ctx.overlay.is_active

    async def test_overlay_changes_ui_permissions_only(self, session, fake_redis, acme):
        ctx = make_context(session, fake_redis, acme.alice)
        await ctx.initialise()
        before = await ctx.permissions()
        assert before.org["billing"]["edit"]

        assert await ctx.set_overlay(org_role=OrgRole.MEMBER)
        after = await ctx.permissions()
        assert after.is_impersonating
        assert after.effective_org_role is OrgRole.MEMBER
        assert not after.org["billing"]["edit"]
        assert not after.org["members"]["invite"]

        # Enforcement still sees the real owner.
        guard = AccessGuard(session, acme.alice.id)
        assert await guard.allows(acme.org.id, None, OrgResource.BILLING, OrgAction.EDIT)

    async def test_clear_overlay(self, session, fake_redis, acme):
        ctx = make_context(session, fake_redis, acme.alice)
        await ctx.initialise()
        await ctx.set_overlay(org_role=OrgRole.ADMIN)
        await ctx.permissions()

        await ctx.clear_overlay()
        permissions = await ctx.permissions()
        assert not permissions.is_impersonating
        assert permissions.org["billing"]["edit"]

    async def test_overlay_is_per_session(self, session, fake_redis, acme):
        laptop = make_context(session, fake_redis, acme.alice, session_id="laptop")
        await laptop.initialise()
        await laptop.set_overlay(org_role=OrgRole.MEMBER)

        phone = make_context(session, fake_redis, acme.alice, session_id="phone")
        await phone.initialise()
        assert not phone.overlay.is_active
        assert not (await phone.permissions()).is_impersonating

    async def test_stale_overlay_pruned_on_load(self, session, fake_redis, acme):
        ctx = make_context(session, fake_redis, acme.bob)
        await ctx.initialise()
        assert await ctx.set_overlay(org_role=OrgRole.MEMBER)

        # Demoted to member: org overlays are reserved for owners and admins.
        await session.execute(
            update(OrgMembership)
            .where(OrgMembership.user_id == acme.bob.id, OrgMembership.org_id == acme.org.id)
            .values(role=OrgRole.MEMBER.value)
        )
        await session.commit()

        reloaded = make_context(session, fake_redis, acme.bob)
        await reloaded.initialise()
        assert not reloaded.overlay.is_active
        assert not (await SessionStore(fake_redis, "sess-1").get_overlay()).is_active

    async def test_project_overlay_for_supplier_pm(self, session, fake_redis, acme, factory):
        erin = await factory.user("erin")
        await factory.org_member(erin, acme.org, OrgRole.MEMBER)
        await factory.project_member(erin, acme.p1, ProjectRole.SUPPLIER_PM)
        ctx = make_context(session, fake_redis, erin)
        await ctx.initialise()

        assert await ctx.set_overlay(project_role=ProjectRole.VIEWER)
        permissions = await ctx.permissions()
        assert permissions.effective_project_role is ProjectRole.VIEWER
        assert not permissions.project["milestones"]["submit"]

        guard = AccessGuard(session, erin.id)
        assert await guard.allows(acme.org.id, acme.p1.id, ProjectResource.MILESTONES, ProjectAction.SUBMIT)
