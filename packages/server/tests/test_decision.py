"""
Tests for the decision procedure.

Covers:
- The pure procedure over hand-built facts, branch by branch
- Facts loaded from the database (soft deletes, inactive memberships, foreign projects)
- The Acme end-to-end scenario through AccessGuard
- Divergence handling between the pure procedure and the data-store clause
"""

from __future__ import annotations

import uuid
from unittest.mock import patch

import pytest

from tenantgate_shared.decision import AccessFacts, decide
from tenantgate_shared.schemas.common import (
    Decision,
    OrgAction,
    OrgResource,
    OrgRole,
    ProjectAction,
    ProjectListing,
    ProjectResource,
    ProjectRole,
    SystemRole,
)

from tenantgate.authz.facts import load_access_facts
from tenantgate.authz.guard import AccessGuard
from tenantgate.core.errors import Denied, EnforcementDivergence, NotFound
from tenantgate.core.metrics import MetricsCollector
from tenantgate.services.memberships import list_org_accessible_projects


def facts(**kwargs) -> AccessFacts:
    base = dict(principal_id=uuid.uuid4(), system_role=SystemRole.USER, org_id=uuid.uuid4())
    base.update(kwargs)
    return AccessFacts(**base)


# ---------------------------------------------------------------------------
# Pure procedure
# ---------------------------------------------------------------------------

class TestPureDecide:
    def test_system_admin_allowed_everything(self):
        f = facts(system_role=SystemRole.SYSTEM_ADMIN)
        assert decide(f, OrgResource.BILLING, OrgAction.MANAGE) is Decision.ALLOW
        assert decide(f, ProjectResource.EXPENSES, ProjectAction.APPROVE) is Decision.ALLOW

    def test_no_membership_denies_everything(self):
        f = facts(project_id=uuid.uuid4(), project_in_org=True, project_role=ProjectRole.ADMIN)
        assert decide(f, OrgResource.ORGANISATION, OrgAction.VIEW) is Decision.DENY
        assert decide(f, ProjectListing.PROJECT, ProjectAction.VIEW) is Decision.DENY
        assert decide(f, ProjectResource.DASHBOARD, ProjectAction.VIEW) is Decision.DENY

    def test_unavailable_organisation_denies_members(self):
        f = facts(org_role=OrgRole.OWNER, org_available=False)
        assert decide(f, OrgResource.ORGANISATION, OrgAction.VIEW) is Decision.DENY

    def test_org_resource_follows_org_table(self):
        f = facts(org_role=OrgRole.ADMIN)
        assert decide(f, OrgResource.MEMBERS, OrgAction.INVITE) is Decision.ALLOW
        assert decide(f, OrgResource.BILLING, OrgAction.EDIT) is Decision.DENY

    def test_org_admin_sees_project_but_not_its_data(self):
        f = facts(org_role=OrgRole.ADMIN, project_id=uuid.uuid4(), project_in_org=True)
        assert decide(f, ProjectListing.PROJECT, ProjectAction.VIEW) is Decision.ALLOW
        for resource in ProjectResource:
            assert decide(f, resource, ProjectAction.VIEW) is Decision.DENY

    def test_member_needs_project_membership_to_see_project(self):
        f = facts(org_role=OrgRole.MEMBER, project_id=uuid.uuid4(), project_in_org=True)
        assert decide(f, ProjectListing.PROJECT, ProjectAction.VIEW) is Decision.DENY
        f = f.with_roles(project_role=ProjectRole.CONTRIBUTOR)
        assert decide(f, ProjectListing.PROJECT, ProjectAction.VIEW) is Decision.ALLOW

    def test_project_listing_supports_view_only(self):
        f = facts(org_role=OrgRole.OWNER, project_id=uuid.uuid4(), project_in_org=True)
        assert decide(f, ProjectListing.PROJECT, ProjectAction.EDIT) is Decision.DENY

    def test_project_outside_org_is_denied(self):
        f = facts(org_role=OrgRole.OWNER, project_id=uuid.uuid4(), project_in_org=False)
        assert decide(f, ProjectListing.PROJECT, ProjectAction.VIEW) is Decision.DENY

    def test_project_data_follows_project_table(self):
        f = facts(
            org_role=OrgRole.MEMBER,
            project_id=uuid.uuid4(),
            project_in_org=True,
            project_role=ProjectRole.CUSTOMER_PM,
        )
        assert decide(f, ProjectResource.TIMESHEETS, ProjectAction.APPROVE) is Decision.ALLOW
        assert decide(f, ProjectResource.TIMESHEETS, ProjectAction.CREATE) is Decision.DENY

    def test_string_inputs(self):
        f = facts(org_role=OrgRole.OWNER)
        assert decide(f, "billing", "edit") is Decision.ALLOW

    def test_with_roles_ignores_project_role_outside_org(self):
        f = facts(org_role=OrgRole.MEMBER).with_roles(project_role=ProjectRole.ADMIN)
        assert f.project_role is None


# ---------------------------------------------------------------------------
# Loaded facts
# ---------------------------------------------------------------------------

class TestLoadAccessFacts:
    async def test_member_facts(self, session, acme):
        f = await load_access_facts(session, acme.carol.id, acme.org.id, acme.p1.id)
        assert f.org_role is OrgRole.MEMBER
        assert f.project_in_org
        assert f.project_role is ProjectRole.VIEWER

    async def test_inactive_membership_is_absent(self, session, acme, factory):
        other = await factory.org("Other")
        membership = await factory.org_member(acme.dave, other, OrgRole.ADMIN)
        membership.is_active = False
        session.add(membership)
        await session.commit()
        f = await load_access_facts(session, acme.dave.id, other.id)
        assert f.org_role is None

    async def test_project_of_another_org(self, session, acme, factory):
        other = await factory.org("Other")
        foreign = await factory.project(other, "Foreign")
        f = await load_access_facts(session, acme.alice.id, acme.org.id, foreign.id)
        assert not f.project_in_org
        assert f.project_role is None

    async def test_soft_deleted_project(self, session, acme):
        acme.p1.is_deleted = True
        session.add(acme.p1)
        await session.commit()
        f = await load_access_facts(session, acme.carol.id, acme.org.id, acme.p1.id)
        assert not f.project_in_org

    async def test_soft_deleted_org(self, session, acme):
        acme.org.is_deleted = True
        session.add(acme.org)
        await session.commit()
        f = await load_access_facts(session, acme.alice.id, acme.org.id)
        assert not f.org_available
        assert not f.has_org_access


# ---------------------------------------------------------------------------
# End-to-end scenario
# ---------------------------------------------------------------------------

class TestAcmeScenario:
    async def test_bob_lists_p1(self, session, acme):
        projects = await list_org_accessible_projects(acme.org.id, acme.bob.id, session)
        assert [p.id for p in projects] == [acme.p1.id]
        assert projects[0].membership_role is None

    async def test_bob_cannot_read_milestones(self, session, acme):
        guard = AccessGuard(session, acme.bob.id)
        verdict = await guard.decide(acme.org.id, acme.p1.id, ProjectResource.MILESTONES, ProjectAction.VIEW)
        assert verdict is Decision.DENY

    async def test_carol_reads_but_cannot_edit_milestones(self, session, acme):
        guard = AccessGuard(session, acme.carol.id)
        assert await guard.decide(acme.org.id, acme.p1.id, "milestones", "view") is Decision.ALLOW
        assert await guard.decide(acme.org.id, acme.p1.id, "milestones", "edit") is Decision.DENY

    async def test_outsider_sees_nothing(self, session, acme):
        guard = AccessGuard(session, acme.dave.id)
        assert await list_org_accessible_projects(acme.org.id, acme.dave.id, session) == []
        for resource in OrgResource:
            assert not await guard.allows(acme.org.id, None, resource, OrgAction.VIEW)

    async def test_system_admin_without_membership(self, session, acme, factory):
        root = await factory.user("root", system_role=SystemRole.SYSTEM_ADMIN)
        guard = AccessGuard(session, root.id)
        assert await guard.allows(acme.org.id, acme.p1.id, ProjectResource.FINANCIAL_DOCS, ProjectAction.SIGN)
        projects = await list_org_accessible_projects(acme.org.id, root.id, session)
        assert [p.id for p in projects] == [acme.p1.id]


# ---------------------------------------------------------------------------
# Guard behaviour
# ---------------------------------------------------------------------------

class TestAccessGuard:
    async def test_require_raises_denied(self, session, acme):
        guard = AccessGuard(session, acme.carol.id)
        with pytest.raises(Denied):
            await guard.require(acme.org.id, None, OrgResource.MEMBERS, OrgAction.INVITE)

    async def test_require_visible_raises_not_found(self, session, acme):
        guard = AccessGuard(session, acme.dave.id)
        with pytest.raises(NotFound):
            await guard.require_visible(acme.org.id, None, OrgResource.ORGANISATION)

    async def test_counts_decisions_and_denials(self, session, acme):
        collector = MetricsCollector()
        guard = AccessGuard(session, acme.carol.id, collector=collector)
        await guard.decide(acme.org.id, acme.p1.id, "milestones", "view")
        await guard.decide(acme.org.id, acme.p1.id, "milestones", "edit")
        assert collector.get("authz_decisions_total") == 2
        assert collector.get("authz_denied_total", resource="milestones") == 1
        assert collector.get("authz_divergence_total") == 0

    async def test_divergence_is_fatal_by_default(self, session, acme):
        collector = MetricsCollector()
        guard = AccessGuard(session, acme.carol.id, divergence_policy="fatal", collector=collector)
        with patch("tenantgate.authz.guard.decide", return_value=Decision.ALLOW):
            with pytest.raises(EnforcementDivergence):
                await guard.decide(acme.org.id, acme.p1.id, "milestones", "edit")
        assert collector.get("authz_divergence_total") == 1

    async def test_datastore_wins_when_configured(self, session, acme):
        guard = AccessGuard(
            session, acme.carol.id, divergence_policy="datastore", collector=MetricsCollector()
        )
        with patch("tenantgate.authz.guard.decide", return_value=Decision.ALLOW):
            verdict = await guard.decide(acme.org.id, acme.p1.id, "milestones", "edit")
        assert verdict is Decision.DENY
