"""
Tenant context: which organisation and project a session is looking at.

The context is rebuilt per request from the persisted selection, the session
overlay and the membership directory. States follow::

    uninitialized -> loading -> ready | no_access
                             \\-> error (retryable)

Rules:

- Selection priority is persisted choice, then the default flag, then the
  first available entry. Project selection prefers member projects and falls
  back to any visible project only for org admins (and system admins) who
  are members of none.
- Every switch invalidates the principal's tenant-scoped cache before it
  reads anything.
- A rejected switch raises ``InvalidTenantSelection`` and leaves the persisted
  selection untouched. A failed fetch moves the context to ``error``.
- Results of a switch that lost the generation race are discarded.
- An overlay the principal may no longer assume is pruned on load.
"""

from __future__ import annotations

import uuid
from typing import Optional

import structlog
from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError

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
from tenantgate_shared.permissions import ORG_ADMIN_ROLES
from tenantgate_shared.schemas.common import OrgRole, ProjectRole
from tenantgate_shared.schemas.context import (
    ContextState,
    OverlayRead,
    PermissionMapRead,
    TenantContextRead,
)
from tenantgate_shared.schemas.memberships import OrgMembershipSummary
from tenantgate_shared.schemas.projects import AccessibleProject

from tenantgate.context.stores import SelectionStore, SessionStore
from tenantgate.core.cache import (
    NS_ACCESSIBLE_PROJECTS,
    NS_ORG_MEMBERSHIPS,
    NS_UI_PERMISSIONS,
    TenantScopedCache,
)
from tenantgate.core.errors import (
    ContextSuperseded,
    ContextUnavailable,
    InvalidTenantSelection,
    StaleOverlay,
)
from tenantgate.core.metrics import MetricsCollector, metrics as default_metrics
from tenantgate.services.memberships import MembershipDirectory

log = structlog.get_logger()

FETCH_ERRORS = (SQLAlchemyError, RedisError, ConnectionError, TimeoutError)


def _may_enter(facts: AccessFacts) -> bool:
    if facts.is_system_admin:
        return facts.org_available
    return facts.has_org_access


class TenantContext:
    """Session-scoped organisation/project selection for one principal."""

    def __init__(
        self,
        principal_id: uuid.UUID,
        directory: MembershipDirectory,
        selections: SelectionStore,
        sessions: SessionStore,
        cache: TenantScopedCache,
        *,
        session_id: Optional[str] = None,
        collector: Optional[MetricsCollector] = None,
    ):
        self.principal_id = principal_id
        self.session_id = session_id
        self.directory = directory
        self.selections = selections
        self.sessions = sessions
        self.cache = cache
        self.metrics = collector or default_metrics

        self.state = ContextState.UNINITIALIZED
        self.organisation_id: Optional[uuid.UUID] = None
        self.project_id: Optional[uuid.UUID] = None
        self.organisations: list[OrgMembershipSummary] = []
        self.projects: list[AccessibleProject] = []
        self.facts: Optional[AccessFacts] = None
        self.overlay = ImpersonationOverlay()
        self.error: Optional[str] = None

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def current_organisation_id(self) -> Optional[uuid.UUID]:
        return self.organisation_id

    @property
    def current_project_id(self) -> Optional[uuid.UUID]:
        return self.project_id

    @property
    def is_ready(self) -> bool:
        return self.state == ContextState.READY

    # ------------------------------------------------------------------
    # Cached reads
    # ------------------------------------------------------------------

    async def _load_organisations(self) -> list[OrgMembershipSummary]:
        async def load():
            rows = await self.directory.organisations_for(self.principal_id)
            return [row.model_dump(mode="json") for row in rows]

        raw = await self.cache.get_or_load(
            NS_ORG_MEMBERSHIPS, None, None, self.principal_id, load
        )
        return [OrgMembershipSummary.model_validate(row) for row in raw]

    async def _load_projects(self, org_id: uuid.UUID) -> list[AccessibleProject]:
        async def load():
            rows = await self.directory.projects_for(org_id, self.principal_id)
            return [row.model_dump(mode="json") for row in rows]

        raw = await self.cache.get_or_load(
            NS_ACCESSIBLE_PROJECTS, org_id, None, self.principal_id, load
        )
        return [AccessibleProject.model_validate(row) for row in raw]

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    async def _pick_organisation(
        self,
        organisations: list[OrgMembershipSummary],
        persisted: Optional[uuid.UUID],
    ) -> Optional[uuid.UUID]:
        ids = [m.org_id for m in organisations]
        if persisted is not None:
            if persisted in ids:
                return persisted
            # System admins may have switched into an organisation they do not belong to.
            if _may_enter(await self.directory.access_facts(self.principal_id, persisted)):
                return persisted
        for membership in organisations:
            if membership.is_default:
                return membership.org_id
        return ids[0] if ids else None

    @staticmethod
    def _pick_project(
        facts: AccessFacts,
        projects: list[AccessibleProject],
        persisted: Optional[uuid.UUID],
    ) -> Optional[uuid.UUID]:
        if persisted is not None and any(p.id == persisted for p in projects):
            return persisted
        members = [p for p in projects if p.is_member]
        for project in members:
            if project.is_default:
                return project.id
        if members:
            return members[0].id
        if projects and (facts.is_system_admin or facts.org_role in ORG_ADMIN_ROLES):
            return projects[0].id
        return None

    # ------------------------------------------------------------------
    # Overlay
    # ------------------------------------------------------------------

    def _check_overlay(self, overlay: ImpersonationOverlay) -> None:
        rejected = rejected_parts(self.facts, overlay)
        if rejected:
            raise StaleOverlay(parts=rejected)

    async def _load_overlay(self) -> ImpersonationOverlay:
        overlay = await self.sessions.get_overlay()
        if not overlay.is_active:
            return overlay
        try:
            self._check_overlay(overlay)
        except StaleOverlay as exc:
            pruned = prune_overlay(self.facts, overlay)
            await self.sessions.set_overlay(pruned)
            await self.cache.invalidate_subject(self.principal_id)
            log.info(
                "overlay.stale_cleared",
                principal_id=str(self.principal_id),
                parts=exc.details.get("parts"),
            )
            return pruned
        return overlay

    # ------------------------------------------------------------------
    # State transitions
    # ------------------------------------------------------------------

    def _fail(self, exc: Exception) -> None:
        self.state = ContextState.ERROR
        self.error = "Tenant context could not be loaded"
        log.error(
            "context.fetch_failed",
            principal_id=str(self.principal_id),
            error=type(exc).__name__,
        )
        raise ContextUnavailable()

    def _superseded(self, operation: str) -> None:
        self.state = ContextState.LOADING
        log.info("context.switch_superseded", principal_id=str(self.principal_id), operation=operation)
        raise ContextSuperseded()

    def _clear_selection(self) -> None:
        self.organisation_id = None
        self.project_id = None
        self.projects = []
        self.facts = None
        self.overlay = ImpersonationOverlay()

    async def initialise(self) -> ContextState:
        """Load the context for a session, choosing and persisting a selection."""
        self.state = ContextState.LOADING
        self.error = None
        try:
            seen = await self.selections.generation()
            organisations = await self._load_organisations()
            persisted_org, persisted_project = await self.selections.get()
            wanted = persisted_org
            while True:
                org_id = await self._pick_organisation(organisations, wanted)
                if org_id is None:
                    self.organisations = []
                    self._clear_selection()
                    self.state = ContextState.NO_ACCESS
                    log.info("context.no_access", principal_id=str(self.principal_id))
                    return self.state
                facts = await self.directory.access_facts(self.principal_id, org_id)
                if _may_enter(facts):
                    break
                # The organisation list predates a membership removal.
                organisations = [m for m in organisations if m.org_id != org_id]
                if wanted == org_id:
                    wanted = None
                await self.cache.invalidate_subject(self.principal_id)
                log.warning(
                    "context.stale_membership_dropped",
                    principal_id=str(self.principal_id),
                    org_id=str(org_id),
                )

            projects = await self._load_projects(org_id)
            project_id = self._pick_project(
                facts, projects, persisted_project if org_id == persisted_org else None
            )
            if project_id is not None:
                facts = await self.directory.access_facts(self.principal_id, org_id, project_id)

            if (org_id, project_id) != (persisted_org, persisted_project):
                if not await self.selections.advance(seen):
                    self._superseded("initialise")
                await self.selections.set_organisation(org_id)
                await self.selections.set_project(project_id)

            self.organisations = organisations
            self.organisation_id = org_id
            self.projects = projects
            self.project_id = project_id
            self.facts = facts
            self.overlay = await self._load_overlay()
        except FETCH_ERRORS as exc:
            self._fail(exc)

        self.state = ContextState.READY
        return self.state

    async def switch_organisation(self, org_id: uuid.UUID) -> None:
        """Select another organisation. Clears the project and the whole overlay."""
        try:
            seen = await self.selections.generation()
            await self.cache.invalidate_subject(self.principal_id)

            facts = await self.directory.access_facts(self.principal_id, org_id)
            if not _may_enter(facts):
                log.warning(
                    "context.switch_rejected",
                    principal_id=str(self.principal_id),
                    org_id=str(org_id),
                )
                raise InvalidTenantSelection("You cannot switch to that organisation")

            organisations = await self._load_organisations()
            projects = await self._load_projects(org_id)

            if not await self.selections.advance(seen):
                self._superseded("organisation")
            await self.selections.set_organisation(org_id)
            await self.sessions.clear_overlay()
        except FETCH_ERRORS as exc:
            self._fail(exc)

        previous = self.organisation_id
        self.organisations = organisations
        self.organisation_id = org_id
        self.projects = projects
        self.project_id = None
        self.facts = facts
        self.overlay = ImpersonationOverlay()
        self.state = ContextState.READY
        self.error = None

        self.metrics.inc("context_switches_total", kind="organisation")
        log.info(
            "context.switched",
            principal_id=str(self.principal_id),
            kind="organisation",
            from_org=str(previous) if previous else None,
            to_org=str(org_id),
        )

    async def switch_project(self, project_id: uuid.UUID) -> None:
        """Select a project in the current organisation. Clears the project overlay half."""
        if not self.is_ready:
            raise InvalidTenantSelection("Select an organisation first")
        org_id = self.organisation_id
        try:
            seen = await self.selections.generation()
            await self.cache.invalidate_subject(self.principal_id)

            projects = await self._load_projects(org_id)
            if not any(p.id == project_id for p in projects):
                log.warning(
                    "context.switch_rejected",
                    principal_id=str(self.principal_id),
                    org_id=str(org_id),
                    project_id=str(project_id),
                )
                raise InvalidTenantSelection("You cannot switch to that project")
            facts = await self.directory.access_facts(self.principal_id, org_id, project_id)

            overlay = self.overlay.without_project_role()
            if not await self.selections.advance(seen):
                self._superseded("project")
            await self.selections.set_project(project_id)
            await self.sessions.set_overlay(overlay)
        except FETCH_ERRORS as exc:
            self._fail(exc)

        self.projects = projects
        self.project_id = project_id
        self.facts = facts
        self.overlay = overlay

        self.metrics.inc("context_switches_total", kind="project")
        log.info(
            "context.switched",
            principal_id=str(self.principal_id),
            kind="project",
            org_id=str(org_id),
            project_id=str(project_id),
        )

    async def logout(self) -> None:
        """Forget the persisted selection, the overlay and every cached read."""
        await self.cache.invalidate_subject(self.principal_id)
        await self.selections.clear()
        await self.sessions.clear_overlay()
        self.organisations = []
        self._clear_selection()
        self.state = ContextState.UNINITIALIZED
        log.info("context.logged_out", principal_id=str(self.principal_id))

    # ------------------------------------------------------------------
    # View as
    # ------------------------------------------------------------------

    async def set_overlay(
        self,
        org_role: Optional[OrgRole] = None,
        project_role: Optional[ProjectRole] = None,
    ) -> bool:
        """Replace the overlay. Returns False, changing nothing, when it is not allowed."""
        if not self.is_ready:
            raise InvalidTenantSelection("Select an organisation first")
        candidate = ImpersonationOverlay(org_role=org_role, project_role=project_role)
        rejected = rejected_parts(self.facts, candidate)
        if rejected:
            self.metrics.inc("overlay_rejected_total")
            log.warning(
                "overlay.rejected",
                principal_id=str(self.principal_id),
                org_id=str(self.organisation_id),
                project_id=str(self.project_id) if self.project_id else None,
                requested=candidate.to_dict(),
                rejected=rejected,
            )
            return False

        await self.cache.invalidate_subject(self.principal_id)
        await self.sessions.set_overlay(candidate)
        self.overlay = candidate
        log.info("overlay.set", principal_id=str(self.principal_id), overlay=candidate.to_dict())
        return True

    async def clear_overlay(self) -> None:
        await self.cache.invalidate_subject(self.principal_id)
        await self.sessions.clear_overlay()
        self.overlay = ImpersonationOverlay()
        log.info("overlay.cleared", principal_id=str(self.principal_id))

    # ------------------------------------------------------------------
    # Read models
    # ------------------------------------------------------------------

    async def permissions(self) -> PermissionMapRead:
        """Overlay-aware allow/deny map for UI gating. Never used for enforcement."""
        if not self.is_ready:
            return PermissionMapRead()
        effective = effective_facts(self.facts, self.overlay)

        async def load():
            return build_permission_map(effective)

        permission_map = await self.cache.get_or_load(
            NS_UI_PERMISSIONS,
            self.organisation_id,
            self.project_id,
            self.principal_id,
            load,
            variant=self.session_id,
        )
        return PermissionMapRead(
            organisation_id=self.organisation_id,
            project_id=self.project_id,
            effective_org_role=effective.org_role,
            effective_project_role=effective.project_role,
            is_impersonating=self.overlay.is_active,
            can_set_org_overlay=can_set_org_overlay(self.facts),
            can_set_project_overlay=can_set_project_overlay(self.facts),
            project_visible=permission_map["project_visible"],
            org=permission_map["org"],
            project=permission_map["project"],
        )

    def overlay_read(self) -> OverlayRead:
        return OverlayRead(
            org_role=self.overlay.org_role,
            project_role=self.overlay.project_role,
            is_active=self.overlay.is_active,
        )

    def snapshot(self) -> TenantContextRead:
        return TenantContextRead(
            state=self.state,
            organisation_id=self.organisation_id,
            project_id=self.project_id,
            org_role=self.facts.org_role if self.facts else None,
            project_role=self.facts.project_role if self.facts else None,
            organisations=self.organisations,
            projects=self.projects,
            overlay=self.overlay_read(),
            error=self.error,
        )
