"""
The access check entity services call before every read or write.

Each check evaluates the shared pure procedure over freshly loaded facts and
the data-store clause, and compares them. The two must agree; a disagreement
is logged critical and counted, and either fails the request (``fatal``) or
lets the data-store answer stand (``datastore``).
"""

from __future__ import annotations

import uuid
from typing import Optional, Union

import structlog
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from tenantgate_shared.decision import AccessFacts, decide
from tenantgate_shared.schemas.common import Action, Decision, Resource, normalise_request

from tenantgate.authz.facts import load_access_facts
from tenantgate.authz.predicates import decision_clause
from tenantgate.core.config import get_settings
from tenantgate.core.errors import Denied, EnforcementDivergence, NotFound
from tenantgate.core.metrics import MetricsCollector, metrics as default_metrics

log = structlog.get_logger()


class AccessGuard:
    """Authorization for one principal within one database session."""

    def __init__(
        self,
        session: AsyncSession,
        principal_id: uuid.UUID,
        *,
        divergence_policy: Optional[str] = None,
        collector: Optional[MetricsCollector] = None,
    ):
        self.session = session
        self.principal_id = principal_id
        self.divergence_policy = divergence_policy or get_settings().divergence_policy
        self.metrics = collector or default_metrics

    async def facts(
        self, org_id: uuid.UUID, project_id: Optional[uuid.UUID] = None
    ) -> AccessFacts:
        return await load_access_facts(self.session, self.principal_id, org_id, project_id)

    async def decide(
        self,
        org_id: uuid.UUID,
        project_id: Optional[uuid.UUID],
        resource: Union[str, Resource],
        action: Union[str, Action],
    ) -> Decision:
        resource, action = normalise_request(resource, action)
        facts = await self.facts(org_id, project_id)
        pure = decide(facts, resource, action)
        stored = bool(
            await self.session.scalar(
                select(decision_clause(self.principal_id, org_id, project_id, resource, action))
            )
        )
        self.metrics.inc("authz_decisions_total", resource=resource.value)

        verdict = pure
        if pure.allowed != stored:
            self.metrics.inc("authz_divergence_total", resource=resource.value)
            log.critical(
                "authz.divergence",
                principal_id=str(self.principal_id),
                org_id=str(org_id),
                project_id=str(project_id) if project_id else None,
                resource=resource.value,
                action=action.value,
                procedure=pure.value,
                datastore="allow" if stored else "deny",
            )
            if self.divergence_policy == "fatal":
                raise EnforcementDivergence()
            verdict = Decision.ALLOW if stored else Decision.DENY

        if not verdict.allowed:
            self.metrics.inc("authz_denied_total", resource=resource.value)
        log.debug(
            "authz.decided",
            resource=resource.value,
            action=action.value,
            org_id=str(org_id),
            decision=verdict.value,
        )
        return verdict

    async def allows(
        self,
        org_id: uuid.UUID,
        project_id: Optional[uuid.UUID],
        resource: Union[str, Resource],
        action: Union[str, Action],
    ) -> bool:
        return (await self.decide(org_id, project_id, resource, action)).allowed

    async def require(
        self,
        org_id: uuid.UUID,
        project_id: Optional[uuid.UUID],
        resource: Union[str, Resource],
        action: Union[str, Action],
        message: Optional[str] = None,
    ) -> None:
        """Raise ``Denied`` unless allowed. For writes."""
        if not await self.allows(org_id, project_id, resource, action):
            raise Denied(message)

    async def require_visible(
        self,
        org_id: uuid.UUID,
        project_id: Optional[uuid.UUID],
        resource: Union[str, Resource],
        message: Optional[str] = None,
    ) -> None:
        """Raise ``NotFound`` unless ``view`` is allowed, so denied rows look absent."""
        if not await self.allows(org_id, project_id, resource, "view"):
            raise NotFound(message)
