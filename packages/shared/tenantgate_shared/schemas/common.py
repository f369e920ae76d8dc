"""
Closed role, resource and action types shared by every enforcement site.

Each role axis (system, organisation, project) is its own enum so an unknown
or misspelled role fails loudly at the boundary instead of silently meaning
"no permissions".
"""

from __future__ import annotations

from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel


# ---------------------------------------------------------------------------
# Role axes
# ---------------------------------------------------------------------------

class SystemRole(str, Enum):
    SYSTEM_ADMIN = "system_admin"
    USER = "user"


class OrgRole(str, Enum):
    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"


class ProjectRole(str, Enum):
    ADMIN = "admin"
    SUPPLIER_PM = "supplier_pm"
    CUSTOMER_PM = "customer_pm"
    CONTRIBUTOR = "contributor"
    VIEWER = "viewer"


# ---------------------------------------------------------------------------
# Resources and actions
# ---------------------------------------------------------------------------

class OrgResource(str, Enum):
    ORGANISATION = "organisation"
    MEMBERS = "members"
    SETTINGS = "settings"
    BILLING = "billing"
    ORG_PROJECTS = "org_projects"


class OrgAction(str, Enum):
    VIEW = "view"
    CREATE = "create"
    EDIT = "edit"
    DELETE = "delete"
    MANAGE = "manage"
    INVITE = "invite"
    REMOVE = "remove"


class ProjectListing(str, Enum):
    """The "does this project exist / is it listable" resource."""

    PROJECT = "project"


class ProjectResource(str, Enum):
    DASHBOARD = "dashboard"
    MILESTONES = "milestones"
    DELIVERABLES = "deliverables"
    RESOURCES = "resources"
    TIMESHEETS = "timesheets"
    EXPENSES = "expenses"
    FINANCIAL_DOCS = "financial_docs"
    PROJECT_SETTINGS = "project_settings"
    TEAM = "team"


class ProjectAction(str, Enum):
    VIEW = "view"
    CREATE = "create"
    EDIT = "edit"
    DELETE = "delete"
    SUBMIT = "submit"
    APPROVE = "approve"
    SIGN = "sign"
    EXPORT = "export"


class Decision(str, Enum):
    ALLOW = "allow"
    DENY = "deny"

    @property
    def allowed(self) -> bool:
        return self is Decision.ALLOW


Resource = Union[OrgResource, ProjectListing, ProjectResource]
Action = Union[OrgAction, ProjectAction]

_RESOURCES: dict[str, Resource] = {
    member.value: member
    for enum_cls in (OrgResource, ProjectListing, ProjectResource)
    for member in enum_cls
}


class UnknownPermission(ValueError):
    """Raised when a resource or action name is not part of the closed vocabulary."""


def parse_resource(value: Union[str, Resource]) -> Resource:
    if isinstance(value, (OrgResource, ProjectListing, ProjectResource)):
        return value
    try:
        return _RESOURCES[value]
    except KeyError:
        raise UnknownPermission(f"Unknown resource: {value!r}") from None


def normalise_request(
    resource: Union[str, Resource], action: Union[str, Action]
) -> tuple[Resource, Action]:
    """Coerce a (resource, action) pair to the matching enum members.

    Organisation resources take ``OrgAction``; the project-listing resource and
    project resources take ``ProjectAction``.
    """
    resource = parse_resource(resource)
    action_cls = OrgAction if isinstance(resource, OrgResource) else ProjectAction
    try:
        return resource, action_cls(getattr(action, "value", action))
    except ValueError:
        raise UnknownPermission(
            f"Unknown action {action!r} for resource {resource.value!r}"
        ) from None


# ---------------------------------------------------------------------------
# Envelopes
# ---------------------------------------------------------------------------

class ErrorBody(BaseModel):
    code: str
    message: str
    status: int


class ErrorEnvelope(BaseModel):
    error: ErrorBody


class DecisionRead(BaseModel):
    """The answer to one access check, for collaborators that ask over HTTP."""
    organisation_id: str
    project_id: Optional[str] = None
    resource: str
    action: str
    decision: Decision
    allowed: bool
