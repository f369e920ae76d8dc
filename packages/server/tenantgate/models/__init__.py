# SQLModel definitions: imported here to ensure metadata is populated for Alembic.
from .base import UUIDMixin, TimestampMixin  # noqa: F401
from .user import User  # noqa: F401
from .organisation import Organisation  # noqa: F401
from .org_membership import OrgMembership  # noqa: F401
from .project import Project  # noqa: F401
from .project_membership import ProjectMembership  # noqa: F401
from .invitation import OrgInvitation  # noqa: F401
from .audit import AuditEntry  # noqa: F401
