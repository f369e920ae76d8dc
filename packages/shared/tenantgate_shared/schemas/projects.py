from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from .common import ProjectRole


class ProjectStatus(str, Enum):
    ACTIVE = "active"
    ON_HOLD = "on_hold"
    COMPLETED = "completed"
    ARCHIVED = "archived"


class ProjectCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    reference: str = Field(
        min_length=1,
        max_length=50,
        pattern=r"^[A-Za-z0-9][A-Za-z0-9_-]*$",
        description="Reference code, unique within the organisation",
    )
    description: Optional[str] = None
    status: ProjectStatus = ProjectStatus.ACTIVE


class ProjectUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = None
    status: Optional[ProjectStatus] = None


class ProjectRead(BaseModel):
    id: UUID
    org_id: UUID
    name: str
    reference: str
    description: Optional[str] = None
    status: ProjectStatus
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class AccessibleProject(BaseModel):
    """A project as listed for one principal, with their membership if any."""

    id: UUID
    org_id: UUID
    name: str
    reference: str
    status: ProjectStatus
    membership_role: Optional[ProjectRole] = None
    is_default: bool = False

    @property
    def is_member(self) -> bool:
        return self.membership_role is not None


class ProjectListResponse(BaseModel):
    data: List[AccessibleProject]
