"""
Organisation schemas: CRUD requests/responses and the settings bag.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, EmailStr, Field

from .common import OrgRole


# ---------------------------------------------------------------------------
# Org Settings sub-models
# ---------------------------------------------------------------------------

class FeatureSettings(BaseModel):
    ai_chat: bool = True
    receipt_scanner: bool = True
    variations: bool = True
    report_builder: bool = True


class DefaultsSettings(BaseModel):
    currency: str = Field(default="GBP", min_length=3, max_length=3)
    hours_per_day: int = Field(default=8, ge=1, le=24)
    date_format: str = "DD/MM/YYYY"
    timezone: str = "Europe/London"
    locale: str = "en-GB"


class BrandingSettings(BaseModel):
    logo_url: Optional[str] = None
    primary_color: str = Field(default="#10b981", pattern=r"^#[0-9a-fA-F]{6}$")


class BillingSettings(BaseModel):
    plan: str = "free"
    billing_email: Optional[EmailStr] = None


class LimitsSettings(BaseModel):
    max_projects: Optional[int] = Field(
        default=None,
        ge=1,
        description="Maximum live projects (null = unlimited)",
    )
    max_members: Optional[int] = Field(
        default=None,
        ge=1,
        description="Maximum active members (null = unlimited)",
    )


class OrgSettings(BaseModel):
    """Complete org-level settings schema. All fields optional with defaults."""

    features: FeatureSettings = Field(default_factory=FeatureSettings)
    defaults: DefaultsSettings = Field(default_factory=DefaultsSettings)
    branding: BrandingSettings = Field(default_factory=BrandingSettings)
    billing: BillingSettings = Field(default_factory=BillingSettings)
    limits: LimitsSettings = Field(default_factory=LimitsSettings)


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------

class OrgCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100, description="Organisation name")
    slug: str = Field(
        ...,
        min_length=2,
        max_length=50,
        pattern=r"^[a-z0-9][a-z0-9-]*[a-z0-9]$",
        description="URL-safe org identifier",
    )
    display_name: Optional[str] = Field(None, max_length=200)


class OrgUpdateRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    display_name: Optional[str] = Field(None, max_length=200)
    settings: Optional[dict] = Field(
        None,
        description="Partial settings update, deep-merged section by section",
    )


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------

class OrgResponse(BaseModel):
    id: uuid.UUID
    name: str
    slug: str
    display_name: Optional[str] = None
    is_active: bool
    settings: OrgSettings
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class OrgListItem(BaseModel):
    id: uuid.UUID
    name: str
    slug: str
    role: OrgRole  # the requesting principal's role in this org
    is_default: bool = False

    model_config = {"from_attributes": True}


class OrgListResponse(BaseModel):
    data: list[OrgListItem]
