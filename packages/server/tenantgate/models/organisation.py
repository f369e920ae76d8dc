"""Organisation model (tenant root)."""

from typing import Optional

from sqlmodel import Field, SQLModel

from .base import JSONType, SoftDeleteMixin, TimestampMixin, UUIDMixin


class Organisation(UUIDMixin, TimestampMixin, SoftDeleteMixin, SQLModel, table=True):
    __tablename__ = "organisations"

    name: str = Field(nullable=False, index=True)
    slug: str = Field(unique=True, nullable=False, index=True)
    display_name: Optional[str] = None
    settings: dict = Field(default_factory=dict, sa_type=JSONType, nullable=False)
    is_active: bool = Field(default=True, nullable=False)

    @property
    def is_available(self) -> bool:
        return self.is_active and not self.is_deleted
