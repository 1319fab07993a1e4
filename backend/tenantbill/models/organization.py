from typing import List, TYPE_CHECKING

from sqlmodel import Field, Relationship

from tenantbill.models.base import TimestampedModel, UUIDModel

if TYPE_CHECKING:  # pragma: no cover
    from tenantbill.models.user import User


class Organization(UUIDModel, TimestampedModel, table=True):
    """Tenant that owns every billing row. Managed by the identity service."""

    __tablename__ = "organizations"

    name: str = Field(index=True)
    slug: str = Field(unique=True, index=True)
    is_active: bool = Field(default=True)

    users: List["User"] = Relationship(back_populates="organization")
