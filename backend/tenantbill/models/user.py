from enum import Enum
from uuid import UUID

from sqlmodel import Field, Relationship

from tenantbill.models.base import TimestampedModel, UUIDModel
from tenantbill.models.organization import Organization


class UserRole(str, Enum):
    SUPER_ADMIN = "super_admin"
    OWNER = "owner"
    ADMIN = "admin"
    STYLIST = "stylist"
    USER = "user"


class User(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "users"

    organization_id: UUID = Field(foreign_key="organizations.id", index=True)

    email: str = Field(index=True, unique=True)
    full_name: str
    profile: str = Field(default=UserRole.USER.value)
    is_active: bool = Field(default=True)

    organization: Organization = Relationship(back_populates="users")
