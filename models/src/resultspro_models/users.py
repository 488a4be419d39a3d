"""Admin user and session models."""

from datetime import datetime, timezone
from enum import Enum
from pydantic import BaseModel, Field
import uuid

from resultspro_models.conversation import UserRole


class AdminRole(str, Enum):
    """Permission tiers for portal staff."""

    SUPPORT = "support"
    COORDINATOR = "coordinator"
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"


class AdminUser(BaseModel):
    """A staff member who answers patients."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), description="Row ID")
    admin_id: str = Field(..., description="Public admin identifier")
    name: str = Field(..., description="Display name")
    email: str = Field(..., description="Contact email")
    role: AdminRole = Field(default=AdminRole.SUPPORT, description="Permission tier")
    department: str | None = Field(None, description="Team or department")
    phone: str | None = Field(None, description="Contact phone")
    timezone: str = Field("UTC", description="IANA timezone name")
    active_status: bool = Field(True, description="False for deactivated staff")
    permissions: list[str] = Field(default_factory=list, description="Extra grants")
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="Creation timestamp",
    )


class UserSession(BaseModel):
    """The signed-in caller, passed explicitly to client-side services."""

    user_id: str
    role: UserRole
    name: str | None = None
