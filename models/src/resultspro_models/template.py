"""Reusable message template models."""

from datetime import datetime, timezone
from pydantic import BaseModel, Field
import uuid


QUICK_REPLY_CATEGORY = "quick-reply"


class MessageTemplate(BaseModel):
    """A canned message body an admin can reuse."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), description="Template ID")
    admin_id: str = Field(..., description="Admin who owns the template")
    title: str = Field(..., description="Short name shown in the picker")
    content: str = Field(
        ...,
        description="Body text; placeholders like [PATIENT_NAME] are left as-is",
    )
    category: str = Field(..., description="general, safety, dosing, progress, ...")
    is_global: bool = Field(False, description="Visible to every admin when true")
    usage_count: int = Field(0, ge=0, description="Times the template was used")
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="Creation timestamp",
    )

    def visible_to(self, admin_id: str) -> bool:
        return self.is_global or self.admin_id == admin_id


class TemplateCategory(BaseModel):
    """Templates grouped under a display name."""

    name: str
    templates: list[MessageTemplate] = Field(default_factory=list)


class TemplateCreate(BaseModel):
    """Request to create a template."""

    title: str
    content: str
    category: str
    is_global: bool = False


class TemplateUpdate(BaseModel):
    """Partial template update. Unset fields are left alone."""

    title: str | None = None
    content: str | None = None
    category: str | None = None
    is_global: bool | None = None
