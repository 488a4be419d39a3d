"""Conversation and message models."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any
from pydantic import BaseModel, Field, computed_field, field_validator
import uuid


def _uuid() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ConversationStatus(str, Enum):
    """Lifecycle status of a conversation."""

    ACTIVE = "active"
    CLOSED = "closed"
    ARCHIVED = "archived"


class MessageType(str, Enum):
    """What a message is about."""

    GENERAL = "general"
    DOSING = "dosing"
    SAFETY = "safety"
    PROGRESS = "progress"
    ADMIN_RESPONSE = "admin_response"


class MessagePriority(str, Enum):
    """Priority levels for messages."""

    URGENT = "urgent"
    HIGH = "high"
    NORMAL = "normal"


class UserRole(str, Enum):
    """Which side of a conversation a user is on."""

    PATIENT = "patient"
    ADMIN = "admin"


class MessageAttachment(BaseModel):
    """File attached to a message (stored, not rendered)."""

    id: str = Field(default_factory=_uuid, description="Attachment ID")
    filename: str = Field(..., description="Original file name")
    url: str = Field(..., description="Where the file is stored")
    size: int = Field(0, ge=0, description="Size in bytes")
    type: str = Field("application/octet-stream", description="MIME type")


class Message(BaseModel):
    """A single message in a conversation."""

    id: str = Field(default_factory=_uuid, description="Unique message ID")
    conversation_id: str = Field(..., description="Parent conversation ID")
    sender_id: str = Field(..., description="User who sent the message")
    recipient_id: str = Field(..., description="User the message is addressed to")
    content: str = Field(..., description="Message content")
    message_type: MessageType = Field(
        default=MessageType.GENERAL, description="Message category"
    )
    priority: MessagePriority = Field(
        default=MessagePriority.NORMAL, description="Priority level"
    )
    read_status: bool = Field(False, description="Whether the recipient has read it")
    attachments: list[MessageAttachment] = Field(
        default_factory=list, description="Attached files"
    )
    created_at: datetime = Field(default_factory=_now, description="Creation timestamp")


class Conversation(BaseModel):
    """A durable thread between one patient and one admin."""

    id: str = Field(default_factory=_uuid, description="Unique conversation ID")
    patient_id: str = Field(..., description="Patient party")
    admin_id: str = Field(..., description="Admin party")
    status: ConversationStatus = Field(
        default=ConversationStatus.ACTIVE, description="Conversation status"
    )
    patient_unread_count: int = Field(
        0, ge=0, description="Messages the patient has not read yet"
    )
    admin_unread_count: int = Field(
        0, ge=0, description="Messages the admin has not read yet"
    )
    last_message_at: datetime | None = Field(
        None, description="Timestamp of the most recent message"
    )
    created_at: datetime = Field(default_factory=_now, description="Creation timestamp")

    @computed_field
    @property
    def unread_count(self) -> int:
        """Unread messages across both parties."""
        return self.patient_unread_count + self.admin_unread_count

    def has_party(self, user_id: str) -> bool:
        return user_id in (self.patient_id, self.admin_id)

    def role_of(self, user_id: str) -> UserRole | None:
        """Which side of this conversation a user is on, if any."""
        if user_id == self.patient_id:
            return UserRole.PATIENT
        if user_id == self.admin_id:
            return UserRole.ADMIN
        return None

    def unread_for(self, user_id: str) -> int:
        """Unread count from one party's point of view."""
        role = self.role_of(user_id)
        if role == UserRole.PATIENT:
            return self.patient_unread_count
        if role == UserRole.ADMIN:
            return self.admin_unread_count
        return 0


class ConversationSummary(BaseModel):
    """Inbox row: a conversation plus display data for its latest message."""

    id: str
    patient_id: str
    patient_name: str
    admin_id: str
    admin_name: str | None = None
    status: ConversationStatus
    unread_count: int = 0
    last_message_at: datetime | None = None
    last_message_preview: str = ""
    priority: MessagePriority = MessagePriority.NORMAL


class MessageFilters(BaseModel):
    """Search criteria for messages. Unset fields do not filter."""

    patient_id: str | None = None
    admin_id: str | None = None
    message_type: MessageType | None = None
    priority: MessagePriority | None = None
    read_status: bool | None = None
    search_query: str | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None

    @field_validator("date_from", "date_to")
    @classmethod
    def assume_utc(cls, value: datetime | None) -> datetime | None:
        """Dates without a timezone are taken as UTC."""
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def matches(self, message: Message) -> bool:
        """Apply the filters to a message in memory."""
        if self.patient_id and self.patient_id not in (
            message.sender_id,
            message.recipient_id,
        ):
            return False
        if self.admin_id and self.admin_id not in (
            message.sender_id,
            message.recipient_id,
        ):
            return False
        if self.message_type and message.message_type != self.message_type:
            return False
        if self.priority and message.priority != self.priority:
            return False
        if self.read_status is not None and message.read_status != self.read_status:
            return False
        if self.search_query and self.search_query.lower() not in message.content.lower():
            return False
        if self.date_from and message.created_at < self.date_from:
            return False
        if self.date_to and message.created_at > self.date_to:
            return False
        return True


class PatientContext(BaseModel):
    """Read-only patient snapshot shown beside a chat. Owned elsewhere."""

    id: str
    name: str
    email: str | None = None
    peptide_type: str | None = None
    start_date: datetime | None = None
    current_week: int = 0
    last_weight: float | None = None
    compliance_rate: float | None = None
    recent_side_effects: list[str] = Field(default_factory=list)
    status: str = "active"
    extra: dict[str, Any] = Field(default_factory=dict)
