"""Shared Pydantic models for Results Pro messaging."""

from resultspro_models.conversation import (
    Conversation,
    ConversationStatus,
    ConversationSummary,
    Message,
    MessageAttachment,
    MessageFilters,
    MessagePriority,
    MessageType,
    PatientContext,
    UserRole,
)
from resultspro_models.template import (
    QUICK_REPLY_CATEGORY,
    MessageTemplate,
    TemplateCategory,
    TemplateCreate,
    TemplateUpdate,
)
from resultspro_models.milestone import Milestone, MilestoneType, ProgressObservation
from resultspro_models.users import AdminRole, AdminUser, UserSession
from resultspro_models.result import ErrorKind, Page, Result

__all__ = [
    # Messaging
    "Conversation",
    "ConversationStatus",
    "ConversationSummary",
    "Message",
    "MessageAttachment",
    "MessageFilters",
    "MessagePriority",
    "MessageType",
    "PatientContext",
    "UserRole",
    # Templates
    "QUICK_REPLY_CATEGORY",
    "MessageTemplate",
    "TemplateCategory",
    "TemplateCreate",
    "TemplateUpdate",
    # Milestones
    "Milestone",
    "MilestoneType",
    "ProgressObservation",
    # Users
    "AdminRole",
    "AdminUser",
    "UserSession",
    # Wrappers
    "ErrorKind",
    "Page",
    "Result",
]
