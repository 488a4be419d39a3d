"""API-specific request and response models."""

from pydantic import BaseModel, Field

from resultspro_models import (
    Conversation,
    ConversationStatus,
    Message,
    MessageAttachment,
    MessagePriority,
    MessageType,
    Milestone,
)


class CreateConversationRequest(BaseModel):
    """Request to open (or fetch) the active conversation for a pair."""

    patient_id: str = Field(..., description="Patient party")
    admin_id: str = Field(..., description="Admin party")


class ConversationResponse(BaseModel):
    """Response model for conversation with its latest messages."""

    conversation: Conversation
    messages: list[Message] = Field(default_factory=list)


class SendMessageRequest(BaseModel):
    """Request model for sending a message."""

    content: str = Field(..., description="Message content")
    recipient_id: str | None = Field(
        None, description="Defaults to the other party of the conversation"
    )
    message_type: MessageType = MessageType.GENERAL
    priority: MessagePriority = MessagePriority.NORMAL
    attachments: list[MessageAttachment] = Field(default_factory=list)


class UpdateConversationRequest(BaseModel):
    """Change a conversation's status and/or assigned admin."""

    status: ConversationStatus | None = None
    admin_id: str | None = Field(None, description="Reassign to this admin")


class UnreadCountResponse(BaseModel):
    """Badge count for the caller."""

    count: int


class UseTemplateRequest(BaseModel):
    """Send a template into a conversation."""

    conversation_id: str
    recipient_id: str | None = Field(
        None, description="Defaults to the patient of the conversation"
    )
    message_type: MessageType = MessageType.ADMIN_RESPONSE
    priority: MessagePriority = MessagePriority.NORMAL


class ProgressResponse(BaseModel):
    """Milestones newly reached by a progress update."""

    milestones: list[Milestone] = Field(default_factory=list)


class ErrorResponse(BaseModel):
    """Body returned for handled service errors."""

    detail: str
    kind: str
    retryable: bool = False
