"""Conversation and message facade used by the API and UI-side services."""

import logging
from typing import Awaitable, Callable

from resultspro_models import (
    Conversation,
    ConversationStatus,
    ConversationSummary,
    Message,
    MessageAttachment,
    MessageFilters,
    MessagePriority,
    MessageType,
    Page,
    PatientContext,
    UserRole,
)
from resultspro.config import settings
from resultspro.db import db as default_db
from resultspro.errors import NotFoundError, ValidationError
from resultspro.sse import (
    EventBus,
    event_bus,
    notify_conversation_read,
    notify_conversation_updated,
    notify_new_message,
)

logger = logging.getLogger(__name__)

PREVIEW_LENGTH = 100

# Resolves a patient ID to the externally owned patient snapshot
PatientLookup = Callable[[str], Awaitable[PatientContext | None]]


def parse_role(role: UserRole | str) -> UserRole:
    """Coerce a role string, rejecting anything but patient/admin."""
    try:
        return UserRole(role)
    except ValueError:
        raise ValidationError(f"Unknown role: {role!r}") from None


def page_window(page: int, page_size: int | None) -> tuple[int, int]:
    """Validate paging input and return (page_size, offset)."""
    size = page_size if page_size is not None else settings.default_page_size
    if page < 1:
        raise ValidationError("page must be 1 or greater")
    if size < 1 or size > settings.max_page_size:
        raise ValidationError(f"page_size must be between 1 and {settings.max_page_size}")
    return size, (page - 1) * size


class MessagingService:
    """Single entry point for sending messages and reading conversation state."""

    def __init__(
        self,
        database=None,
        bus: EventBus | None = None,
        patient_lookup: PatientLookup | None = None,
    ):
        self.db = database if database is not None else default_db
        self.bus = bus if bus is not None else event_bus
        self.patient_lookup = patient_lookup

    # ============= Conversations =============

    async def create_conversation(self, patient_id: str, admin_id: str) -> Conversation:
        """Return the pair's active conversation, creating it on first contact."""
        if not patient_id or not admin_id:
            raise ValidationError("patient_id and admin_id are required")
        if patient_id == admin_id:
            raise ValidationError("A conversation needs two different parties")

        existing = await self.db.get_active_conversation(patient_id, admin_id)
        if existing:
            return existing

        conversation = await self.db.create_conversation(patient_id, admin_id)
        logger.info(
            f"Conversation {conversation.id} ready for patient {patient_id} / admin {admin_id}"
        )
        return conversation

    async def get_conversation(self, conversation_id: str) -> Conversation:
        """Get a conversation or raise NotFoundError."""
        conversation = await self.db.get_conversation(conversation_id)
        if not conversation:
            raise NotFoundError("Conversation", conversation_id)
        return conversation

    async def get_conversations(
        self,
        role: UserRole | str,
        user_id: str,
        page: int = 1,
        page_size: int | None = None,
    ) -> Page[Conversation]:
        """Page through a user's conversations, most recent activity first."""
        role = parse_role(role)
        size, offset = page_window(page, page_size)
        conversations, total = await self.db.list_conversations(
            role, user_id, limit=size, offset=offset
        )
        return Page[Conversation](
            items=conversations, total=total, page=page, page_size=size
        )

    async def get_conversation_summaries(
        self,
        role: UserRole | str,
        user_id: str,
        page: int = 1,
        page_size: int | None = None,
        status: ConversationStatus | None = None,
        has_unread: bool = False,
    ) -> Page[ConversationSummary]:
        """Inbox rows with names and a preview of the latest message."""
        role = parse_role(role)
        size, offset = page_window(page, page_size)
        conversations, total = await self.db.list_conversations(
            role,
            user_id,
            limit=size,
            offset=offset,
            status=status,
            has_unread=has_unread,
        )

        admin_names: dict[str, str | None] = {}
        summaries = []
        for conversation in conversations:
            if conversation.admin_id not in admin_names:
                admin = await self.db.get_admin_user(conversation.admin_id)
                admin_names[conversation.admin_id] = admin.name if admin else None

            patient_name = f"Patient {conversation.patient_id}"
            if self.patient_lookup:
                patient = await self.patient_lookup(conversation.patient_id)
                if patient:
                    patient_name = patient.name

            latest = await self.db.get_latest_message(conversation.id)
            summaries.append(
                ConversationSummary(
                    id=conversation.id,
                    patient_id=conversation.patient_id,
                    patient_name=patient_name,
                    admin_id=conversation.admin_id,
                    admin_name=admin_names[conversation.admin_id],
                    status=conversation.status,
                    unread_count=conversation.unread_for(user_id),
                    last_message_at=conversation.last_message_at,
                    last_message_preview=latest.content[:PREVIEW_LENGTH] if latest else "",
                    priority=latest.priority if latest else MessagePriority.NORMAL,
                )
            )

        return Page[ConversationSummary](
            items=summaries, total=total, page=page, page_size=size
        )

    async def update_conversation_status(
        self, conversation_id: str, status: ConversationStatus
    ) -> Conversation:
        """Archive, close or reopen a conversation."""
        updated = await self.db.update_conversation(conversation_id, status=status)
        if not updated:
            raise NotFoundError("Conversation", conversation_id)
        await notify_conversation_updated(self.bus, updated)
        return updated

    async def assign_conversation(self, conversation_id: str, admin_id: str) -> Conversation:
        """Hand a conversation over to another admin."""
        if not admin_id:
            raise ValidationError("admin_id is required")
        current = await self.get_conversation(conversation_id)
        if current.patient_id == admin_id:
            raise ValidationError("A conversation needs two different parties")
        if current.admin_id == admin_id:
            return current

        updated = await self.db.update_conversation(conversation_id, admin_id=admin_id)
        if not updated:
            raise NotFoundError("Conversation", conversation_id)
        logger.info(
            f"Conversation {conversation_id} reassigned {current.admin_id} -> {admin_id}"
        )
        await notify_conversation_updated(
            self.bus, updated, previous_admin_id=current.admin_id
        )
        return updated

    # ============= Messages =============

    async def send_message(
        self,
        conversation_id: str,
        sender_id: str,
        recipient_id: str,
        content: str,
        message_type: MessageType = MessageType.GENERAL,
        priority: MessagePriority = MessagePriority.NORMAL,
        attachments: list[MessageAttachment] | None = None,
    ) -> Message:
        """Persist a message and bump the conversation for the recipient.

        The insert and the conversation update share one transaction.
        Subscribers of both parties get a message:new event afterwards.
        """
        if not content or not content.strip():
            raise ValidationError("Message content cannot be empty")

        conversation = await self.get_conversation(conversation_id)
        if conversation.status != ConversationStatus.ACTIVE:
            raise ValidationError(
                f"Conversation {conversation_id} is {conversation.status.value}"
            )
        parties = {conversation.patient_id, conversation.admin_id}
        if sender_id == recipient_id or {sender_id, recipient_id} != parties:
            raise ValidationError(
                "Sender and recipient must be the two parties of the conversation"
            )

        message = Message(
            conversation_id=conversation_id,
            sender_id=sender_id,
            recipient_id=recipient_id,
            content=content.strip(),
            message_type=message_type,
            priority=priority,
            attachments=attachments or [],
        )
        updated = await self.db.append_message(message)
        if updated is None:
            raise NotFoundError("Conversation", conversation_id)

        await notify_new_message(self.bus, message, updated)
        return message

    async def get_messages(
        self, conversation_id: str, page: int = 1, page_size: int | None = None
    ) -> Page[Message]:
        """Page through a conversation, page 1 being the most recent messages.

        Messages inside a page are oldest first.
        """
        size, offset = page_window(page, page_size)
        await self.get_conversation(conversation_id)
        messages, total = await self.db.get_messages(
            conversation_id, limit=size, offset=offset
        )
        return Page[Message](items=messages, total=total, page=page, page_size=size)

    async def mark_as_read(self, conversation_id: str, reader_id: str) -> Conversation:
        """Mark everything addressed to the reader as read and zero their counter."""
        conversation = await self.get_conversation(conversation_id)
        role = conversation.role_of(reader_id)
        if role is None:
            raise ValidationError(
                f"{reader_id} is not a party of conversation {conversation_id}"
            )

        marked = await self.db.mark_messages_read(conversation_id, role, reader_id)
        refreshed = await self.get_conversation(conversation_id)
        await notify_conversation_read(self.bus, refreshed, reader_id, marked)
        return refreshed

    async def search_messages(
        self, filters: MessageFilters, page: int = 1, page_size: int | None = None
    ) -> Page[Message]:
        """Search across conversations, newest first."""
        size, offset = page_window(page, page_size)
        if filters.date_from and filters.date_to and filters.date_from > filters.date_to:
            raise ValidationError("date_from must not be after date_to")
        messages, total = await self.db.search_messages(
            filters, limit=size, offset=offset
        )
        return Page[Message](items=messages, total=total, page=page, page_size=size)

    async def total_unread(self, role: UserRole | str, user_id: str) -> int:
        """Badge count: unread messages for the user across active conversations."""
        role = parse_role(role)
        total = 0
        offset = 0
        limit = settings.max_page_size
        while True:
            conversations, count = await self.db.list_conversations(
                role,
                user_id,
                limit=limit,
                offset=offset,
                status=ConversationStatus.ACTIVE,
                has_unread=True,
            )
            total += sum(c.unread_for(user_id) for c in conversations)
            offset += limit
            if offset >= count:
                return total
