"""In-memory stand-in for the PostgreSQL client.

Same method surface as Database, backed by dicts. Used by the test suite and
for local demos (DATABASE_BACKEND=memory). Every read returns copies so
callers cannot mutate stored rows behind the store's back.
"""

import logging
from contextlib import asynccontextmanager

from resultspro_models import (
    AdminUser,
    Conversation,
    ConversationStatus,
    Message,
    MessageFilters,
    MessageTemplate,
    Milestone,
    UserRole,
)
from resultspro.errors import PersistenceError, ValidationError

logger = logging.getLogger(__name__)


class InMemoryDatabase:
    """Dict-backed database with the Database interface."""

    def __init__(self):
        self.connected = False
        self.admin_users: dict[str, AdminUser] = {}
        self.conversations: dict[str, Conversation] = {}
        self.messages: dict[str, Message] = {}
        self.templates: dict[str, MessageTemplate] = {}
        self.milestones: dict[tuple[str, str, int], Milestone] = {}

    async def connect(self):
        self.connected = True
        logger.info("Using in-memory database")

    async def disconnect(self):
        self.connected = False

    @asynccontextmanager
    async def connection(self):
        if not self.connected:
            raise PersistenceError("Database not connected")
        yield self

    async def ensure_tables_exist(self):
        async with self.connection():
            pass

    def clear(self):
        """Drop every row (test cleanup)."""
        self.admin_users.clear()
        self.conversations.clear()
        self.messages.clear()
        self.templates.clear()
        self.milestones.clear()

    # ============= Admin User Operations =============

    async def create_admin_user(self, admin: AdminUser) -> AdminUser:
        async with self.connection():
            if admin.admin_id in self.admin_users:
                raise PersistenceError(f"Admin {admin.admin_id} already exists")
            self.admin_users[admin.admin_id] = admin.model_copy(deep=True)
        return admin

    async def get_admin_user(self, admin_id: str) -> AdminUser | None:
        async with self.connection():
            admin = self.admin_users.get(admin_id)
        return admin.model_copy(deep=True) if admin else None

    async def list_admin_users(self, active_only: bool = True) -> list[AdminUser]:
        async with self.connection():
            admins = [
                a for a in self.admin_users.values() if a.active_status or not active_only
            ]
        return [a.model_copy(deep=True) for a in sorted(admins, key=lambda a: a.name)]

    # ============= Conversation Operations =============

    def _find_active(self, patient_id: str, admin_id: str) -> Conversation | None:
        for conversation in self.conversations.values():
            if (
                conversation.patient_id == patient_id
                and conversation.admin_id == admin_id
                and conversation.status == ConversationStatus.ACTIVE
            ):
                return conversation
        return None

    async def get_active_conversation(
        self, patient_id: str, admin_id: str
    ) -> Conversation | None:
        async with self.connection():
            conversation = self._find_active(patient_id, admin_id)
        return conversation.model_copy() if conversation else None

    async def create_conversation(self, patient_id: str, admin_id: str) -> Conversation:
        async with self.connection():
            conversation = self._find_active(patient_id, admin_id)
            if conversation is None:
                conversation = Conversation(patient_id=patient_id, admin_id=admin_id)
                self.conversations[conversation.id] = conversation
        return conversation.model_copy()

    async def get_conversation(self, conversation_id: str) -> Conversation | None:
        async with self.connection():
            conversation = self.conversations.get(conversation_id)
        return conversation.model_copy() if conversation else None

    async def list_conversations(
        self,
        role: UserRole,
        user_id: str,
        limit: int = 20,
        offset: int = 0,
        status: ConversationStatus | None = None,
        has_unread: bool = False,
    ) -> tuple[list[Conversation], int]:
        async with self.connection():
            matches = [
                c
                for c in self.conversations.values()
                if (c.patient_id if role == UserRole.PATIENT else c.admin_id) == user_id
                and (status is None or c.status == status)
                and (not has_unread or c.unread_for(user_id) > 0)
            ]
        # last_message_at DESC NULLS LAST, id ASC
        matches.sort(key=lambda c: c.id)
        matches.sort(
            key=lambda c: c.last_message_at.timestamp() if c.last_message_at else float("-inf"),
            reverse=True,
        )
        window = matches[offset : offset + limit]
        return [c.model_copy() for c in window], len(matches)

    async def update_conversation(
        self,
        conversation_id: str,
        status: ConversationStatus | None = None,
        admin_id: str | None = None,
    ) -> Conversation | None:
        async with self.connection():
            conversation = self.conversations.get(conversation_id)
            if conversation is None:
                return None
            new_status = status if status is not None else conversation.status
            new_admin = admin_id if admin_id is not None else conversation.admin_id
            if new_status == ConversationStatus.ACTIVE:
                clash = self._find_active(conversation.patient_id, new_admin)
                if clash is not None and clash.id != conversation.id:
                    raise ValidationError(
                        "The patient already has an active conversation with that admin"
                    )
            conversation.status = new_status
            conversation.admin_id = new_admin
        return conversation.model_copy()

    # ============= Message Operations =============

    async def append_message(self, message: Message) -> Conversation | None:
        async with self.connection():
            conversation = self.conversations.get(message.conversation_id)
            if conversation is None:
                return None
            self.messages[message.id] = message.model_copy(deep=True)
            conversation.last_message_at = message.created_at
            if message.recipient_id == conversation.patient_id:
                conversation.patient_unread_count += 1
            if message.recipient_id == conversation.admin_id:
                conversation.admin_unread_count += 1
        return conversation.model_copy()

    def _conversation_messages(self, conversation_id: str) -> list[Message]:
        rows = [m for m in self.messages.values() if m.conversation_id == conversation_id]
        rows.sort(key=lambda m: (m.created_at, m.id))
        return rows

    async def get_messages(
        self, conversation_id: str, limit: int = 50, offset: int = 0
    ) -> tuple[list[Message], int]:
        async with self.connection():
            rows = self._conversation_messages(conversation_id)
        newest_first = list(reversed(rows))
        window = newest_first[offset : offset + limit]
        window.reverse()
        return [m.model_copy(deep=True) for m in window], len(rows)

    async def get_latest_message(self, conversation_id: str) -> Message | None:
        async with self.connection():
            rows = self._conversation_messages(conversation_id)
        return rows[-1].model_copy(deep=True) if rows else None

    async def mark_messages_read(
        self, conversation_id: str, reader_role: UserRole, reader_id: str
    ) -> int:
        async with self.connection():
            changed = 0
            for message in self.messages.values():
                if (
                    message.conversation_id == conversation_id
                    and message.recipient_id == reader_id
                    and not message.read_status
                ):
                    message.read_status = True
                    changed += 1
            conversation = self.conversations.get(conversation_id)
            if conversation is not None:
                if reader_role == UserRole.PATIENT:
                    conversation.patient_unread_count = 0
                else:
                    conversation.admin_unread_count = 0
        return changed

    async def search_messages(
        self, filters: MessageFilters, limit: int = 50, offset: int = 0
    ) -> tuple[list[Message], int]:
        async with self.connection():
            rows = [m for m in self.messages.values() if filters.matches(m)]
        rows.sort(key=lambda m: (m.created_at, m.id), reverse=True)
        return [m.model_copy(deep=True) for m in rows[offset : offset + limit]], len(rows)

    # ============= Template Operations =============

    async def list_templates(
        self, admin_id: str, category: str | None = None
    ) -> list[MessageTemplate]:
        async with self.connection():
            rows = [
                t
                for t in self.templates.values()
                if t.visible_to(admin_id) and (category is None or t.category == category)
            ]
        rows.sort(key=lambda t: (t.created_at, t.id))
        return [t.model_copy() for t in rows]

    async def get_template(self, template_id: str) -> MessageTemplate | None:
        async with self.connection():
            template = self.templates.get(template_id)
        return template.model_copy() if template else None

    async def create_template(self, template: MessageTemplate) -> MessageTemplate:
        async with self.connection():
            self.templates[template.id] = template.model_copy()
        return template

    async def update_template(
        self,
        template_id: str,
        title: str | None = None,
        content: str | None = None,
        category: str | None = None,
        is_global: bool | None = None,
    ) -> MessageTemplate | None:
        async with self.connection():
            template = self.templates.get(template_id)
            if template is None:
                return None
            if title is not None:
                template.title = title
            if content is not None:
                template.content = content
            if category is not None:
                template.category = category
            if is_global is not None:
                template.is_global = is_global
        return template.model_copy()

    async def delete_template(self, template_id: str) -> bool:
        async with self.connection():
            return self.templates.pop(template_id, None) is not None

    async def increment_template_usage(self, template_id: str) -> bool:
        async with self.connection():
            template = self.templates.get(template_id)
            if template is None:
                return False
            template.usage_count += 1
        return True

    # ============= Milestone Operations =============

    async def list_milestones(self, patient_id: str) -> list[Milestone]:
        async with self.connection():
            rows = [m for m in self.milestones.values() if m.patient_id == patient_id]
        rows.sort(key=lambda m: (m.achieved_at, m.milestone_type.value, m.threshold))
        return [m.model_copy() for m in rows]

    async def record_milestone(self, milestone: Milestone) -> bool:
        key = (milestone.patient_id, milestone.milestone_type.value, milestone.threshold)
        async with self.connection():
            if key in self.milestones:
                return False
            self.milestones[key] = milestone.model_copy()
        return True
