"""PostgreSQL client for conversations, messages, templates and milestones."""

import json
import logging
import asyncpg
from typing import Any
from contextlib import asynccontextmanager

from resultspro_models import (
    AdminUser,
    Conversation,
    ConversationStatus,
    Message,
    MessageAttachment,
    MessageFilters,
    MessageTemplate,
    Milestone,
    UserRole,
)
from resultspro.config import settings
from resultspro.errors import PersistenceError, ValidationError

logger = logging.getLogger(__name__)


SCHEMA_SQL = """
-- Portal staff
CREATE TABLE IF NOT EXISTS admin_users (
    id TEXT PRIMARY KEY,
    admin_id TEXT NOT NULL UNIQUE,
    name TEXT NOT NULL,
    email TEXT NOT NULL,
    role TEXT NOT NULL DEFAULT 'support',
    department TEXT,
    phone TEXT,
    timezone TEXT NOT NULL DEFAULT 'UTC',
    active_status BOOLEAN NOT NULL DEFAULT TRUE,
    permissions JSONB DEFAULT '[]',
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

-- Patient <-> admin threads
CREATE TABLE IF NOT EXISTS conversations (
    id TEXT PRIMARY KEY,
    patient_id TEXT NOT NULL,
    admin_id TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'active',
    patient_unread_count INTEGER NOT NULL DEFAULT 0 CHECK (patient_unread_count >= 0),
    admin_unread_count INTEGER NOT NULL DEFAULT 0 CHECK (admin_unread_count >= 0),
    last_message_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE UNIQUE INDEX IF NOT EXISTS uq_conversations_active_pair
    ON conversations(patient_id, admin_id) WHERE status = 'active';
CREATE INDEX IF NOT EXISTS idx_conversations_patient ON conversations(patient_id);
CREATE INDEX IF NOT EXISTS idx_conversations_admin ON conversations(admin_id);

-- Messages (append-only, read_status is the only mutable column)
CREATE TABLE IF NOT EXISTS messages (
    id TEXT PRIMARY KEY,
    conversation_id TEXT NOT NULL REFERENCES conversations(id),
    sender_id TEXT NOT NULL,
    recipient_id TEXT NOT NULL,
    content TEXT NOT NULL CHECK (length(btrim(content)) > 0),
    message_type TEXT NOT NULL DEFAULT 'general',
    priority TEXT NOT NULL DEFAULT 'normal',
    read_status BOOLEAN NOT NULL DEFAULT FALSE,
    attachments JSONB DEFAULT '[]',
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages(conversation_id, created_at);
CREATE INDEX IF NOT EXISTS idx_messages_recipient_unread ON messages(recipient_id) WHERE NOT read_status;

-- Canned replies
CREATE TABLE IF NOT EXISTS message_templates (
    id TEXT PRIMARY KEY,
    admin_id TEXT NOT NULL,
    title TEXT NOT NULL,
    content TEXT NOT NULL,
    category TEXT NOT NULL,
    is_global BOOLEAN NOT NULL DEFAULT FALSE,
    usage_count INTEGER NOT NULL DEFAULT 0,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_message_templates_admin ON message_templates(admin_id);

-- Milestones (one row per patient, ladder and threshold)
CREATE TABLE IF NOT EXISTS patient_milestones (
    id TEXT PRIMARY KEY,
    patient_id TEXT NOT NULL,
    milestone_type TEXT NOT NULL,
    threshold INTEGER NOT NULL,
    message TEXT NOT NULL DEFAULT '',
    achieved_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    UNIQUE (patient_id, milestone_type, threshold)
);
"""


def _load_json(value: Any, default: Any) -> Any:
    if value is None:
        return default
    if isinstance(value, (list, dict)):
        return value
    return json.loads(value)


def _unread_column(role: UserRole) -> str:
    return "patient_unread_count" if role == UserRole.PATIENT else "admin_unread_count"


def _party_column(role: UserRole) -> str:
    return "patient_id" if role == UserRole.PATIENT else "admin_id"


class Database:
    """PostgreSQL database client for messaging persistence."""

    def __init__(self, dsn: str | None = None):
        self._dsn = dsn
        self._pool: asyncpg.Pool | None = None

    async def connect(self):
        """Create connection pool."""
        try:
            self._pool = await asyncpg.create_pool(
                self._dsn or settings.database_url,
                min_size=settings.db_pool_min_size,
                max_size=settings.db_pool_max_size,
            )
        except (asyncpg.PostgresError, OSError) as e:
            raise PersistenceError(f"Could not connect to database: {e}") from e
        logger.info(f"Connected to PostgreSQL at {settings.db_host}:{settings.db_port}")

    async def disconnect(self):
        """Close connection pool."""
        if self._pool:
            await self._pool.close()
            self._pool = None

    @asynccontextmanager
    async def connection(self):
        """Get a connection from the pool.

        Driver and network failures are re-raised as PersistenceError.
        """
        if not self._pool:
            raise PersistenceError("Database not connected")
        try:
            async with self._pool.acquire() as conn:
                yield conn
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            logger.error(f"Database operation failed: {e}")
            raise PersistenceError(str(e)) from e

    async def ensure_tables_exist(self):
        """Create tables if they don't exist."""
        async with self.connection() as conn:
            await conn.execute(SCHEMA_SQL)

    # ============= Admin User Operations =============

    async def create_admin_user(self, admin: AdminUser) -> AdminUser:
        """Insert an admin user."""
        async with self.connection() as conn:
            await conn.execute(
                """
                INSERT INTO admin_users
                (id, admin_id, name, email, role, department, phone, timezone,
                 active_status, permissions, created_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
                """,
                admin.id,
                admin.admin_id,
                admin.name,
                admin.email,
                admin.role.value,
                admin.department,
                admin.phone,
                admin.timezone,
                admin.active_status,
                json.dumps(admin.permissions),
                admin.created_at,
            )
        return admin

    async def get_admin_user(self, admin_id: str) -> AdminUser | None:
        """Get an admin by public admin ID."""
        async with self.connection() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM admin_users WHERE admin_id = $1", admin_id
            )
        if not row:
            return None
        return self._row_to_admin_user(row)

    async def list_admin_users(self, active_only: bool = True) -> list[AdminUser]:
        """List admins, by name."""
        query = "SELECT * FROM admin_users"
        if active_only:
            query += " WHERE active_status"
        query += " ORDER BY name ASC"
        async with self.connection() as conn:
            rows = await conn.fetch(query)
        return [self._row_to_admin_user(row) for row in rows]

    def _row_to_admin_user(self, row: asyncpg.Record) -> AdminUser:
        return AdminUser(
            id=row["id"],
            admin_id=row["admin_id"],
            name=row["name"],
            email=row["email"],
            role=row["role"],
            department=row["department"],
            phone=row["phone"],
            timezone=row["timezone"],
            active_status=row["active_status"],
            permissions=_load_json(row["permissions"], []),
            created_at=row["created_at"],
        )

    # ============= Conversation Operations =============

    async def get_active_conversation(
        self, patient_id: str, admin_id: str
    ) -> Conversation | None:
        """Get the active conversation for a patient/admin pair."""
        async with self.connection() as conn:
            row = await conn.fetchrow(
                """
                SELECT * FROM conversations
                WHERE patient_id = $1 AND admin_id = $2 AND status = 'active'
                """,
                patient_id,
                admin_id,
            )
        if not row:
            return None
        return self._row_to_conversation(row)

    async def create_conversation(self, patient_id: str, admin_id: str) -> Conversation:
        """Insert an active conversation for the pair, or return the existing one.

        The partial unique index on active pairs makes concurrent callers
        converge on a single row.
        """
        conversation = Conversation(patient_id=patient_id, admin_id=admin_id)
        async with self.connection() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO conversations (id, patient_id, admin_id, status, created_at)
                VALUES ($1, $2, $3, 'active', $4)
                ON CONFLICT (patient_id, admin_id) WHERE status = 'active' DO NOTHING
                RETURNING *
                """,
                conversation.id,
                patient_id,
                admin_id,
                conversation.created_at,
            )
            if row is None:
                row = await conn.fetchrow(
                    """
                    SELECT * FROM conversations
                    WHERE patient_id = $1 AND admin_id = $2 AND status = 'active'
                    """,
                    patient_id,
                    admin_id,
                )
        if row is None:
            raise PersistenceError(
                f"Conversation for {patient_id}/{admin_id} vanished after insert"
            )
        return self._row_to_conversation(row)

    async def get_conversation(self, conversation_id: str) -> Conversation | None:
        """Get a conversation by ID."""
        async with self.connection() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM conversations WHERE id = $1", conversation_id
            )
        if not row:
            return None
        return self._row_to_conversation(row)

    async def list_conversations(
        self,
        role: UserRole,
        user_id: str,
        limit: int = 20,
        offset: int = 0,
        status: ConversationStatus | None = None,
        has_unread: bool = False,
    ) -> tuple[list[Conversation], int]:
        """List conversations where the user is the given party.

        Most recent activity first; conversations without messages last.
        """
        where = [f"{_party_column(role)} = $1"]
        params: list[Any] = [user_id]

        if status is not None:
            params.append(status.value)
            where.append(f"status = ${len(params)}")
        if has_unread:
            where.append(f"{_unread_column(role)} > 0")

        clause = " AND ".join(where)
        async with self.connection() as conn:
            total = await conn.fetchval(
                f"SELECT COUNT(*) FROM conversations WHERE {clause}", *params
            )
            rows = await conn.fetch(
                f"""
                SELECT * FROM conversations
                WHERE {clause}
                ORDER BY last_message_at DESC NULLS LAST, id ASC
                LIMIT ${len(params) + 1} OFFSET ${len(params) + 2}
                """,
                *params,
                limit,
                offset,
            )
        return [self._row_to_conversation(row) for row in rows], total

    async def update_conversation(
        self,
        conversation_id: str,
        status: ConversationStatus | None = None,
        admin_id: str | None = None,
    ) -> Conversation | None:
        """Update conversation fields."""
        updates = []
        params: list[Any] = []

        if status is not None:
            params.append(status.value)
            updates.append(f"status = ${len(params)}")
        if admin_id is not None:
            params.append(admin_id)
            updates.append(f"admin_id = ${len(params)}")

        if not updates:
            return await self.get_conversation(conversation_id)

        params.append(conversation_id)
        async with self.connection() as conn:
            try:
                row = await conn.fetchrow(
                    f"""
                    UPDATE conversations SET {', '.join(updates)}
                    WHERE id = ${len(params)}
                    RETURNING *
                    """,
                    *params,
                )
            except asyncpg.UniqueViolationError as e:
                raise ValidationError(
                    "The patient already has an active conversation with that admin"
                ) from e
        if not row:
            return None
        return self._row_to_conversation(row)

    def _row_to_conversation(self, row: asyncpg.Record) -> Conversation:
        return Conversation(
            id=row["id"],
            patient_id=row["patient_id"],
            admin_id=row["admin_id"],
            status=ConversationStatus(row["status"]),
            patient_unread_count=row["patient_unread_count"],
            admin_unread_count=row["admin_unread_count"],
            last_message_at=row["last_message_at"],
            created_at=row["created_at"],
        )

    # ============= Message Operations =============

    async def append_message(self, message: Message) -> Conversation | None:
        """Insert a message and bump its conversation in one transaction.

        Sets last_message_at to the message timestamp and increments the
        recipient's unread counter. Returns the updated conversation, or None
        if the conversation does not exist (nothing is written then).
        """
        async with self.connection() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    """
                    UPDATE conversations
                    SET last_message_at = $2,
                        patient_unread_count = patient_unread_count
                            + CASE WHEN patient_id = $3 THEN 1 ELSE 0 END,
                        admin_unread_count = admin_unread_count
                            + CASE WHEN admin_id = $3 THEN 1 ELSE 0 END
                    WHERE id = $1
                    RETURNING *
                    """,
                    message.conversation_id,
                    message.created_at,
                    message.recipient_id,
                )
                if row is None:
                    return None
                await conn.execute(
                    """
                    INSERT INTO messages
                    (id, conversation_id, sender_id, recipient_id, content,
                     message_type, priority, read_status, attachments, created_at)
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                    """,
                    message.id,
                    message.conversation_id,
                    message.sender_id,
                    message.recipient_id,
                    message.content,
                    message.message_type.value,
                    message.priority.value,
                    message.read_status,
                    json.dumps([a.model_dump(mode="json") for a in message.attachments]),
                    message.created_at,
                )
        return self._row_to_conversation(row)

    async def get_messages(
        self, conversation_id: str, limit: int = 50, offset: int = 0
    ) -> tuple[list[Message], int]:
        """Get a window of messages, newest window first, oldest-first inside."""
        async with self.connection() as conn:
            total = await conn.fetchval(
                "SELECT COUNT(*) FROM messages WHERE conversation_id = $1",
                conversation_id,
            )
            rows = await conn.fetch(
                """
                SELECT * FROM messages
                WHERE conversation_id = $1
                ORDER BY created_at DESC, id DESC
                LIMIT $2 OFFSET $3
                """,
                conversation_id,
                limit,
                offset,
            )
        messages = [self._row_to_message(row) for row in rows]
        messages.reverse()
        return messages, total

    async def get_latest_message(self, conversation_id: str) -> Message | None:
        """Get the most recent message in a conversation."""
        async with self.connection() as conn:
            row = await conn.fetchrow(
                """
                SELECT * FROM messages
                WHERE conversation_id = $1
                ORDER BY created_at DESC, id DESC
                LIMIT 1
                """,
                conversation_id,
            )
        if not row:
            return None
        return self._row_to_message(row)

    async def mark_messages_read(
        self, conversation_id: str, reader_role: UserRole, reader_id: str
    ) -> int:
        """Flip read_status on the reader's messages and zero their counter.

        Returns how many messages changed.
        """
        async with self.connection() as conn:
            async with conn.transaction():
                result = await conn.execute(
                    """
                    UPDATE messages SET read_status = TRUE
                    WHERE conversation_id = $1 AND recipient_id = $2 AND NOT read_status
                    """,
                    conversation_id,
                    reader_id,
                )
                await conn.execute(
                    f"UPDATE conversations SET {_unread_column(reader_role)} = 0 WHERE id = $1",
                    conversation_id,
                )
        # asyncpg returns the command tag, e.g. "UPDATE 3"
        return int(result.split()[-1])

    async def search_messages(
        self, filters: MessageFilters, limit: int = 50, offset: int = 0
    ) -> tuple[list[Message], int]:
        """Search messages, newest first."""
        where: list[str] = []
        params: list[Any] = []

        for party in (filters.patient_id, filters.admin_id):
            if party:
                params.append(party)
                where.append(
                    f"(sender_id = ${len(params)} OR recipient_id = ${len(params)})"
                )
        if filters.message_type:
            params.append(filters.message_type.value)
            where.append(f"message_type = ${len(params)}")
        if filters.priority:
            params.append(filters.priority.value)
            where.append(f"priority = ${len(params)}")
        if filters.read_status is not None:
            params.append(filters.read_status)
            where.append(f"read_status = ${len(params)}")
        if filters.search_query:
            params.append(filters.search_query.lower())
            where.append(f"POSITION(${len(params)} IN lower(content)) > 0")
        if filters.date_from:
            params.append(filters.date_from)
            where.append(f"created_at >= ${len(params)}")
        if filters.date_to:
            params.append(filters.date_to)
            where.append(f"created_at <= ${len(params)}")

        clause = f"WHERE {' AND '.join(where)}" if where else ""
        async with self.connection() as conn:
            total = await conn.fetchval(
                f"SELECT COUNT(*) FROM messages {clause}", *params
            )
            rows = await conn.fetch(
                f"""
                SELECT * FROM messages {clause}
                ORDER BY created_at DESC, id DESC
                LIMIT ${len(params) + 1} OFFSET ${len(params) + 2}
                """,
                *params,
                limit,
                offset,
            )
        return [self._row_to_message(row) for row in rows], total

    def _row_to_message(self, row: asyncpg.Record) -> Message:
        return Message(
            id=row["id"],
            conversation_id=row["conversation_id"],
            sender_id=row["sender_id"],
            recipient_id=row["recipient_id"],
            content=row["content"],
            message_type=row["message_type"],
            priority=row["priority"],
            read_status=row["read_status"],
            attachments=[
                MessageAttachment(**a) for a in _load_json(row["attachments"], [])
            ],
            created_at=row["created_at"],
        )

    # ============= Template Operations =============

    async def list_templates(
        self, admin_id: str, category: str | None = None
    ) -> list[MessageTemplate]:
        """List templates visible to an admin: global ones plus their own."""
        query = "SELECT * FROM message_templates WHERE (is_global OR admin_id = $1)"
        params: list[Any] = [admin_id]
        if category:
            query += " AND category = $2"
            params.append(category)
        query += " ORDER BY created_at ASC, id ASC"
        async with self.connection() as conn:
            rows = await conn.fetch(query, *params)
        return [self._row_to_template(row) for row in rows]

    async def get_template(self, template_id: str) -> MessageTemplate | None:
        """Get a template by ID."""
        async with self.connection() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM message_templates WHERE id = $1", template_id
            )
        if not row:
            return None
        return self._row_to_template(row)

    async def create_template(self, template: MessageTemplate) -> MessageTemplate:
        """Insert a template."""
        async with self.connection() as conn:
            await conn.execute(
                """
                INSERT INTO message_templates
                (id, admin_id, title, content, category, is_global, usage_count, created_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                """,
                template.id,
                template.admin_id,
                template.title,
                template.content,
                template.category,
                template.is_global,
                template.usage_count,
                template.created_at,
            )
        return template

    async def update_template(
        self,
        template_id: str,
        title: str | None = None,
        content: str | None = None,
        category: str | None = None,
        is_global: bool | None = None,
    ) -> MessageTemplate | None:
        """Update template fields."""
        updates = []
        params: list[Any] = []

        for column, value in (
            ("title", title),
            ("content", content),
            ("category", category),
            ("is_global", is_global),
        ):
            if value is not None:
                params.append(value)
                updates.append(f"{column} = ${len(params)}")

        if not updates:
            return await self.get_template(template_id)

        params.append(template_id)
        async with self.connection() as conn:
            row = await conn.fetchrow(
                f"""
                UPDATE message_templates SET {', '.join(updates)}
                WHERE id = ${len(params)}
                RETURNING *
                """,
                *params,
            )
        if not row:
            return None
        return self._row_to_template(row)

    async def delete_template(self, template_id: str) -> bool:
        """Delete a template. Returns False if it did not exist."""
        async with self.connection() as conn:
            result = await conn.execute(
                "DELETE FROM message_templates WHERE id = $1", template_id
            )
        return result != "DELETE 0"

    async def increment_template_usage(self, template_id: str) -> bool:
        """Add one to a template's usage count."""
        async with self.connection() as conn:
            result = await conn.execute(
                "UPDATE message_templates SET usage_count = usage_count + 1 WHERE id = $1",
                template_id,
            )
        return result != "UPDATE 0"

    def _row_to_template(self, row: asyncpg.Record) -> MessageTemplate:
        return MessageTemplate(
            id=row["id"],
            admin_id=row["admin_id"],
            title=row["title"],
            content=row["content"],
            category=row["category"],
            is_global=row["is_global"],
            usage_count=row["usage_count"],
            created_at=row["created_at"],
        )

    # ============= Milestone Operations =============

    async def list_milestones(self, patient_id: str) -> list[Milestone]:
        """List a patient's milestones in the order they were reached."""
        async with self.connection() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM patient_milestones
                WHERE patient_id = $1
                ORDER BY achieved_at ASC, milestone_type ASC, threshold ASC
                """,
                patient_id,
            )
        return [
            Milestone(
                id=row["id"],
                patient_id=row["patient_id"],
                milestone_type=row["milestone_type"],
                threshold=row["threshold"],
                message=row["message"],
                achieved_at=row["achieved_at"],
            )
            for row in rows
        ]

    async def record_milestone(self, milestone: Milestone) -> bool:
        """Insert a milestone unless that (patient, type, threshold) exists.

        Returns True only for the caller whose insert won.
        """
        async with self.connection() as conn:
            inserted = await conn.fetchval(
                """
                INSERT INTO patient_milestones
                (id, patient_id, milestone_type, threshold, message, achieved_at)
                VALUES ($1, $2, $3, $4, $5, $6)
                ON CONFLICT (patient_id, milestone_type, threshold) DO NOTHING
                RETURNING id
                """,
                milestone.id,
                milestone.patient_id,
                milestone.milestone_type.value,
                milestone.threshold,
                milestone.message,
                milestone.achieved_at,
            )
        return inserted is not None
