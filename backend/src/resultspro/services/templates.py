"""Message template store: canned replies, scoping and usage counters."""

import asyncio
import logging

from resultspro_models import (
    QUICK_REPLY_CATEGORY,
    Message,
    MessagePriority,
    MessageTemplate,
    MessageType,
    TemplateCategory,
)
from resultspro.db import db as default_db
from resultspro.errors import NotFoundError, ValidationError
from resultspro.services.messaging import MessagingService

logger = logging.getLogger(__name__)


def _require(**fields: str | None) -> None:
    for name, value in fields.items():
        if value is not None and not value.strip():
            raise ValidationError(f"Template {name} cannot be empty")


class TemplateService:
    """Create, list and use message templates."""

    def __init__(self, database=None, messaging: MessagingService | None = None):
        self.db = database if database is not None else default_db
        self.messaging = messaging
        # Strong refs so usage tasks are not garbage collected mid-flight
        self._background: set[asyncio.Task] = set()

    async def list_templates(
        self, admin_id: str, category: str | None = None
    ) -> list[MessageTemplate]:
        """Templates the admin may use: every global one plus their own."""
        return await self.db.list_templates(admin_id, category=category)

    async def templates_by_category(self, admin_id: str) -> list[TemplateCategory]:
        """Group visible templates by category, most used first within a group."""
        grouped: dict[str, list[MessageTemplate]] = {}
        for template in await self.list_templates(admin_id):
            grouped.setdefault(template.category, []).append(template)

        categories = [
            TemplateCategory(
                name=name[:1].upper() + name[1:],
                templates=sorted(templates, key=lambda t: t.usage_count, reverse=True),
            )
            for name, templates in grouped.items()
        ]
        return sorted(categories, key=lambda c: c.name)

    async def quick_replies(self, admin_id: str) -> list[MessageTemplate]:
        """Short quick-reply templates, most used first."""
        replies = await self.list_templates(admin_id, category=QUICK_REPLY_CATEGORY)
        return sorted(replies, key=lambda t: t.usage_count, reverse=True)

    async def search_templates(
        self, query: str, admin_id: str, category: str | None = None
    ) -> list[MessageTemplate]:
        """Case-insensitive match on title or content."""
        needle = query.lower()
        return [
            t
            for t in await self.list_templates(admin_id, category=category)
            if needle in t.title.lower() or needle in t.content.lower()
        ]

    async def get_template(self, template_id: str) -> MessageTemplate:
        template = await self.db.get_template(template_id)
        if not template:
            raise NotFoundError("Template", template_id)
        return template

    async def create_template(
        self,
        admin_id: str,
        title: str,
        content: str,
        category: str,
        is_global: bool = False,
    ) -> MessageTemplate:
        """Create a template owned by admin_id."""
        if not admin_id:
            raise ValidationError("admin_id is required")
        _require(title=title or "", content=content or "", category=category or "")

        template = MessageTemplate(
            admin_id=admin_id,
            title=title.strip(),
            content=content,
            category=category.strip(),
            is_global=is_global,
        )
        await self.db.create_template(template)
        logger.info(f"Admin {admin_id} created template {template.id} ({template.category})")
        return template

    async def update_template(
        self,
        template_id: str,
        title: str | None = None,
        content: str | None = None,
        category: str | None = None,
        is_global: bool | None = None,
    ) -> MessageTemplate:
        """Edit a template. Omitted fields keep their value."""
        _require(title=title, content=content, category=category)
        updated = await self.db.update_template(
            template_id,
            title=title.strip() if title is not None else None,
            content=content,
            category=category.strip() if category is not None else None,
            is_global=is_global,
        )
        if not updated:
            raise NotFoundError("Template", template_id)
        return updated

    async def delete_template(self, template_id: str) -> None:
        """Hard delete."""
        if not await self.db.delete_template(template_id):
            raise NotFoundError("Template", template_id)
        logger.info(f"Deleted template {template_id}")

    async def record_usage(self, template_id: str) -> None:
        """Increment the usage counter. Best effort: failures are only logged."""
        try:
            if not await self.db.increment_template_usage(template_id):
                logger.warning(f"Usage not recorded, template {template_id} not found")
        except Exception as e:
            logger.error(f"Failed to record usage for template {template_id}: {e}")

    def schedule_usage(self, template_id: str) -> asyncio.Task:
        """Fire-and-forget usage recording."""
        task = asyncio.create_task(self.record_usage(template_id))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        logger.debug(f"Scheduled usage recording for template {template_id}")
        return task

    async def drain(self) -> None:
        """Wait for scheduled usage recordings (shutdown, tests)."""
        if self._background:
            await asyncio.gather(*self._background)

    async def use_template(
        self,
        template_id: str,
        conversation_id: str,
        admin_id: str,
        recipient_id: str,
        message_type: MessageType = MessageType.ADMIN_RESPONSE,
        priority: MessagePriority = MessagePriority.NORMAL,
    ) -> Message:
        """Send a template's content as a message, then count the use.

        Placeholder tokens in the content are sent as stored.
        """
        if self.messaging is None:
            raise RuntimeError("TemplateService was built without a MessagingService")

        template = await self.get_template(template_id)
        if not template.visible_to(admin_id):
            raise NotFoundError("Template", template_id)

        message = await self.messaging.send_message(
            conversation_id=conversation_id,
            sender_id=admin_id,
            recipient_id=recipient_id,
            content=template.content,
            message_type=message_type,
            priority=priority,
        )
        self.schedule_usage(template_id)
        return message
