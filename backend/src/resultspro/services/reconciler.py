"""Client-side optimistic send handling.

A send shows up in the conversation view immediately as a pending entry and
is swapped for the stored message once the facade confirms it. A failed
send removes the pending entry and puts the text back in the compose field.

Several sends may be in flight at once and finish in any order, so pending
entries are always addressed by their synthetic ID, never by position.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from resultspro_models import (
    ErrorKind,
    Message,
    MessagePriority,
    MessageType,
    Result,
    UserSession,
)
from resultspro.errors import MessagingError
from resultspro.services.messaging import MessagingService
from resultspro.sse import EventType, SSEEvent

logger = logging.getLogger(__name__)

OPTIMISTIC_PREFIX = "optimistic-"


@dataclass
class PendingMessage:
    """A locally shown message that the server has not confirmed yet."""

    conversation_id: str
    sender_id: str
    recipient_id: str
    content: str
    message_type: MessageType = MessageType.GENERAL
    priority: MessagePriority = MessagePriority.NORMAL
    id: str = field(default_factory=lambda: f"{OPTIMISTIC_PREFIX}{uuid.uuid4()}")
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    is_optimistic: bool = True


@dataclass
class ConversationView:
    """What the UI renders for one open conversation."""

    conversation_id: str
    confirmed: dict[str, Message] = field(default_factory=dict)
    pending: dict[str, PendingMessage] = field(default_factory=dict)
    compose_text: str = ""
    error: Result | None = None

    @property
    def messages(self) -> list[Message | PendingMessage]:
        """Confirmed messages in time order, then pending ones in issue order."""
        confirmed = sorted(self.confirmed.values(), key=lambda m: (m.created_at, m.id))
        return [*confirmed, *self.pending.values()]

    def add_confirmed(self, message: Message) -> bool:
        """Add a stored message unless it is already shown. Returns True if added."""
        if message.id in self.confirmed:
            return False
        self.confirmed[message.id] = message
        return True

    def add_pending(self, pending: PendingMessage) -> None:
        self.pending[pending.id] = pending

    def discard_pending(self, pending_id: str) -> PendingMessage | None:
        return self.pending.pop(pending_id, None)

    def settle_pending(self, message: Message) -> PendingMessage | None:
        """Drop the oldest pending entry that the stored message confirms."""
        for pending in self.pending.values():
            if pending.sender_id == message.sender_id and pending.content == message.content:
                return self.pending.pop(pending.id)
        return None

    def clear_error(self) -> None:
        self.error = None


class OptimisticReconciler:
    """Keeps conversation views in step with the facade for one session."""

    def __init__(self, messaging: MessagingService, session: UserSession):
        self.messaging = messaging
        self.session = session
        self.views: dict[str, ConversationView] = {}

    def view(self, conversation_id: str) -> ConversationView:
        if conversation_id not in self.views:
            self.views[conversation_id] = ConversationView(conversation_id=conversation_id)
        return self.views[conversation_id]

    async def open(
        self, conversation_id: str, page_size: int | None = None
    ) -> Result[list[Message]]:
        """Load the latest messages into the view, keeping any pending sends."""
        view = self.view(conversation_id)
        try:
            page = await self.messaging.get_messages(conversation_id, page_size=page_size)
        except MessagingError as e:
            view.error = e.to_result()
            return Result[list[Message]].failure(e.kind, str(e))
        for message in page.items:
            view.add_confirmed(message)
        view.clear_error()
        return Result[list[Message]].success(page.items)

    def set_compose_text(self, conversation_id: str, text: str) -> None:
        self.view(conversation_id).compose_text = text

    async def send(
        self,
        conversation_id: str,
        recipient_id: str,
        content: str | None = None,
        message_type: MessageType = MessageType.GENERAL,
        priority: MessagePriority = MessagePriority.NORMAL,
    ) -> Result[Message]:
        """Send with an immediate pending entry; reconcile or roll back after.

        Uses the compose field when content is not given.
        """
        view = self.view(conversation_id)
        text = view.compose_text if content is None else content
        if not text.strip():
            return Result[Message].failure(
                ErrorKind.VALIDATION, "Message content cannot be empty"
            )

        pending = PendingMessage(
            conversation_id=conversation_id,
            sender_id=self.session.user_id,
            recipient_id=recipient_id,
            content=text.strip(),
            message_type=message_type,
            priority=priority,
        )
        view.add_pending(pending)
        view.compose_text = ""
        view.clear_error()

        try:
            message = await self.messaging.send_message(
                conversation_id=conversation_id,
                sender_id=self.session.user_id,
                recipient_id=recipient_id,
                content=text,
                message_type=message_type,
                priority=priority,
            )
        except MessagingError as e:
            self._roll_back(view, pending, text)
            view.error = e.to_result()
            logger.warning(f"Send to conversation {conversation_id} failed: {e}")
            return Result[Message].failure(e.kind, str(e))
        except BaseException:
            # Cancellation and unexpected errors roll back too
            self._roll_back(view, pending, text)
            raise

        view.discard_pending(pending.id)
        view.add_confirmed(message)
        return Result[Message].success(message)

    def _roll_back(self, view: ConversationView, pending: PendingMessage, text: str):
        view.discard_pending(pending.id)
        view.compose_text = text

    def apply_event(self, event: SSEEvent) -> bool:
        """Fold a pushed event into the open views. Returns True if a view changed."""
        if event.event != EventType.MESSAGE_NEW:
            return False
        data: dict[str, Any] = event.data.get("message") or {}
        message = Message.model_validate(data)
        if message.conversation_id not in self.views:
            return False
        view = self.view(message.conversation_id)
        added = view.add_confirmed(message)
        # The push can beat the send's own response
        settled = view.settle_pending(message) is not None
        return added or settled
