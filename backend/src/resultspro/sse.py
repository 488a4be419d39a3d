"""Server-Sent Events support for real-time updates."""

import asyncio
import json
import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncGenerator

from fastapi import Request
from fastapi.responses import StreamingResponse

from resultspro_models import Conversation, Message, Milestone
from resultspro.config import settings

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """SSE event types."""

    MESSAGE_NEW = "message:new"
    CONVERSATION_READ = "conversation:read"
    CONVERSATION_UPDATED = "conversation:updated"
    MILESTONE_REACHED = "milestone:reached"
    CONNECTED = "connected"
    HEARTBEAT = "heartbeat"


@dataclass
class SSEEvent:
    """An SSE event to send to clients."""

    event: str
    data: dict[str, Any]
    id: str = field(default_factory=lambda: str(uuid.uuid4())[:8])

    def encode(self) -> str:
        """Encode as SSE format."""
        event = self.event.value if isinstance(self.event, EventType) else self.event
        lines = [
            f"id: {self.id}",
            f"event: {event}",
            f"data: {json.dumps(self.data)}",
            "",  # Empty line to end the event
        ]
        return "\n".join(lines) + "\n"


class EventBus:
    """Simple in-process event bus for SSE.

    For production scaling, this should be backed by Redis pub/sub.
    """

    def __init__(self, queue_size: int | None = None):
        # user_id -> list of queues
        self._user_queues: dict[str, list[asyncio.Queue]] = defaultdict(list)
        self._queue_size = queue_size if queue_size is not None else settings.sse_queue_size
        self._lock = asyncio.Lock()

    async def subscribe(self, user_id: str) -> asyncio.Queue:
        """Subscribe to events for a user."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        async with self._lock:
            self._user_queues[user_id].append(queue)
        logger.info(f"User {user_id} subscribed to events")
        return queue

    async def unsubscribe(self, user_id: str, queue: asyncio.Queue):
        """Unsubscribe from user events."""
        async with self._lock:
            if user_id in self._user_queues:
                try:
                    self._user_queues[user_id].remove(queue)
                    if not self._user_queues[user_id]:
                        del self._user_queues[user_id]
                except ValueError:
                    pass
        logger.info(f"User {user_id} unsubscribed from events")

    def subscriber_count(self, user_id: str) -> int:
        return len(self._user_queues.get(user_id, []))

    async def publish(self, user_id: str, event: SSEEvent):
        """Publish an event to all subscribers for a user."""
        async with self._lock:
            queues = self._user_queues.get(user_id, [])
            for queue in queues:
                try:
                    queue.put_nowait(event)
                except asyncio.QueueFull:
                    logger.warning(f"Queue full for user {user_id}, dropping event")

    async def publish_many(self, user_ids: list[str], event: SSEEvent):
        """Publish one event to several users, each at most once."""
        for user_id in dict.fromkeys(user_ids):
            await self.publish(user_id, event)


# Global event bus instance
event_bus = EventBus()


async def event_stream(
    user_id: str,
    request: Request,
    bus: EventBus | None = None,
    heartbeat_interval: int | None = None,
) -> AsyncGenerator[str, None]:
    """Generate SSE events for a user.

    Sends heartbeat pings every heartbeat_interval seconds to keep connection alive.
    """
    bus = bus or event_bus
    interval = heartbeat_interval or settings.sse_heartbeat_interval
    queue = await bus.subscribe(user_id)

    try:
        yield SSEEvent(
            event=EventType.CONNECTED,
            data={"user_id": user_id, "timestamp": _timestamp()},
        ).encode()

        while True:
            if await request.is_disconnected():
                break

            try:
                event = await asyncio.wait_for(queue.get(), timeout=interval)
                yield event.encode()
            except asyncio.TimeoutError:
                yield SSEEvent(
                    event=EventType.HEARTBEAT,
                    data={"timestamp": _timestamp()},
                ).encode()
    finally:
        await bus.unsubscribe(user_id, queue)


def create_sse_response(generator: AsyncGenerator[str, None]) -> StreamingResponse:
    """Create an SSE StreamingResponse."""
    return StreamingResponse(
        generator,
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",  # Disable nginx buffering
        },
    )


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


# Helper functions to publish events from the services


async def notify_new_message(
    bus: EventBus, message: Message, conversation: Conversation
):
    """Tell both parties a message landed."""
    await bus.publish_many(
        [message.recipient_id, message.sender_id],
        SSEEvent(
            event=EventType.MESSAGE_NEW,
            data={
                "message": message.model_dump(mode="json"),
                "conversation": conversation.model_dump(mode="json"),
            },
        ),
    )


async def notify_conversation_read(
    bus: EventBus, conversation: Conversation, reader_id: str, marked: int
):
    """Tell both parties the reader caught up."""
    await bus.publish_many(
        [conversation.patient_id, conversation.admin_id],
        SSEEvent(
            event=EventType.CONVERSATION_READ,
            data={
                "conversation_id": conversation.id,
                "reader_id": reader_id,
                "marked": marked,
                "unread_count": conversation.unread_for(reader_id),
            },
        ),
    )


async def notify_conversation_updated(
    bus: EventBus, conversation: Conversation, previous_admin_id: str | None = None
):
    """Tell the parties (and a replaced admin) a conversation changed."""
    user_ids = [conversation.patient_id, conversation.admin_id]
    if previous_admin_id:
        user_ids.append(previous_admin_id)
    await bus.publish_many(
        user_ids,
        SSEEvent(
            event=EventType.CONVERSATION_UPDATED,
            data={"conversation": conversation.model_dump(mode="json")},
        ),
    )


async def notify_milestone_reached(bus: EventBus, milestone: Milestone):
    """Tell a patient they hit a milestone."""
    await bus.publish(
        milestone.patient_id,
        SSEEvent(
            event=EventType.MILESTONE_REACHED,
            data={"milestone": milestone.model_dump(mode="json")},
        ),
    )
