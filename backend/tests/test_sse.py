"""Unit tests for the SSE event bus."""

import json

import pytest
from resultspro.sse import EventBus, EventType, SSEEvent


class TestSSEEvent:
    """Wire encoding."""

    def test_encode(self):
        event = SSEEvent(
            event=EventType.MESSAGE_NEW, data={"message": {"id": "m1"}}, id="abc"
        )

        lines = event.encode().split("\n")

        assert lines[0] == "id: abc"
        assert lines[1] == "event: message:new"
        assert json.loads(lines[2].removeprefix("data: ")) == {"message": {"id": "m1"}}
        assert event.encode().endswith("\n\n")

    def test_plain_string_event_name(self):
        assert "event: custom" in SSEEvent(event="custom", data={}).encode()


class TestEventBus:
    """Subscriptions and fan-out."""

    @pytest.mark.asyncio
    async def test_publish_reaches_every_subscription(self):
        bus = EventBus(queue_size=5)
        tab_one = await bus.subscribe("u1")
        tab_two = await bus.subscribe("u1")
        stranger = await bus.subscribe("u2")

        await bus.publish("u1", SSEEvent(event=EventType.HEARTBEAT, data={}))

        assert tab_one.qsize() == 1
        assert tab_two.qsize() == 1
        assert stranger.empty()

    @pytest.mark.asyncio
    async def test_publish_many_dedupes_users(self):
        bus = EventBus(queue_size=5)
        queue = await bus.subscribe("u1")

        await bus.publish_many(["u1", "u1"], SSEEvent(event=EventType.HEARTBEAT, data={}))

        assert queue.qsize() == 1

    @pytest.mark.asyncio
    async def test_full_queue_drops_event(self):
        bus = EventBus(queue_size=1)
        queue = await bus.subscribe("u1")

        await bus.publish("u1", SSEEvent(event="first", data={}))
        await bus.publish("u1", SSEEvent(event="second", data={}))

        assert queue.qsize() == 1
        assert queue.get_nowait().event == "first"

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        bus = EventBus(queue_size=5)
        queue = await bus.subscribe("u1")

        await bus.unsubscribe("u1", queue)
        await bus.unsubscribe("u1", queue)

        assert bus.subscriber_count("u1") == 0
