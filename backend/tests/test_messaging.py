"""Unit tests for the conversation/message facade."""

import asyncio
from datetime import datetime, timezone

import pytest
from resultspro.errors import NotFoundError, PersistenceError, ValidationError
from resultspro.services.messaging import MessagingService, page_window
from resultspro.sse import EventType
from resultspro_models import (
    AdminUser,
    ConversationStatus,
    MessageFilters,
    MessagePriority,
    MessageType,
    PatientContext,
    UserRole,
)

PATIENT = "patient-1"
ADMIN = "admin-1"
OTHER_ADMIN = "admin-2"


class TestCreateConversation:
    """Conversation creation and lookup."""

    @pytest.mark.asyncio
    async def test_create_is_idempotent_for_a_pair(self, messaging):
        """Creating twice for the same pair returns the same conversation."""
        first = await messaging.create_conversation(PATIENT, ADMIN)
        second = await messaging.create_conversation(PATIENT, ADMIN)

        assert first.id == second.id
        assert first.status == ConversationStatus.ACTIVE
        assert first.unread_count == 0
        assert first.last_message_at is None

    @pytest.mark.asyncio
    async def test_different_admin_gets_new_conversation(self, messaging):
        first = await messaging.create_conversation(PATIENT, ADMIN)
        second = await messaging.create_conversation(PATIENT, OTHER_ADMIN)
        assert first.id != second.id

    @pytest.mark.asyncio
    async def test_closed_conversation_is_not_reused(self, messaging, conversation):
        await messaging.update_conversation_status(
            conversation.id, ConversationStatus.CLOSED
        )
        fresh = await messaging.create_conversation(PATIENT, ADMIN)
        assert fresh.id != conversation.id

    @pytest.mark.asyncio
    async def test_create_requires_two_parties(self, messaging):
        with pytest.raises(ValidationError):
            await messaging.create_conversation("", ADMIN)
        with pytest.raises(ValidationError):
            await messaging.create_conversation(PATIENT, PATIENT)

    @pytest.mark.asyncio
    async def test_get_missing_conversation(self, messaging):
        with pytest.raises(NotFoundError, match="Conversation nope not found"):
            await messaging.get_conversation("nope")


class TestSendMessage:
    """Sending messages and the conversation counters."""

    @pytest.mark.asyncio
    async def test_send_updates_last_message_at(self, messaging, conversation):
        """last_message_at matches the created_at of the message just sent."""
        message = await messaging.send_message(
            conversation.id, PATIENT, ADMIN, "Hello doctor"
        )

        refreshed = await messaging.get_conversation(conversation.id)
        assert refreshed.last_message_at == message.created_at
        assert refreshed.admin_unread_count == 1
        assert refreshed.patient_unread_count == 0
        assert refreshed.unread_count == 1

    @pytest.mark.asyncio
    async def test_send_defaults(self, messaging, conversation):
        message = await messaging.send_message(
            conversation.id, ADMIN, PATIENT, "  Take it with food.  "
        )
        assert message.content == "Take it with food."
        assert message.message_type == MessageType.GENERAL
        assert message.priority == MessagePriority.NORMAL
        assert message.read_status is False

    @pytest.mark.asyncio
    async def test_empty_content_is_rejected_without_a_row(
        self, messaging, database, conversation
    ):
        """Blank content raises ValidationError and stores nothing."""
        for content in ("", "   ", "\n\t"):
            with pytest.raises(ValidationError):
                await messaging.send_message(conversation.id, PATIENT, ADMIN, content)

        page = await messaging.get_messages(conversation.id)
        assert page.items == []
        assert page.total == 0
        assert database.messages == {}
        refreshed = await messaging.get_conversation(conversation.id)
        assert refreshed.last_message_at is None

    @pytest.mark.asyncio
    async def test_send_to_missing_conversation(self, messaging):
        with pytest.raises(NotFoundError):
            await messaging.send_message("missing", PATIENT, ADMIN, "hi")

    @pytest.mark.asyncio
    async def test_send_requires_both_parties(self, messaging, conversation):
        with pytest.raises(ValidationError):
            await messaging.send_message(conversation.id, PATIENT, OTHER_ADMIN, "hi")
        with pytest.raises(ValidationError):
            await messaging.send_message(conversation.id, PATIENT, PATIENT, "hi")

    @pytest.mark.asyncio
    async def test_send_to_closed_conversation(self, messaging, conversation):
        await messaging.update_conversation_status(
            conversation.id, ConversationStatus.CLOSED
        )
        with pytest.raises(ValidationError, match="closed"):
            await messaging.send_message(conversation.id, PATIENT, ADMIN, "hi")

    @pytest.mark.asyncio
    async def test_persistence_failure_is_retryable(self, messaging, database, conversation):
        await database.disconnect()
        with pytest.raises(PersistenceError) as exc_info:
            await messaging.send_message(conversation.id, PATIENT, ADMIN, "hi")
        assert exc_info.value.retryable is True
        assert exc_info.value.to_result().retryable is True

    @pytest.mark.asyncio
    async def test_send_publishes_to_both_parties(self, messaging, bus, conversation):
        patient_queue = await bus.subscribe(PATIENT)
        admin_queue = await bus.subscribe(ADMIN)

        message = await messaging.send_message(conversation.id, PATIENT, ADMIN, "hi")

        for queue in (patient_queue, admin_queue):
            event = queue.get_nowait()
            assert event.event == EventType.MESSAGE_NEW
            assert event.data["message"]["id"] == message.id
            assert queue.empty()


class TestGetMessages:
    """Message paging."""

    @pytest.mark.asyncio
    async def test_messages_are_oldest_first_within_a_page(self, messaging, conversation):
        for i in range(5):
            await messaging.send_message(conversation.id, PATIENT, ADMIN, f"m{i}")
            await asyncio.sleep(0.001)

        latest = await messaging.get_messages(conversation.id, page=1, page_size=2)
        assert [m.content for m in latest.items] == ["m3", "m4"]
        assert latest.total == 5
        assert latest.has_more is True

        older = await messaging.get_messages(conversation.id, page=3, page_size=2)
        assert [m.content for m in older.items] == ["m0"]
        assert older.has_more is False

    @pytest.mark.asyncio
    async def test_paging_validation(self, messaging, conversation):
        with pytest.raises(ValidationError):
            await messaging.get_messages(conversation.id, page=0)
        with pytest.raises(ValidationError):
            await messaging.get_messages(conversation.id, page_size=1000)

    def test_page_window(self):
        assert page_window(1, 20) == (20, 0)
        assert page_window(3, 10) == (10, 20)


class TestMarkAsRead:
    """Read receipts and unread counters."""

    @pytest.mark.asyncio
    async def test_mark_read_zeroes_counter_then_send_increments(
        self, messaging, conversation
    ):
        """Mark-read sets the reader's counter to 0; the next send makes it 1."""
        await messaging.send_message(conversation.id, PATIENT, ADMIN, "one")
        await messaging.send_message(conversation.id, PATIENT, ADMIN, "two")

        read = await messaging.mark_as_read(conversation.id, ADMIN)
        assert read.admin_unread_count == 0

        page = await messaging.get_messages(conversation.id)
        assert all(m.read_status for m in page.items)

        await messaging.send_message(conversation.id, PATIENT, ADMIN, "three")
        refreshed = await messaging.get_conversation(conversation.id)
        assert refreshed.admin_unread_count == 1

    @pytest.mark.asyncio
    async def test_mark_read_only_touches_reader_side(self, messaging, conversation):
        await messaging.send_message(conversation.id, PATIENT, ADMIN, "question")
        await messaging.send_message(conversation.id, ADMIN, PATIENT, "answer")

        read = await messaging.mark_as_read(conversation.id, PATIENT)

        assert read.patient_unread_count == 0
        assert read.admin_unread_count == 1
        page = await messaging.get_messages(conversation.id)
        by_content = {m.content: m.read_status for m in page.items}
        assert by_content == {"question": False, "answer": True}

    @pytest.mark.asyncio
    async def test_outsider_cannot_mark_read(self, messaging, conversation):
        with pytest.raises(ValidationError):
            await messaging.mark_as_read(conversation.id, OTHER_ADMIN)

    @pytest.mark.asyncio
    async def test_mark_read_publishes_event(self, messaging, bus, conversation):
        await messaging.send_message(conversation.id, PATIENT, ADMIN, "hi")
        queue = await bus.subscribe(PATIENT)

        await messaging.mark_as_read(conversation.id, ADMIN)

        event = queue.get_nowait()
        assert event.event == EventType.CONVERSATION_READ
        assert event.data["reader_id"] == ADMIN
        assert event.data["marked"] == 1


class TestConversationLists:
    """Conversation listing, summaries and the unread badge."""

    @pytest.mark.asyncio
    async def test_conversations_ordered_by_recent_activity(self, messaging):
        quiet = await messaging.create_conversation("patient-quiet", ADMIN)
        older = await messaging.create_conversation("patient-a", ADMIN)
        newer = await messaging.create_conversation("patient-b", ADMIN)

        await messaging.send_message(older.id, ADMIN, "patient-a", "first")
        await asyncio.sleep(0.001)
        await messaging.send_message(newer.id, ADMIN, "patient-b", "second")

        page = await messaging.get_conversations(UserRole.ADMIN, ADMIN)
        assert [c.id for c in page.items] == [newer.id, older.id, quiet.id]
        assert page.total == 3

    @pytest.mark.asyncio
    async def test_equal_activity_is_ordered_by_id(self, messaging, database):
        """Conversations with the same last_message_at come back by ascending id."""
        stamp = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
        created = []
        for i in range(4):
            conversation = await messaging.create_conversation(f"patient-{i}", ADMIN)
            database.conversations[conversation.id].last_message_at = stamp
            created.append(conversation.id)
        latest = await messaging.create_conversation("patient-latest", ADMIN)
        database.conversations[latest.id].last_message_at = datetime(
            2024, 6, 1, tzinfo=timezone.utc
        )

        page = await messaging.get_conversations(UserRole.ADMIN, ADMIN)

        assert [c.id for c in page.items] == [latest.id, *sorted(created)]

        second = await messaging.get_conversations(UserRole.ADMIN, ADMIN, page=2, page_size=2)
        assert [c.id for c in second.items] == sorted(created)[1:3]

    @pytest.mark.asyncio
    async def test_patient_only_sees_own_conversations(self, messaging, conversation):
        await messaging.create_conversation("patient-2", ADMIN)
        page = await messaging.get_conversations("patient", PATIENT)
        assert [c.id for c in page.items] == [conversation.id]

    @pytest.mark.asyncio
    async def test_unknown_role(self, messaging):
        with pytest.raises(ValidationError):
            await messaging.get_conversations("doctor", ADMIN)

    @pytest.mark.asyncio
    async def test_summaries(self, database, bus, conversation):
        await database.create_admin_user(
            AdminUser(admin_id=ADMIN, name="Dr. Rivera", email="rivera@example.com")
        )

        async def lookup(patient_id):
            return PatientContext(id=patient_id, name="Sam Patient")

        messaging = MessagingService(database=database, bus=bus, patient_lookup=lookup)
        await messaging.send_message(
            conversation.id,
            PATIENT,
            ADMIN,
            "x" * 150,
            priority=MessagePriority.URGENT,
        )

        page = await messaging.get_conversation_summaries(UserRole.ADMIN, ADMIN)
        summary = page.items[0]
        assert summary.patient_name == "Sam Patient"
        assert summary.admin_name == "Dr. Rivera"
        assert summary.unread_count == 1
        assert summary.priority == MessagePriority.URGENT
        assert len(summary.last_message_preview) == 100

        unread_only = await messaging.get_conversation_summaries(
            UserRole.PATIENT, PATIENT, has_unread=True
        )
        assert unread_only.items == []

    @pytest.mark.asyncio
    async def test_summary_without_lookup_uses_fallback_name(self, messaging, conversation):
        page = await messaging.get_conversation_summaries(UserRole.ADMIN, ADMIN)
        assert page.items[0].patient_name == f"Patient {PATIENT}"
        assert page.items[0].admin_name is None
        assert page.items[0].last_message_preview == ""

    @pytest.mark.asyncio
    async def test_total_unread_counts_active_conversations(self, messaging, conversation):
        other = await messaging.create_conversation("patient-2", ADMIN)
        await messaging.send_message(conversation.id, PATIENT, ADMIN, "a")
        await messaging.send_message(conversation.id, PATIENT, ADMIN, "b")
        await messaging.send_message(other.id, "patient-2", ADMIN, "c")

        assert await messaging.total_unread(UserRole.ADMIN, ADMIN) == 3

        await messaging.update_conversation_status(other.id, ConversationStatus.ARCHIVED)
        assert await messaging.total_unread(UserRole.ADMIN, ADMIN) == 2
        assert await messaging.total_unread(UserRole.PATIENT, PATIENT) == 0


class TestUpdateConversation:
    """Status changes and reassignment."""

    @pytest.mark.asyncio
    async def test_assign_to_other_admin(self, messaging, bus, conversation):
        old_admin_queue = await bus.subscribe(ADMIN)

        updated = await messaging.assign_conversation(conversation.id, OTHER_ADMIN)

        assert updated.admin_id == OTHER_ADMIN
        event = old_admin_queue.get_nowait()
        assert event.event == EventType.CONVERSATION_UPDATED

    @pytest.mark.asyncio
    async def test_assign_to_patient_is_rejected(self, messaging, conversation):
        with pytest.raises(ValidationError):
            await messaging.assign_conversation(conversation.id, PATIENT)

    @pytest.mark.asyncio
    async def test_reopen_conflicts_with_existing_active(self, messaging, conversation):
        await messaging.update_conversation_status(
            conversation.id, ConversationStatus.CLOSED
        )
        await messaging.create_conversation(PATIENT, ADMIN)

        with pytest.raises(ValidationError):
            await messaging.update_conversation_status(
                conversation.id, ConversationStatus.ACTIVE
            )

    @pytest.mark.asyncio
    async def test_update_missing(self, messaging):
        with pytest.raises(NotFoundError):
            await messaging.update_conversation_status(
                "missing", ConversationStatus.CLOSED
            )


class TestSearchMessages:
    """Cross-conversation search."""

    @pytest.mark.asyncio
    async def test_search_filters(self, messaging, conversation):
        await messaging.send_message(
            conversation.id, PATIENT, ADMIN, "Is my DOSE right?", MessageType.DOSING
        )
        await asyncio.sleep(0.001)
        await messaging.send_message(
            conversation.id, ADMIN, PATIENT, "Your dose is fine", MessageType.ADMIN_RESPONSE
        )
        await messaging.send_message(conversation.id, PATIENT, ADMIN, "Thanks")

        hits = await messaging.search_messages(MessageFilters(search_query="dose"))
        assert [m.content for m in hits.items] == [
            "Your dose is fine",
            "Is my DOSE right?",
        ]

        dosing = await messaging.search_messages(
            MessageFilters(message_type=MessageType.DOSING)
        )
        assert dosing.total == 1

        nobody = await messaging.search_messages(MessageFilters(patient_id="patient-9"))
        assert nobody.items == []

    @pytest.mark.asyncio
    async def test_search_rejects_inverted_dates(self, messaging, conversation):
        message = await messaging.send_message(conversation.id, PATIENT, ADMIN, "hi")
        with pytest.raises(ValidationError):
            await messaging.search_messages(
                MessageFilters(date_from=message.created_at, date_to=conversation.created_at)
            )

    @pytest.mark.asyncio
    async def test_naive_dates_are_treated_as_utc(self, messaging, conversation):
        await messaging.send_message(conversation.id, PATIENT, ADMIN, "hi")

        since_2020 = await messaging.search_messages(
            MessageFilters(date_from=datetime(2020, 1, 1))
        )
        assert since_2020.total == 1

        mixed = await messaging.search_messages(
            MessageFilters(
                date_from=datetime(2020, 1, 1),
                date_to=datetime(2030, 1, 1, tzinfo=timezone.utc),
            )
        )
        assert mixed.total == 1

        before_2020 = await messaging.search_messages(
            MessageFilters(date_to=datetime(2020, 1, 1))
        )
        assert before_2020.items == []

    def test_filter_dates_gain_utc(self):
        filters = MessageFilters(date_from="2020-01-01T00:00:00", date_to="2030-01-01T00:00:00Z")
        assert filters.date_from.tzinfo == timezone.utc
        assert filters.date_to == datetime(2030, 1, 1, tzinfo=timezone.utc)
