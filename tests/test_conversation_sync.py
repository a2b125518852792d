"""Tests for the conversation synchronizer and its window derivation."""

import uuid
from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import func, select, update

from src.exceptions import NotFoundException
from src.models.appointment import Appointment
from src.models.conversation import Conversation
from src.models.enums import AppointmentStatus, ConversationStatus
from src.modules.events.outbox_service import OutboxService
from src.modules.warranty.conversation_sync import (
    ConversationSynchronizer,
    compute_conversation_window,
    is_active_warranty,
)

NOW = datetime(2025, 1, 10, tzinfo=UTC)


def _appointment(status: AppointmentStatus, expires_in_days: float | None) -> Appointment:
    expires = None if expires_in_days is None else NOW + timedelta(days=expires_in_days)
    return Appointment(
        id=uuid.uuid4(),
        customer_id=uuid.uuid4(),
        provider_id=uuid.uuid4(),
        status=status,
        warranty_expires_at=expires,
    )


class TestIsActiveWarranty:
    @pytest.mark.parametrize(
        "status,expires_in_days,expected",
        [
            (AppointmentStatus.IN_WARRANTY, 5, True),
            (AppointmentStatus.IN_WARRANTY, 0, False),
            (AppointmentStatus.IN_WARRANTY, -1, False),
            (AppointmentStatus.BACKJOB, 5, True),
            # paused: the frozen expiry is not checked against now
            (AppointmentStatus.BACKJOB, -3, True),
            (AppointmentStatus.IN_WARRANTY, None, False),
            (AppointmentStatus.BACKJOB, None, False),
            (AppointmentStatus.COMPLETED, 5, False),
            (AppointmentStatus.FINISHED, 5, False),
            (AppointmentStatus.CANCELLED, 5, False),
        ],
    )
    def test_predicate(self, status, expires_in_days, expected):
        assert is_active_warranty(_appointment(status, expires_in_days), NOW) is expected


class TestComputeConversationWindow:
    def test_no_appointments_is_closed(self):
        window = compute_conversation_window([], NOW)
        assert window.status == ConversationStatus.CLOSED
        assert window.warranty_expires is None

    def test_takes_latest_active_expiry(self):
        appointments = [
            _appointment(AppointmentStatus.IN_WARRANTY, 3),
            _appointment(AppointmentStatus.IN_WARRANTY, 12),
            _appointment(AppointmentStatus.BACKJOB, 7),
            # ignored: expired or not tracked
            _appointment(AppointmentStatus.IN_WARRANTY, -30),
            _appointment(AppointmentStatus.COMPLETED, 40),
        ]

        window = compute_conversation_window(appointments, NOW)

        assert window.status == ConversationStatus.ACTIVE
        assert window.warranty_expires == NOW + timedelta(days=12)

    def test_only_expired_is_closed(self):
        appointments = [
            _appointment(AppointmentStatus.IN_WARRANTY, -1),
            _appointment(AppointmentStatus.COMPLETED, 5),
        ]

        window = compute_conversation_window(appointments, NOW)

        assert window.status == ConversationStatus.CLOSED
        assert window.warranty_expires is None

    def test_paused_past_expiry_keeps_window_open(self):
        window = compute_conversation_window([_appointment(AppointmentStatus.BACKJOB, -2)], NOW)

        assert window.status == ConversationStatus.ACTIVE
        assert window.warranty_expires == NOW - timedelta(days=2)


class TestSyncConversation:
    @pytest.mark.asyncio
    async def test_creates_conversation_for_new_pair(self, session, make_appointment, pair):
        customer_id, provider_id = pair
        await make_appointment(
            session, customer_id=customer_id, provider_id=provider_id,
            status=AppointmentStatus.IN_WARRANTY, warranty_expires_at=NOW + timedelta(days=5),
        )

        result = await ConversationSynchronizer(session).sync_conversation(customer_id, provider_id, NOW)

        assert result.changed is True
        assert result.previous_status is None
        assert result.conversation.status == ConversationStatus.ACTIVE
        assert result.conversation.warranty_expires == NOW + timedelta(days=5)

    @pytest.mark.asyncio
    async def test_second_sync_is_unchanged(self, session, make_appointment, pair):
        customer_id, provider_id = pair
        await make_appointment(
            session, customer_id=customer_id, provider_id=provider_id,
            status=AppointmentStatus.IN_WARRANTY, warranty_expires_at=NOW + timedelta(days=5),
        )
        sync = ConversationSynchronizer(session)
        first = await sync.sync_conversation(customer_id, provider_id, NOW)

        second = await sync.sync_conversation(customer_id, provider_id, NOW)

        assert second.changed is False
        assert second.conversation.id == first.conversation.id
        count = await session.scalar(select(func.count()).select_from(Conversation))
        assert count == 1

    @pytest.mark.asyncio
    async def test_aggregates_over_pair_only(self, session, make_appointment, pair):
        customer_id, provider_id = pair
        for days in (4, 9):
            await make_appointment(
                session, customer_id=customer_id, provider_id=provider_id,
                status=AppointmentStatus.IN_WARRANTY, warranty_expires_at=NOW + timedelta(days=days),
            )
        # same customer, other provider: not part of this pair
        await make_appointment(
            session, customer_id=customer_id, status=AppointmentStatus.IN_WARRANTY,
            warranty_expires_at=NOW + timedelta(days=30),
        )

        result = await ConversationSynchronizer(session).sync_conversation(customer_id, provider_id, NOW)

        assert result.conversation.warranty_expires == NOW + timedelta(days=9)

    @pytest.mark.asyncio
    async def test_repairs_stale_closed_conversation(self, session, make_appointment, pair):
        customer_id, provider_id = pair
        await make_appointment(
            session, customer_id=customer_id, provider_id=provider_id,
            status=AppointmentStatus.IN_WARRANTY, warranty_expires_at=NOW + timedelta(days=5),
        )
        sync = ConversationSynchronizer(session)
        created = await sync.sync_conversation(customer_id, provider_id, NOW)
        # drift from an independent writer
        await session.execute(
            update(Conversation.__table__)
            .where(Conversation.__table__.c.id == created.conversation.id)
            .values(status=ConversationStatus.CLOSED, warranty_expires=None)
        )

        result = await sync.sync_conversation(customer_id, provider_id, NOW)

        assert result.changed is True
        assert result.previous_status == ConversationStatus.CLOSED
        assert result.conversation.status == ConversationStatus.ACTIVE
        assert result.conversation.warranty_expires == NOW + timedelta(days=5)

        events = await OutboxService(session).get_events_for("conversation", created.conversation.id)
        assert [e.event_type for e in events] == ["conversation.reopened"]

    @pytest.mark.asyncio
    async def test_closes_when_last_warranty_lapses(self, session, make_appointment, pair):
        customer_id, provider_id = pair
        await make_appointment(
            session, customer_id=customer_id, provider_id=provider_id,
            status=AppointmentStatus.IN_WARRANTY, warranty_expires_at=NOW + timedelta(days=1),
        )
        sync = ConversationSynchronizer(session)
        created = await sync.sync_conversation(customer_id, provider_id, NOW)

        result = await sync.sync_conversation(customer_id, provider_id, NOW + timedelta(days=2))

        assert result.conversation.status == ConversationStatus.CLOSED
        assert result.conversation.warranty_expires is None
        events = await OutboxService(session).get_events_for("conversation", created.conversation.id)
        assert [e.event_type for e in events] == ["conversation.closed"]

    @pytest.mark.asyncio
    async def test_pair_without_appointments_gets_closed_conversation(self, session, pair):
        result = await ConversationSynchronizer(session).sync_conversation(*pair, NOW)

        assert result.conversation.status == ConversationStatus.CLOSED
        assert result.conversation.warranty_expires is None


class TestMessagingAllowed:
    @pytest.mark.asyncio
    async def test_follows_live_window_not_stored_row(self, session, make_appointment, pair):
        customer_id, provider_id = pair
        await make_appointment(
            session, customer_id=customer_id, provider_id=provider_id,
            status=AppointmentStatus.IN_WARRANTY, warranty_expires_at=NOW + timedelta(days=1),
        )
        sync = ConversationSynchronizer(session)

        # no conversation row yet
        assert await sync.is_messaging_allowed(customer_id, provider_id, NOW) is True
        assert await sync.is_messaging_allowed(customer_id, provider_id, NOW + timedelta(days=1)) is False

    @pytest.mark.asyncio
    async def test_get_conversation_missing(self, session, pair):
        with pytest.raises(NotFoundException):
            await ConversationSynchronizer(session).get_conversation(*pair)
