"""Conversation synchronizer — recomputes a pair's warranty window.

A conversation is a materialized view over the appointments between one
customer and one provider. It is never edited directly: every write replaces
it with ``compute_conversation_window`` applied to the current appointments,
so concurrent or out-of-order syncs converge on the next run.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from src.database.base import utcnow
from src.exceptions import NotFoundException
from src.models.appointment import Appointment
from src.models.conversation import Conversation
from src.models.enums import AppointmentStatus, ConversationStatus
from src.modules.events.outbox_service import OutboxService
from src.modules.warranty.clock import ensure_utc
from src.modules.warranty.constants import (
    EVENT_CONVERSATION_CLOSED,
    EVENT_CONVERSATION_REOPENED,
    WARRANTY_TRACKED_STATUSES,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConversationWindow:
    status: ConversationStatus
    warranty_expires: datetime | None


@dataclass(frozen=True)
class SyncResult:
    conversation: Conversation
    changed: bool
    previous_status: ConversationStatus | None


def is_active_warranty(appointment: Appointment, now: datetime) -> bool:
    """Does *appointment* hold its pair's conversation open at *now*?

    A paused (backjob) warranty counts regardless of its frozen expiry; an
    in-warranty one only until it expires.
    """
    if appointment.status not in WARRANTY_TRACKED_STATUSES:
        return False
    if appointment.warranty_expires_at is None:
        return False
    if appointment.status == AppointmentStatus.BACKJOB:
        return True
    return now < appointment.warranty_expires_at


def compute_conversation_window(
    appointments: Iterable[Appointment], now: datetime
) -> ConversationWindow:
    expiries = [
        ensure_utc(a.warranty_expires_at)
        for a in appointments
        if is_active_warranty(a, now)
    ]
    if not expiries:
        return ConversationWindow(status=ConversationStatus.CLOSED, warranty_expires=None)
    return ConversationWindow(status=ConversationStatus.ACTIVE, warranty_expires=max(expiries))


class ConversationSynchronizer:
    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def _load_pair_appointments(
        self, customer_id: uuid.UUID, provider_id: uuid.UUID
    ) -> list[Appointment]:
        result = await self.db.execute(
            select(Appointment)
            .where(
                Appointment.customer_id == customer_id,
                Appointment.provider_id == provider_id,
            )
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def _find_conversation(
        self, customer_id: uuid.UUID, provider_id: uuid.UUID
    ) -> Conversation | None:
        result = await self.db.execute(
            select(Conversation)
            .where(
                Conversation.customer_id == customer_id,
                Conversation.provider_id == provider_id,
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _get_or_create_conversation(
        self, customer_id: uuid.UUID, provider_id: uuid.UUID
    ) -> tuple[Conversation, bool]:
        conversation = await self._find_conversation(customer_id, provider_id)
        if conversation is not None:
            return conversation, False

        # INSERT ... ON CONFLICT DO NOTHING: a concurrent sync may create the pair first
        dialect = self.db.get_bind().dialect.name
        insert = pg_insert if dialect == "postgresql" else sqlite_insert
        now = utcnow()
        result = await self.db.execute(
            insert(Conversation.__table__)
            .values(
                id=uuid.uuid4(),
                customer_id=customer_id,
                provider_id=provider_id,
                status=ConversationStatus.CLOSED,
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(index_elements=["customer_id", "provider_id"])
        )
        conversation = await self._find_conversation(customer_id, provider_id)
        if conversation is None:
            raise NotFoundException(
                f"Conversation for pair {customer_id}/{provider_id} vanished after insert"
            )
        return conversation, result.rowcount == 1

    async def get_conversation(
        self, customer_id: uuid.UUID, provider_id: uuid.UUID
    ) -> Conversation:
        conversation = await self._find_conversation(customer_id, provider_id)
        if conversation is None:
            raise NotFoundException(
                f"No conversation between customer {customer_id} and provider {provider_id}"
            )
        return conversation

    async def compute_window(
        self, customer_id: uuid.UUID, provider_id: uuid.UUID, now: datetime
    ) -> ConversationWindow:
        appointments = await self._load_pair_appointments(customer_id, provider_id)
        return compute_conversation_window(appointments, now)

    async def is_messaging_allowed(
        self, customer_id: uuid.UUID, provider_id: uuid.UUID, now: datetime
    ) -> bool:
        """Messaging is open while the pair has an active warranty window.

        Answered from the appointments themselves, not the stored
        conversation, so a sync that has not run yet cannot lock users out.
        """
        window = await self.compute_window(customer_id, provider_id, now)
        return window.status == ConversationStatus.ACTIVE

    async def sync_conversation(
        self, customer_id: uuid.UUID, provider_id: uuid.UUID, now: datetime
    ) -> SyncResult:
        """Overwrite the pair's conversation with the recomputed window."""
        window = await self.compute_window(customer_id, provider_id, now)
        conversation, created = await self._get_or_create_conversation(customer_id, provider_id)

        previous_status = None if created else conversation.status
        previous_expires = (
            ensure_utc(conversation.warranty_expires)
            if conversation.warranty_expires is not None
            else None
        )
        changed = created or (
            previous_status != window.status or previous_expires != window.warranty_expires
        )

        conversation.status = window.status
        conversation.warranty_expires = window.warranty_expires
        conversation.updated_at = utcnow()
        await self.db.flush()

        if previous_status is not None and previous_status != window.status:
            event_type = (
                EVENT_CONVERSATION_CLOSED
                if window.status == ConversationStatus.CLOSED
                else EVENT_CONVERSATION_REOPENED
            )
            outbox = OutboxService(self.db)
            await outbox.publish_event(
                event_type=event_type,
                aggregate_type="conversation",
                aggregate_id=conversation.id,
                payload={
                    "conversation_id": str(conversation.id),
                    "customer_id": str(customer_id),
                    "provider_id": str(provider_id),
                    "warranty_expires": (
                        window.warranty_expires.isoformat() if window.warranty_expires else None
                    ),
                },
            )

        if changed:
            logger.info(
                "Conversation %s for pair %s/%s synced: %s -> %s, warranty_expires %s -> %s",
                conversation.id, customer_id, provider_id,
                previous_status.value if previous_status else None, window.status.value,
                previous_expires, window.warranty_expires,
            )
        return SyncResult(conversation=conversation, changed=changed, previous_status=previous_status)
