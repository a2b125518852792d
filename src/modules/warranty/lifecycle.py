"""Appointment lifecycle — the only sanctioned mutators of warranty state.

Every mutator validates against the appointment as read, then applies a
conditional UPDATE keyed on that status. If the row moved underneath us the
update matches nothing and ``ConcurrentModificationException`` is raised; the
caller re-reads and retries (see ``retry_on_conflict``).
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any, TypeVar

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from src.database.base import utcnow
from src.exceptions import (
    AlreadyPausedException,
    BusinessRuleException,
    ConcurrentModificationException,
    DataIntegrityDefect,
    ForbiddenException,
    InvalidTransitionException,
    NotFoundException,
)
from src.models.appointment import Appointment
from src.models.enums import AppointmentStatus
from src.modules.events.outbox_service import OutboxService
from src.modules.warranty.clock import compute_expiry, is_expired, remaining_days
from src.modules.warranty.constants import (
    CANCELLABLE_STATUSES,
    CUSTOMER_COMPLETABLE_STATUSES,
    EVENT_APPOINTMENT_CANCELLED,
    EVENT_APPOINTMENT_COMPLETED,
    EVENT_APPOINTMENT_FINISHED,
    EVENT_WARRANTY_EXPIRED,
    EVENT_WARRANTY_PAUSED,
    EVENT_WARRANTY_RESUMED,
    FINISHABLE_STATUSES,
)
from src.modules.warranty.conversation_sync import ConversationSynchronizer

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def conditional_update(
    db: AsyncSession,
    instance: Any,
    expected_status: Any,
    values: dict[str, Any],
) -> None:
    """UPDATE *instance*'s row only if its status is still *expected_status*.

    On success the new values are mirrored onto the in-memory instance as
    committed state, so the ORM does not issue a second, unconditional UPDATE
    at the next flush.
    """
    model = type(instance)
    values = {**values, "updated_at": utcnow()}
    result = await db.execute(
        update(model)
        .where(model.id == instance.id, model.status == expected_status)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ConcurrentModificationException(
            f"{model.__name__} {instance.id} is no longer '{expected_status.value}'"
        )
    for field, value in values.items():
        set_committed_value(instance, field, value)


async def retry_on_conflict(
    operation: Callable[[], Awaitable[T]],
    attempts: int,
) -> T:
    """Run *operation*, re-running it after a lost conditional update.

    *operation* must re-read whatever it mutates; the last conflict is
    re-raised once *attempts* is exhausted.
    """
    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except ConcurrentModificationException:
            if attempt == attempts:
                raise
            logger.warning(
                "Concurrent modification, retrying (attempt %d/%d)", attempt, attempts
            )
    raise ValueError("attempts must be >= 1")


class AppointmentLifecycle:
    def __init__(
        self,
        db: AsyncSession,
        synchronizer: ConversationSynchronizer | None = None,
    ) -> None:
        self.db = db
        self.synchronizer = synchronizer or ConversationSynchronizer(db)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_appointment(self, appointment_id: uuid.UUID) -> Appointment:
        """Load an appointment, always refreshing it from the database."""
        result = await self.db.execute(
            select(Appointment)
            .where(Appointment.id == appointment_id)
            .execution_options(populate_existing=True)
        )
        appointment = result.scalar_one_or_none()
        if appointment is None:
            raise NotFoundException(f"Appointment {appointment_id} not found")
        return appointment

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _publish(self, event_type: str, appointment: Appointment, **extra: Any) -> None:
        outbox = OutboxService(self.db)
        await outbox.publish_event(
            event_type=event_type,
            aggregate_type="appointment",
            aggregate_id=appointment.id,
            payload={
                "appointment_id": str(appointment.id),
                "customer_id": str(appointment.customer_id),
                "provider_id": str(appointment.provider_id),
                "status": appointment.status.value,
                "warranty_expires_at": (
                    appointment.warranty_expires_at.isoformat()
                    if appointment.warranty_expires_at
                    else None
                ),
                **extra,
            },
        )

    async def _sync(self, appointment: Appointment, now: datetime) -> None:
        await self.synchronizer.sync_conversation(
            appointment.customer_id, appointment.provider_id, now
        )

    # ------------------------------------------------------------------
    # Mutators
    # ------------------------------------------------------------------

    async def mark_finished(
        self,
        appointment: Appointment,
        finished_at: datetime,
        warranty_days: int,
        *,
        now: datetime | None = None,
        sync: bool = True,
    ) -> Appointment:
        """Start the warranty window: in-progress/confirmed -> in-warranty.

        *finished_at* may lie in the past; the conversation is synced as of
        *now*, which defaults to *finished_at*.
        """
        if appointment.finished_at is not None or appointment.status not in FINISHABLE_STATUSES:
            raise InvalidTransitionException(
                f"Cannot finish appointment {appointment.id} from status "
                f"'{appointment.status.value}'"
            )
        if warranty_days < 0:
            raise BusinessRuleException("warranty_days must not be negative")

        old_status = appointment.status
        await conditional_update(
            self.db,
            appointment,
            old_status,
            {
                "status": AppointmentStatus.IN_WARRANTY,
                "finished_at": finished_at,
                "warranty_days": warranty_days,
                "warranty_expires_at": compute_expiry(finished_at, warranty_days),
            },
        )
        await self._publish(EVENT_APPOINTMENT_FINISHED, appointment, warranty_days=warranty_days)
        logger.info(
            "Appointment %s finished (%s -> in-warranty), warranty expires %s",
            appointment.id, old_status.value, appointment.warranty_expires_at,
        )
        if sync:
            await self._sync(appointment, now or finished_at)
        return appointment

    async def pause_warranty(
        self, appointment: Appointment, now: datetime, *, sync: bool = True
    ) -> Appointment:
        """Freeze the countdown while a backjob is open: in-warranty -> backjob."""
        if appointment.is_paused:
            raise AlreadyPausedException(
                f"Warranty for appointment {appointment.id} is already paused"
            )
        if appointment.status != AppointmentStatus.IN_WARRANTY:
            raise InvalidTransitionException(
                f"Cannot pause warranty of appointment {appointment.id} in status "
                f"'{appointment.status.value}'"
            )
        if appointment.warranty_expires_at is None:
            logger.error(
                "Appointment %s is in-warranty without warranty_expires_at", appointment.id
            )
            raise DataIntegrityDefect(
                f"Appointment {appointment.id} is in-warranty without an expiry",
                appointment_id=str(appointment.id),
            )

        days_left = remaining_days(now, appointment.warranty_expires_at)
        await conditional_update(
            self.db,
            appointment,
            AppointmentStatus.IN_WARRANTY,
            {
                "status": AppointmentStatus.BACKJOB,
                "warranty_paused_at": now,
                "warranty_remaining_days": days_left,
            },
        )
        await self._publish(EVENT_WARRANTY_PAUSED, appointment, remaining_days=days_left)
        logger.info(
            "Warranty paused for appointment %s with %d day(s) remaining",
            appointment.id, days_left,
        )
        if sync:
            await self._sync(appointment, now)
        return appointment

    async def resume_warranty(
        self, appointment: Appointment, now: datetime, *, sync: bool = True
    ) -> Appointment:
        """Restart the countdown and put the appointment back in-warranty.

        The status is set even when pause data is missing, otherwise such an
        appointment would stay in ``backjob`` forever. Its expiry is left as
        stored; the reconciliation sweep reports it if it is absent.
        """
        values: dict[str, Any] = {"status": AppointmentStatus.IN_WARRANTY}
        paused_at = appointment.warranty_paused_at
        days_left = appointment.warranty_remaining_days

        if paused_at is not None and days_left is not None:
            values["warranty_expires_at"] = compute_expiry(now, days_left)
            values["warranty_paused_at"] = None
            values["warranty_remaining_days"] = None
        else:
            if paused_at is not None or days_left is not None:
                # Half-written pause: drop the stray field so the row is consistent again
                values["warranty_paused_at"] = None
                values["warranty_remaining_days"] = None
            logger.warning(
                "Resuming appointment %s without complete pause data "
                "(paused_at=%s, remaining_days=%s); expiry left at %s",
                appointment.id, paused_at, days_left, appointment.warranty_expires_at,
            )

        old_status = appointment.status
        await conditional_update(self.db, appointment, old_status, values)
        await self._publish(EVENT_WARRANTY_RESUMED, appointment, previous_status=old_status.value)
        logger.info(
            "Warranty resumed for appointment %s (%s -> in-warranty), expires %s",
            appointment.id, old_status.value, appointment.warranty_expires_at,
        )
        if sync:
            await self._sync(appointment, now)
        return appointment

    async def expire_naturally(
        self, appointment: Appointment, now: datetime, *, sync: bool = True
    ) -> bool:
        """in-warranty -> completed once the window has elapsed.

        Returns False without touching anything when the preconditions do not
        hold, so the sweep can call it repeatedly.
        """
        if (
            appointment.status != AppointmentStatus.IN_WARRANTY
            or appointment.is_paused
            or appointment.warranty_expires_at is None
            or not is_expired(now, appointment.warranty_expires_at)
        ):
            return False

        await conditional_update(
            self.db,
            appointment,
            AppointmentStatus.IN_WARRANTY,
            {"status": AppointmentStatus.COMPLETED, "completed_at": now},
        )
        await self._publish(EVENT_WARRANTY_EXPIRED, appointment)
        logger.info(
            "Appointment %s warranty expired at %s, marked completed",
            appointment.id, appointment.warranty_expires_at,
        )
        if sync:
            await self._sync(appointment, now)
        return True

    async def complete_by_customer(
        self,
        appointment: Appointment,
        customer_id: uuid.UUID,
        now: datetime,
        *,
        sync: bool = True,
    ) -> Appointment:
        """Customer closes the warranty early; already-completed is a no-op."""
        if appointment.customer_id != customer_id:
            raise ForbiddenException("Only the appointment customer can mark it as completed")
        if appointment.status == AppointmentStatus.COMPLETED:
            return appointment
        if appointment.status not in CUSTOMER_COMPLETABLE_STATUSES:
            raise InvalidTransitionException(
                f"Appointment {appointment.id} in status '{appointment.status.value}' "
                "is not eligible for completion"
            )

        values: dict[str, Any] = {"status": AppointmentStatus.COMPLETED, "completed_at": now}
        if (
            appointment.warranty_expires_at is None
            and appointment.finished_at is not None
            and appointment.warranty_days is not None
        ):
            values["warranty_expires_at"] = compute_expiry(
                appointment.finished_at, appointment.warranty_days
            )

        old_status = appointment.status
        await conditional_update(self.db, appointment, old_status, values)
        await self._publish(EVENT_APPOINTMENT_COMPLETED, appointment, completed_by="customer")
        logger.info("Appointment %s completed early by customer %s", appointment.id, customer_id)
        if sync:
            await self._sync(appointment, now)
        return appointment

    async def cancel_appointment(
        self, appointment: Appointment, reason: str, now: datetime
    ) -> Appointment:
        """Terminal cancellation before the job is finished."""
        if appointment.status not in CANCELLABLE_STATUSES:
            raise InvalidTransitionException(
                f"Cannot cancel appointment {appointment.id} in status "
                f"'{appointment.status.value}'"
            )

        old_status = appointment.status
        await conditional_update(
            self.db,
            appointment,
            old_status,
            {"status": AppointmentStatus.CANCELLED, "cancellation_reason": reason},
        )
        await self._publish(
            EVENT_APPOINTMENT_CANCELLED, appointment, reason=reason, cancelled_at=now.isoformat()
        )
        logger.info("Appointment %s cancelled from '%s'", appointment.id, old_status.value)
        return appointment
