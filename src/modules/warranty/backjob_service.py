"""Backjob dispute service — filing, provider dispute, resolution, cancellation."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from src.config import settings
from src.exceptions import (
    ConcurrentModificationException,
    DataIntegrityDefect,
    DuplicateBackjobException,
    ForbiddenException,
    InvalidTransitionException,
    NotFoundException,
    WarrantyExpiredException,
)
from src.models.backjob_application import BackjobApplication
from src.models.backjob_transition import BackjobTransition
from src.models.enums import ActorRole, AppointmentStatus, BackjobStatus
from src.modules.events.outbox_service import OutboxService
from src.modules.warranty.clock import is_expired
from src.modules.warranty.constants import (
    ADMIN_RESOLUTION_OUTCOMES,
    EVENT_BACKJOB_CANCELLED,
    EVENT_BACKJOB_DISPUTED,
    EVENT_BACKJOB_FILED,
    EVENT_BACKJOB_RESOLVED,
    OPEN_BACKJOB_STATUSES,
    VALID_BACKJOB_TRANSITIONS,
)
from src.modules.warranty.lifecycle import AppointmentLifecycle, conditional_update

logger = logging.getLogger(__name__)


class BackjobService:
    def __init__(self, db: AsyncSession, lifecycle: AppointmentLifecycle | None = None):
        self.db = db
        self.lifecycle = lifecycle or AppointmentLifecycle(db)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_backjob(
        self, backjob_id: uuid.UUID, *, with_transitions: bool = False
    ) -> BackjobApplication:
        query = (
            select(BackjobApplication)
            .where(BackjobApplication.id == backjob_id)
            .execution_options(populate_existing=True)
        )
        if with_transitions:
            query = query.options(selectinload(BackjobApplication.transitions))
        result = await self.db.execute(query)
        backjob = result.scalar_one_or_none()
        if backjob is None:
            raise NotFoundException(f"Backjob application {backjob_id} not found")
        return backjob

    async def list_backjobs(
        self,
        status: BackjobStatus | None = None,
        appointment_id: uuid.UUID | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[BackjobApplication], int]:
        """Admin queue of backjob applications, newest first (paginated)."""
        query = select(BackjobApplication)
        count_query = select(func.count()).select_from(BackjobApplication)

        if status is not None:
            query = query.where(BackjobApplication.status == status)
            count_query = count_query.where(BackjobApplication.status == status)

        if appointment_id is not None:
            query = query.where(BackjobApplication.appointment_id == appointment_id)
            count_query = count_query.where(BackjobApplication.appointment_id == appointment_id)

        total_result = await self.db.execute(count_query)
        total = total_result.scalar() or 0

        query = query.order_by(BackjobApplication.created_at.desc()).offset(offset).limit(limit)
        result = await self.db.execute(query)
        items = list(result.scalars().all())

        return items, total

    async def get_open_backjob(self, appointment_id: uuid.UUID) -> BackjobApplication | None:
        result = await self.db.execute(
            select(BackjobApplication).where(
                BackjobApplication.appointment_id == appointment_id,
                BackjobApplication.status.in_(OPEN_BACKJOB_STATUSES),
            )
        )
        return result.scalars().first()

    # ------------------------------------------------------------------
    # State machine helpers
    # ------------------------------------------------------------------

    def _validate_transition(self, current_status: BackjobStatus, target_status: BackjobStatus) -> None:
        allowed = VALID_BACKJOB_TRANSITIONS.get(current_status, [])
        if target_status not in allowed:
            raise InvalidTransitionException(
                f"Cannot transition backjob from '{current_status.value}' to '{target_status.value}'. "
                f"Allowed transitions: {[s.value for s in allowed]}"
            )

    async def _record_transition(
        self,
        backjob_id: uuid.UUID,
        from_status: BackjobStatus | None,
        to_status: BackjobStatus,
        actor_id: uuid.UUID | None,
        actor_role: ActorRole,
        reason: str | None = None,
    ) -> BackjobTransition:
        transition = BackjobTransition(
            backjob_id=backjob_id,
            from_status=from_status,
            to_status=to_status,
            transitioned_by=actor_id,
            actor_role=actor_role,
            reason=reason,
        )
        self.db.add(transition)
        await self.db.flush()
        return transition

    async def _publish(self, event_type: str, backjob: BackjobApplication, **extra: Any) -> None:
        outbox = OutboxService(self.db)
        await outbox.publish_event(
            event_type=event_type,
            aggregate_type="backjob",
            aggregate_id=backjob.id,
            payload={
                "backjob_id": str(backjob.id),
                "appointment_id": str(backjob.appointment_id),
                "customer_id": str(backjob.customer_id),
                "provider_id": str(backjob.provider_id),
                "status": backjob.status.value,
                **extra,
            },
        )

    async def _resume_parent(self, appointment_id: uuid.UUID, now: datetime) -> None:
        """Resume the parent appointment's warranty, re-reading on conflict.

        Resuming is unconditional, so retrying against a fresh read is safe.
        """
        attempts = settings.warranty_max_concurrency_retries
        for attempt in range(1, attempts + 1):
            appointment = await self.lifecycle.get_appointment(appointment_id)
            try:
                await self.lifecycle.resume_warranty(appointment, now)
                return
            except ConcurrentModificationException:
                if attempt == attempts:
                    raise
                logger.warning(
                    "Appointment %s changed while resuming warranty, retrying (%d/%d)",
                    appointment_id, attempt, attempts,
                )

    async def _close(
        self,
        backjob: BackjobApplication,
        target_status: BackjobStatus,
        actor_id: uuid.UUID,
        actor_role: ActorRole,
        now: datetime,
        values: dict[str, Any],
        reason: str | None,
    ) -> BackjobApplication:
        """Move *backjob* to a terminal status and give the warranty back."""
        old_status = backjob.status
        self._validate_transition(old_status, target_status)

        await conditional_update(
            self.db,
            backjob,
            old_status,
            {"status": target_status, "resolved_by": actor_id, "resolved_at": now, **values},
        )
        await self._record_transition(
            backjob.id, old_status, target_status, actor_id, actor_role, reason
        )
        await self._resume_parent(backjob.appointment_id, now)

        event_type = (
            EVENT_BACKJOB_CANCELLED
            if target_status == BackjobStatus.CANCELLED_BY_USER
            else EVENT_BACKJOB_RESOLVED
        )
        await self._publish(event_type, backjob, previous_status=old_status.value)
        logger.info(
            "Backjob %s %s -> %s by %s %s",
            backjob.id, old_status.value, target_status.value, actor_role.value, actor_id,
        )
        return backjob

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def file_backjob(
        self,
        appointment_id: uuid.UUID,
        customer_id: uuid.UUID,
        reason: str,
        evidence: dict[str, Any] | None,
        now: datetime,
    ) -> BackjobApplication:
        """Open a complaint against an appointment and pause its warranty."""
        appointment = await self.lifecycle.get_appointment(appointment_id)

        if appointment.customer_id != customer_id:
            raise ForbiddenException("Only the appointment customer can apply for a backjob")

        if await self.get_open_backjob(appointment.id) is not None:
            raise DuplicateBackjobException(
                f"An active backjob request already exists for appointment {appointment.id}"
            )

        if appointment.status != AppointmentStatus.IN_WARRANTY:
            raise InvalidTransitionException(
                f"Backjob can only be applied during warranty "
                f"(appointment {appointment.id} is '{appointment.status.value}')"
            )

        if appointment.warranty_expires_at is None:
            raise DataIntegrityDefect(
                f"Appointment {appointment.id} is in-warranty without an expiry",
                appointment_id=str(appointment.id),
            )

        if is_expired(now, appointment.warranty_expires_at):
            raise WarrantyExpiredException(
                f"Warranty for appointment {appointment.id} expired at "
                f"{appointment.warranty_expires_at.isoformat()}"
            )

        await self.lifecycle.pause_warranty(appointment, now)

        backjob = BackjobApplication(
            appointment_id=appointment.id,
            customer_id=appointment.customer_id,
            provider_id=appointment.provider_id,
            status=BackjobStatus.PENDING,
            reason=reason,
            evidence=evidence,
        )
        self.db.add(backjob)
        try:
            await self.db.flush()
        except IntegrityError as exc:
            raise DuplicateBackjobException(
                f"An active backjob request already exists for appointment {appointment.id}"
            ) from exc

        await self._record_transition(
            backjob.id, None, BackjobStatus.PENDING, customer_id, ActorRole.CUSTOMER, reason
        )
        await self._publish(
            EVENT_BACKJOB_FILED,
            backjob,
            warranty_remaining_days=appointment.warranty_remaining_days,
        )
        logger.info(
            "Backjob %s filed for appointment %s by customer %s",
            backjob.id, appointment.id, customer_id,
        )
        return backjob

    async def dispute_backjob(
        self,
        backjob_id: uuid.UUID,
        provider_id: uuid.UUID,
        reason: str,
        evidence: dict[str, Any] | None,
        now: datetime,
    ) -> BackjobApplication:
        """Provider contests a pending backjob; the warranty stays paused."""
        backjob = await self.get_backjob(backjob_id)

        if backjob.provider_id != provider_id:
            raise ForbiddenException("Only the appointment provider can dispute a backjob")

        old_status = backjob.status
        self._validate_transition(old_status, BackjobStatus.DISPUTED)

        await conditional_update(
            self.db,
            backjob,
            old_status,
            {
                "status": BackjobStatus.DISPUTED,
                "provider_dispute_reason": reason,
                "provider_dispute_evidence": evidence,
                "disputed_at": now,
            },
        )
        await self._record_transition(
            backjob.id, old_status, BackjobStatus.DISPUTED, provider_id, ActorRole.PROVIDER, reason
        )
        await self._publish(EVENT_BACKJOB_DISPUTED, backjob)
        logger.info("Backjob %s disputed by provider %s", backjob.id, provider_id)
        return backjob

    async def resolve_backjob(
        self,
        backjob_id: uuid.UUID,
        admin_id: uuid.UUID,
        outcome: BackjobStatus,
        notes: str | None,
        now: datetime,
    ) -> BackjobApplication:
        """Admin decision on a pending or disputed backjob."""
        if outcome not in ADMIN_RESOLUTION_OUTCOMES:
            raise InvalidTransitionException(
                f"'{outcome.value}' is not an admin resolution outcome. "
                f"Allowed: {sorted(o.value for o in ADMIN_RESOLUTION_OUTCOMES)}"
            )
        backjob = await self.get_backjob(backjob_id)
        return await self._close(
            backjob,
            outcome,
            admin_id,
            ActorRole.ADMIN,
            now,
            {"admin_notes": notes},
            reason=notes,
        )

    async def cancel_backjob_by_customer(
        self,
        backjob_id: uuid.UUID,
        customer_id: uuid.UUID,
        now: datetime,
    ) -> BackjobApplication:
        """Customer withdraws a pending backjob."""
        backjob = await self.get_backjob(backjob_id)
        if backjob.customer_id != customer_id:
            raise ForbiddenException("Only the appointment customer can cancel this backjob")
        return await self._close(
            backjob,
            BackjobStatus.CANCELLED_BY_USER,
            customer_id,
            ActorRole.CUSTOMER,
            now,
            {},
            reason="Cancelled by customer",
        )
