"""Reconciliation sweep — periodic repair of warranty and conversation drift.

The sweep re-applies the lifecycle rules to every appointment still under
warranty tracking, expiring those whose window has elapsed, then re-syncs the
conversation of every pair it touched. Each corrective write runs in its own
session, so one bad record never aborts the pass.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import AsyncIterator
from dataclasses import dataclass
from datetime import datetime

import redis.asyncio as redis
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.config import settings
from src.database.engine import async_session
from src.exceptions import ConcurrentModificationException
from src.models.appointment import Appointment
from src.models.conversation import Conversation
from src.models.enums import AppointmentStatus, ConversationStatus
from src.modules.warranty.clock import ensure_utc, is_expired
from src.modules.warranty.constants import (
    RELEASE_LOCK_SCRIPT,
    SWEEP_LOCK_KEY,
    SWEEP_TASK_NAME,
    WARRANTY_TRACKED_STATUSES,
)
from src.modules.warranty.conversation_sync import ConversationSynchronizer
from src.modules.warranty.lifecycle import AppointmentLifecycle
from src.modules.warranty.schemas import (
    IntegrityDefect,
    SweepError,
    SweepReport,
    WarrantyJobStatus,
)

logger = logging.getLogger(__name__)

Pair = tuple[uuid.UUID, uuid.UUID]


@dataclass(frozen=True)
class _Snapshot:
    """The columns the sweep needs to classify one tracked appointment."""

    id: uuid.UUID
    customer_id: uuid.UUID
    provider_id: uuid.UUID
    status: AppointmentStatus
    warranty_paused_at: datetime | None
    warranty_expires_at: datetime | None

    @property
    def pair(self) -> Pair:
        return (self.customer_id, self.provider_id)

    def is_due(self, now: datetime) -> bool:
        return (
            self.status == AppointmentStatus.IN_WARRANTY
            and self.warranty_paused_at is None
            and self.warranty_expires_at is not None
            and is_expired(now, ensure_utc(self.warranty_expires_at))
        )


class ReconciliationSweep:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] = async_session,
        redis_client: redis.Redis | None = None,
        batch_size: int | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._redis = redis_client
        self._batch_size = batch_size or settings.warranty_sweep_batch_size

    async def _get_redis(self) -> redis.Redis:
        if self._redis is None:
            self._redis = redis.from_url(settings.redis_url, decode_responses=True)
        return self._redis

    # ------------------------------------------------------------------
    # Run guard
    # ------------------------------------------------------------------

    async def _acquire_lock(self, token: str) -> bool:
        client = await self._get_redis()
        acquired = await client.set(
            SWEEP_LOCK_KEY, token, nx=True, ex=settings.warranty_sweep_lock_ttl_seconds
        )
        return bool(acquired)

    async def _release_lock(self, token: str) -> None:
        client = await self._get_redis()
        released = await client.eval(RELEASE_LOCK_SCRIPT, 1, SWEEP_LOCK_KEY, token)
        if not released:
            logger.warning("Sweep lock expired before the run finished; not releasing it")

    async def run(self, now: datetime) -> SweepReport:
        """Run one pass, or skip it if another pass still holds the lock."""
        token = uuid.uuid4().hex
        if not await self._acquire_lock(token):
            logger.info("Warranty sweep already in progress, skipping run at %s", now)
            return SweepReport(ran_at=now, skipped=True)

        try:
            return await self.reconcile(now)
        finally:
            await self._release_lock(token)

    # ------------------------------------------------------------------
    # Pass
    # ------------------------------------------------------------------

    async def _iter_tracked(self) -> AsyncIterator[list[_Snapshot]]:
        """Yield tracked appointments in id order, one batch per session."""
        last_id: uuid.UUID | None = None
        while True:
            query = (
                select(
                    Appointment.id,
                    Appointment.customer_id,
                    Appointment.provider_id,
                    Appointment.status,
                    Appointment.warranty_paused_at,
                    Appointment.warranty_expires_at,
                )
                .where(Appointment.status.in_(WARRANTY_TRACKED_STATUSES))
                .order_by(Appointment.id)
                .limit(self._batch_size)
            )
            if last_id is not None:
                query = query.where(Appointment.id > last_id)

            async with self._session_factory() as session:
                result = await session.execute(query)
                batch = [_Snapshot(*row) for row in result.all()]

            if not batch:
                return
            yield batch
            last_id = batch[-1].id

    async def _active_conversation_pairs(self) -> list[Pair]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Conversation.customer_id, Conversation.provider_id).where(
                    Conversation.status == ConversationStatus.ACTIVE
                )
            )
            return [(row.customer_id, row.provider_id) for row in result.all()]

    async def _expire(self, snapshot: _Snapshot, now: datetime) -> bool:
        """Expire one appointment and sync its pair, in a session of its own."""
        async with self._session_factory() as session:
            lifecycle = AppointmentLifecycle(session)
            appointment = await lifecycle.get_appointment(snapshot.id)
            fired = await lifecycle.expire_naturally(appointment, now)
            await session.commit()
        return fired

    async def _sync_pair(self, pair: Pair, now: datetime) -> bool:
        async with self._session_factory() as session:
            result = await ConversationSynchronizer(session).sync_conversation(*pair, now)
            await session.commit()
        return result.changed

    def _check_integrity(self, snapshot: _Snapshot, report: SweepReport) -> bool:
        if snapshot.warranty_expires_at is not None:
            return True
        defect = IntegrityDefect(
            appointment_id=snapshot.id,
            customer_id=snapshot.customer_id,
            provider_id=snapshot.provider_id,
            status=snapshot.status,
            message=f"Appointment is {snapshot.status.value} without warranty_expires_at",
        )
        report.integrity_defects.append(defect)
        logger.error(
            "Data integrity defect: appointment %s is %s with no warranty_expires_at",
            snapshot.id, snapshot.status.value,
        )
        return False

    async def reconcile(self, now: datetime) -> SweepReport:
        """One unguarded pass; ``run`` wraps this in the overlap lock."""
        report = SweepReport(ran_at=now)
        # dict keeps first-seen order, so pairs are synced deterministically
        pairs: dict[Pair, None] = {}

        async for batch in self._iter_tracked():
            for snapshot in batch:
                report.examined += 1
                pairs.setdefault(snapshot.pair)

                if not self._check_integrity(snapshot, report):
                    continue
                if not snapshot.is_due(now):
                    report.active += 1
                    continue

                try:
                    if await self._expire(snapshot, now):
                        report.expired += 1
                except ConcurrentModificationException:
                    logger.warning(
                        "Appointment %s changed during sweep, leaving it for the next run",
                        snapshot.id,
                    )
                except Exception as exc:
                    logger.exception("Failed to expire appointment %s", snapshot.id)
                    report.errors.append(
                        SweepError(
                            appointment_id=snapshot.id,
                            customer_id=snapshot.customer_id,
                            provider_id=snapshot.provider_id,
                            error=str(exc) or type(exc).__name__,
                        )
                    )

        # Conversations left active with nothing tracked behind them
        for pair in await self._active_conversation_pairs():
            pairs.setdefault(pair)

        for pair in pairs:
            try:
                changed = await self._sync_pair(pair, now)
            except Exception as exc:
                logger.exception("Failed to sync conversation for pair %s/%s", *pair)
                report.errors.append(
                    SweepError(
                        customer_id=pair[0],
                        provider_id=pair[1],
                        error=str(exc) or type(exc).__name__,
                    )
                )
                continue
            report.conversations_synced += 1
            if changed:
                report.conversations_repaired += 1
                report.repaired_pairs.append(pair)
                logger.warning("Repaired drifted conversation for pair %s/%s", *pair)

        logger.info(
            "Warranty sweep at %s: examined=%d expired=%d active=%d synced=%d "
            "repaired=%d defects=%d errors=%d",
            now, report.examined, report.expired, report.active,
            report.conversations_synced, report.conversations_repaired,
            len(report.integrity_defects), len(report.errors),
        )
        return report


async def collect_job_status(db: AsyncSession, now: datetime) -> WarrantyJobStatus:
    """Schedule of the sweep task plus the backlog it will work through."""
    result = await db.execute(
        select(Conversation.status, func.count()).group_by(Conversation.status)
    )
    by_status = {status.value: 0 for status in ConversationStatus}
    for status, count in result.all():
        by_status[status.value] = count

    active_with_warranty = await db.scalar(
        select(func.count()).select_from(Conversation).where(
            Conversation.status == ConversationStatus.ACTIVE,
            Conversation.warranty_expires.isnot(None),
        )
    )
    pending_expiry = await db.scalar(
        select(func.count()).select_from(Appointment).where(
            Appointment.status == AppointmentStatus.IN_WARRANTY,
            Appointment.warranty_paused_at.is_(None),
            Appointment.warranty_expires_at.isnot(None),
            Appointment.warranty_expires_at <= now,
        )
    )
    return WarrantyJobStatus(
        name="warranty-reconciliation-sweep",
        task=SWEEP_TASK_NAME,
        interval_seconds=settings.warranty_sweep_interval_seconds,
        description="Expires elapsed warranties and repairs drifted conversations",
        conversations_by_status=by_status,
        active_with_warranty=active_with_warranty or 0,
        pending_expiry=pending_expiry or 0,
    )
