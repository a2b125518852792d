"""Warranty API routers — appointments, backjobs, conversations and admin ops."""

import uuid
from datetime import UTC, datetime

from fastapi import APIRouter, Depends, Query, Request
from slowapi import Limiter
from slowapi.util import get_remote_address
from sqlalchemy.ext.asyncio import AsyncSession

from src.config import settings
from src.database.session import get_db
from src.exceptions import ForbiddenException
from src.models.appointment import Appointment
from src.models.backjob_application import BackjobApplication
from src.models.enums import BackjobStatus
from src.modules.identity.auth import (
    AuthenticatedUser,
    get_current_user,
    require_admin,
    require_customer,
    require_provider,
)
from src.modules.warranty.backjob_service import BackjobService
from src.modules.warranty.clock import ensure_utc
from src.modules.warranty.conversation_sync import ConversationSynchronizer
from src.modules.warranty.lifecycle import AppointmentLifecycle, retry_on_conflict
from src.modules.warranty.schemas import (
    AppointmentResponse,
    BackjobDetailResponse,
    BackjobListResponse,
    BackjobResponse,
    CancelAppointmentRequest,
    ConversationResponse,
    DisputeBackjobRequest,
    FileBackjobRequest,
    FileBackjobResponse,
    FinishAppointmentRequest,
    ResolveBackjobRequest,
    SweepReport,
    WarrantyJobStatus,
)
from src.modules.warranty.sweep import ReconciliationSweep, collect_job_status

appointment_router = APIRouter(prefix="/appointments", tags=["appointments"])
backjob_router = APIRouter(prefix="/backjobs", tags=["backjobs"])
conversation_router = APIRouter(prefix="/conversations", tags=["conversations"])
admin_router = APIRouter(prefix="/admin/warranty", tags=["warranty-admin"])

limiter = Limiter(key_func=get_remote_address)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now() -> datetime:
    return datetime.now(UTC)


def _require_party(user: AuthenticatedUser, record: Appointment | BackjobApplication) -> None:
    """Raise ForbiddenException unless the user is on the record or an admin."""
    if user.is_admin:
        return
    if user.id not in (record.customer_id, record.provider_id):
        raise ForbiddenException("You are not a party to this appointment")


# ---------------------------------------------------------------------------
# Appointments
# ---------------------------------------------------------------------------


@appointment_router.get("/{appointment_id}", response_model=AppointmentResponse)
async def get_appointment(
    appointment_id: uuid.UUID,
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Get an appointment with its warranty fields."""
    appointment = await AppointmentLifecycle(db).get_appointment(appointment_id)
    _require_party(user, appointment)
    return AppointmentResponse.model_validate(appointment)


@appointment_router.post("/{appointment_id}/finish", response_model=AppointmentResponse)
async def finish_appointment(
    appointment_id: uuid.UUID,
    body: FinishAppointmentRequest,
    user: AuthenticatedUser = Depends(require_provider),
    db: AsyncSession = Depends(get_db),
):
    """Provider marks the job done; the warranty window starts."""
    lifecycle = AppointmentLifecycle(db)
    now = _now()
    finished_at = ensure_utc(body.finished_at) if body.finished_at else now

    async def _finish() -> Appointment:
        appointment = await lifecycle.get_appointment(appointment_id)
        if appointment.provider_id != user.id:
            raise ForbiddenException("Only the appointment provider can finish it")
        return await lifecycle.mark_finished(
            appointment, finished_at, body.warranty_days, now=now
        )

    appointment = await retry_on_conflict(_finish, settings.warranty_max_concurrency_retries)
    return AppointmentResponse.model_validate(appointment)


@appointment_router.post("/{appointment_id}/complete", response_model=AppointmentResponse)
async def complete_appointment(
    appointment_id: uuid.UUID,
    user: AuthenticatedUser = Depends(require_customer),
    db: AsyncSession = Depends(get_db),
):
    """Customer confirms satisfaction and ends the warranty early."""
    lifecycle = AppointmentLifecycle(db)
    now = _now()

    async def _complete() -> Appointment:
        appointment = await lifecycle.get_appointment(appointment_id)
        return await lifecycle.complete_by_customer(appointment, user.id, now)

    appointment = await retry_on_conflict(_complete, settings.warranty_max_concurrency_retries)
    return AppointmentResponse.model_validate(appointment)


@appointment_router.post("/{appointment_id}/cancel", response_model=AppointmentResponse)
async def cancel_appointment(
    appointment_id: uuid.UUID,
    body: CancelAppointmentRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Cancel an appointment that has not been finished yet."""
    lifecycle = AppointmentLifecycle(db)
    now = _now()

    async def _cancel() -> Appointment:
        appointment = await lifecycle.get_appointment(appointment_id)
        _require_party(user, appointment)
        return await lifecycle.cancel_appointment(appointment, body.reason, now)

    appointment = await retry_on_conflict(_cancel, settings.warranty_max_concurrency_retries)
    return AppointmentResponse.model_validate(appointment)


@appointment_router.post(
    "/{appointment_id}/backjobs",
    response_model=FileBackjobResponse,
    status_code=201,
)
@limiter.limit("10/minute")
async def file_backjob(
    request: Request,
    appointment_id: uuid.UUID,
    body: FileBackjobRequest,
    user: AuthenticatedUser = Depends(require_customer),
    db: AsyncSession = Depends(get_db),
):
    """Customer files a backjob during the warranty window; the warranty pauses."""
    svc = BackjobService(db)
    now = _now()

    async def _file() -> BackjobApplication:
        return await svc.file_backjob(appointment_id, user.id, body.reason, body.evidence, now)

    backjob = await retry_on_conflict(_file, settings.warranty_max_concurrency_retries)
    appointment = await svc.lifecycle.get_appointment(appointment_id)
    return FileBackjobResponse(
        backjob=BackjobResponse.model_validate(backjob),
        appointment=AppointmentResponse.model_validate(appointment),
    )


# ---------------------------------------------------------------------------
# Backjobs
# ---------------------------------------------------------------------------


@backjob_router.get("/", response_model=BackjobListResponse)
async def list_backjobs(
    status: BackjobStatus | None = Query(None),
    appointment_id: uuid.UUID | None = Query(None),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    _user: AuthenticatedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Admin review queue of backjob applications."""
    svc = BackjobService(db)
    items, total = await svc.list_backjobs(
        status=status,
        appointment_id=appointment_id,
        limit=limit,
        offset=offset,
    )
    return BackjobListResponse(
        items=[BackjobResponse.model_validate(b) for b in items],
        total=total,
        limit=limit,
        offset=offset,
    )


@backjob_router.get("/{backjob_id}", response_model=BackjobDetailResponse)
async def get_backjob(
    backjob_id: uuid.UUID,
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Get a backjob application with its transition history."""
    backjob = await BackjobService(db).get_backjob(backjob_id, with_transitions=True)
    _require_party(user, backjob)
    return BackjobDetailResponse.model_validate(backjob)


@backjob_router.post("/{backjob_id}/dispute", response_model=BackjobResponse)
async def dispute_backjob(
    backjob_id: uuid.UUID,
    body: DisputeBackjobRequest,
    user: AuthenticatedUser = Depends(require_provider),
    db: AsyncSession = Depends(get_db),
):
    """Provider contests a pending backjob."""
    backjob = await BackjobService(db).dispute_backjob(
        backjob_id, user.id, body.reason, body.evidence, _now()
    )
    return BackjobResponse.model_validate(backjob)


@backjob_router.post("/{backjob_id}/resolve", response_model=BackjobResponse)
async def resolve_backjob(
    backjob_id: uuid.UUID,
    body: ResolveBackjobRequest,
    user: AuthenticatedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Admin approves or cancels a backjob; the warranty resumes."""
    backjob = await BackjobService(db).resolve_backjob(
        backjob_id, user.id, body.outcome, body.notes, _now()
    )
    return BackjobResponse.model_validate(backjob)


@backjob_router.post("/{backjob_id}/cancel", response_model=BackjobResponse)
async def cancel_backjob(
    backjob_id: uuid.UUID,
    user: AuthenticatedUser = Depends(require_customer),
    db: AsyncSession = Depends(get_db),
):
    """Customer withdraws a pending backjob; the warranty resumes."""
    backjob = await BackjobService(db).cancel_backjob_by_customer(backjob_id, user.id, _now())
    return BackjobResponse.model_validate(backjob)


# ---------------------------------------------------------------------------
# Conversations
# ---------------------------------------------------------------------------


@conversation_router.get("/", response_model=ConversationResponse)
async def get_conversation(
    customer_id: uuid.UUID = Query(...),
    provider_id: uuid.UUID = Query(...),
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Get the conversation for a customer/provider pair and whether it accepts messages."""
    if not user.is_admin and user.id not in (customer_id, provider_id):
        raise ForbiddenException("You are not a party to this conversation")

    sync = ConversationSynchronizer(db)
    conversation = await sync.get_conversation(customer_id, provider_id)
    response = ConversationResponse.model_validate(conversation)
    response.messaging_allowed = await sync.is_messaging_allowed(customer_id, provider_id, _now())
    return response


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------


@admin_router.post("/sweep", response_model=SweepReport)
async def trigger_sweep(
    _user: AuthenticatedUser = Depends(require_admin),
):
    """Run the reconciliation sweep now instead of waiting for the schedule."""
    return await ReconciliationSweep().run(_now())


@admin_router.get("/status", response_model=WarrantyJobStatus)
async def sweep_status(
    _user: AuthenticatedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Sweep schedule plus the conversation and expiry backlog it works on."""
    return await collect_job_status(db, _now())
