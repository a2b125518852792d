"""Pydantic v2 schemas for the warranty, backjob and conversation endpoints."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from src.models.enums import (
    ActorRole,
    AppointmentStatus,
    BackjobStatus,
    ConversationStatus,
)

# ---------------------------------------------------------------------------
# Appointment
# ---------------------------------------------------------------------------


class AppointmentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    customer_id: uuid.UUID
    provider_id: uuid.UUID
    status: AppointmentStatus
    scheduled_date: datetime | None = None
    warranty_days: int | None = None
    finished_at: datetime | None = None
    warranty_expires_at: datetime | None = None
    warranty_paused_at: datetime | None = None
    warranty_remaining_days: int | None = None
    completed_at: datetime | None = None
    cancellation_reason: str | None = None
    created_at: datetime
    updated_at: datetime


class FinishAppointmentRequest(BaseModel):
    warranty_days: int = Field(..., ge=0, le=3650)
    finished_at: datetime | None = Field(
        None, description="Defaults to the time the request is handled"
    )


class CancelAppointmentRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=2000)


# ---------------------------------------------------------------------------
# Backjob
# ---------------------------------------------------------------------------


class BackjobTransitionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    backjob_id: uuid.UUID
    from_status: BackjobStatus | None = None
    to_status: BackjobStatus
    transitioned_by: uuid.UUID | None = None
    actor_role: ActorRole
    reason: str | None = None
    created_at: datetime


class BackjobResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    appointment_id: uuid.UUID
    customer_id: uuid.UUID
    provider_id: uuid.UUID
    status: BackjobStatus
    reason: str
    evidence: dict[str, Any] | None = None
    provider_dispute_reason: str | None = None
    provider_dispute_evidence: dict[str, Any] | None = None
    disputed_at: datetime | None = None
    admin_notes: str | None = None
    resolved_by: uuid.UUID | None = None
    resolved_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class BackjobDetailResponse(BackjobResponse):
    transitions: list[BackjobTransitionResponse] = Field(default_factory=list)


class BackjobListResponse(BaseModel):
    items: list[BackjobResponse]
    total: int
    limit: int
    offset: int


class FileBackjobRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=5000)
    evidence: dict[str, Any] | None = Field(
        None, description="Opaque evidence payload, e.g. uploaded file references"
    )


class DisputeBackjobRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=5000)
    evidence: dict[str, Any] | None = None


class ResolveBackjobRequest(BaseModel):
    outcome: Literal[BackjobStatus.APPROVED, BackjobStatus.CANCELLED_BY_ADMIN]
    notes: str | None = Field(None, max_length=2000)


class FileBackjobResponse(BaseModel):
    backjob: BackjobResponse
    appointment: AppointmentResponse


# ---------------------------------------------------------------------------
# Conversation
# ---------------------------------------------------------------------------


class ConversationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    customer_id: uuid.UUID
    provider_id: uuid.UUID
    status: ConversationStatus
    warranty_expires: datetime | None = None
    created_at: datetime
    updated_at: datetime
    messaging_allowed: bool = False


# ---------------------------------------------------------------------------
# Reconciliation sweep
# ---------------------------------------------------------------------------


class IntegrityDefect(BaseModel):
    """A record the sweep will not repair on its own."""

    appointment_id: uuid.UUID
    customer_id: uuid.UUID
    provider_id: uuid.UUID
    status: AppointmentStatus
    message: str


class SweepError(BaseModel):
    """A per-record failure isolated by the sweep."""

    appointment_id: uuid.UUID | None = None
    customer_id: uuid.UUID | None = None
    provider_id: uuid.UUID | None = None
    error: str


class SweepReport(BaseModel):
    ran_at: datetime
    skipped: bool = False
    examined: int = 0
    expired: int = 0
    active: int = 0
    conversations_synced: int = 0
    conversations_repaired: int = 0
    repaired_pairs: list[tuple[uuid.UUID, uuid.UUID]] = Field(default_factory=list)
    integrity_defects: list[IntegrityDefect] = Field(default_factory=list)
    errors: list[SweepError] = Field(default_factory=list)


class WarrantyJobStatus(BaseModel):
    name: str
    task: str
    interval_seconds: int
    timezone: str = "UTC"
    description: str
    conversations_by_status: dict[str, int]
    active_with_warranty: int
    pending_expiry: int
