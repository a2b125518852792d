"""BackjobApplication model — customer warranty complaints against an appointment."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import DateTime, ForeignKey, Index, Text, text
from sqlalchemy import Enum as SQLAlchemyEnum
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.database.base import Base, TimestampMixin, UUIDPrimaryKeyMixin
from src.models.enums import BackjobStatus, enum_values

if TYPE_CHECKING:
    from src.models.appointment import Appointment
    from src.models.backjob_transition import BackjobTransition

BACKJOB_STATUS_TYPE = SQLAlchemyEnum(
    BackjobStatus, name="backjobstatus", values_callable=enum_values
)


class BackjobApplication(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    __tablename__ = "backjob_applications"

    appointment_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("appointments.id", ondelete="RESTRICT"),
        nullable=False,
    )
    customer_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    provider_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)

    status: Mapped[BackjobStatus] = mapped_column(
        BACKJOB_STATUS_TYPE,
        nullable=False,
        server_default=BackjobStatus.PENDING.value,
    )

    # Customer complaint
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    evidence: Mapped[dict[str, Any] | None] = mapped_column(JSONB)

    # Provider dispute
    provider_dispute_reason: Mapped[str | None] = mapped_column(Text)
    provider_dispute_evidence: Mapped[dict[str, Any] | None] = mapped_column(JSONB)
    disputed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # Resolution
    admin_notes: Mapped[str | None] = mapped_column(Text)
    resolved_by: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True))
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # Relationships
    appointment: Mapped[Appointment] = relationship(
        "Appointment", back_populates="backjobs", lazy="noload"
    )
    transitions: Mapped[list[BackjobTransition]] = relationship(
        "BackjobTransition",
        back_populates="backjob",
        lazy="noload",
        cascade="all, delete-orphan",
        order_by="BackjobTransition.created_at",
    )

    __table_args__ = (
        Index("ix_backjob_applications_appointment_id", "appointment_id"),
        Index("ix_backjob_applications_status", "status"),
        # At most one open (pending/disputed) application per appointment
        Index(
            "uq_backjob_applications_open_per_appointment",
            "appointment_id",
            unique=True,
            postgresql_where=text("status IN ('pending', 'disputed')"),
            sqlite_where=text("status IN ('pending', 'disputed')"),
        ),
    )
