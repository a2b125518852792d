"""Appointment model — authoritative service and warranty state."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import CheckConstraint, DateTime, Index, Integer, Text, text
from sqlalchemy import Enum as SQLAlchemyEnum
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.database.base import Base, TimestampMixin, UUIDPrimaryKeyMixin
from src.models.enums import AppointmentStatus, enum_values

if TYPE_CHECKING:
    from src.models.backjob_application import BackjobApplication


class Appointment(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    __tablename__ = "appointments"

    # Parties (owned by the identity service, no FK in this schema)
    customer_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    provider_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)

    status: Mapped[AppointmentStatus] = mapped_column(
        SQLAlchemyEnum(
            AppointmentStatus,
            name="appointmentstatus",
            values_callable=enum_values,
        ),
        nullable=False,
        server_default=AppointmentStatus.SCHEDULED.value,
    )
    scheduled_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # Warranty
    warranty_days: Mapped[int | None] = mapped_column(Integer)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    warranty_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    warranty_paused_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    warranty_remaining_days: Mapped[int | None] = mapped_column(Integer)

    # Closure
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancellation_reason: Mapped[str | None] = mapped_column(Text)

    # Relationships
    backjobs: Mapped[list[BackjobApplication]] = relationship(
        "BackjobApplication", back_populates="appointment", lazy="noload"
    )

    __table_args__ = (
        CheckConstraint(
            "warranty_days IS NULL OR warranty_days >= 0",
            name="ck_appointments_warranty_days_non_negative",
        ),
        Index("ix_appointments_pair", "customer_id", "provider_id"),
        Index("ix_appointments_status", "status"),
        Index(
            "ix_appointments_warranty_tracked",
            "warranty_expires_at",
            postgresql_where=text("status IN ('in-warranty', 'backjob')"),
        ),
    )

    @property
    def is_paused(self) -> bool:
        return self.warranty_paused_at is not None

    def __repr__(self) -> str:
        return f"<Appointment id={self.id} status={self.status}>"
