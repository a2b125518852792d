"""BackjobTransition model — status change audit log for backjob applications."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import DateTime, ForeignKey, Index, Text, func
from sqlalchemy import Enum as SQLAlchemyEnum
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.database.base import Base, UUIDPrimaryKeyMixin, utcnow
from src.models.backjob_application import BACKJOB_STATUS_TYPE
from src.models.enums import ActorRole, BackjobStatus, enum_values

if TYPE_CHECKING:
    from src.models.backjob_application import BackjobApplication


class BackjobTransition(UUIDPrimaryKeyMixin, Base):
    __tablename__ = "backjob_transitions"

    backjob_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("backjob_applications.id", ondelete="CASCADE"),
        nullable=False,
    )
    # NULL for the creation row
    from_status: Mapped[BackjobStatus | None] = mapped_column(BACKJOB_STATUS_TYPE)
    to_status: Mapped[BackjobStatus] = mapped_column(BACKJOB_STATUS_TYPE, nullable=False)
    transitioned_by: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True))
    actor_role: Mapped[ActorRole] = mapped_column(
        SQLAlchemyEnum(ActorRole, name="actorrole", values_callable=enum_values),
        nullable=False,
    )
    reason: Mapped[str | None] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )

    # Relationships
    backjob: Mapped[BackjobApplication] = relationship(
        "BackjobApplication", back_populates="transitions", lazy="noload"
    )

    __table_args__ = (
        Index("ix_backjob_transitions_backjob_id", "backjob_id"),
    )
