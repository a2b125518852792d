"""Conversation model — per customer/provider pair warranty window.

Derived from the pair's appointments by the conversation synchronizer; never
the source of truth for warranty state.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import DateTime, Index, UniqueConstraint
from sqlalchemy import Enum as SQLAlchemyEnum
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from src.database.base import Base, TimestampMixin, UUIDPrimaryKeyMixin
from src.models.enums import ConversationStatus, enum_values


class Conversation(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    __tablename__ = "conversations"

    customer_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    provider_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)

    status: Mapped[ConversationStatus] = mapped_column(
        SQLAlchemyEnum(
            ConversationStatus,
            name="conversationstatus",
            values_callable=enum_values,
        ),
        nullable=False,
        server_default=ConversationStatus.CLOSED.value,
    )
    warranty_expires: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        UniqueConstraint("customer_id", "provider_id", name="uq_conversations_pair"),
        Index("ix_conversations_status", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<Conversation id={self.id} pair={self.customer_id}/{self.provider_id} "
            f"status={self.status} warranty_expires={self.warranty_expires}>"
        )
