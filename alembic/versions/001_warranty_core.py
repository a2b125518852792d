"""Warranty core - appointments, backjob applications, conversations, outbox

Revision ID: 001
Revises: None
Create Date: 2026-10-18

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import ENUM, JSONB, UUID

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

# --- Enum types ---
appointment_status_enum = ENUM(
    "scheduled", "confirmed", "in-progress", "finished", "in-warranty",
    "backjob", "completed", "cancelled", "no-show",
    name="appointmentstatus", create_type=False,
)
backjob_status_enum = ENUM(
    "pending", "approved", "disputed", "cancelled-by-admin", "cancelled-by-user",
    name="backjobstatus", create_type=False,
)
conversation_status_enum = ENUM(
    "active", "closed", name="conversationstatus", create_type=False
)
actor_role_enum = ENUM(
    "customer", "provider", "admin", "system", name="actorrole", create_type=False
)
event_status_enum = ENUM(
    "PENDING", "PROCESSING", "COMPLETED", "FAILED", name="eventstatus", create_type=False
)

ALL_ENUMS = (
    appointment_status_enum,
    backjob_status_enum,
    conversation_status_enum,
    actor_role_enum,
    event_status_enum,
)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    ]


def upgrade() -> None:
    op.execute('CREATE EXTENSION IF NOT EXISTS "pgcrypto";')

    # Create enum types first
    for enum_type in ALL_ENUMS:
        enum_type.create(op.get_bind(), checkfirst=True)

    # 1. appointments
    op.create_table(
        "appointments",
        sa.Column("id", UUID(as_uuid=True), server_default=sa.text("gen_random_uuid()"), primary_key=True),
        sa.Column("customer_id", UUID(as_uuid=True), nullable=False),
        sa.Column("provider_id", UUID(as_uuid=True), nullable=False),
        sa.Column("status", appointment_status_enum, server_default="scheduled", nullable=False),
        sa.Column("scheduled_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("warranty_days", sa.Integer, nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("warranty_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("warranty_paused_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("warranty_remaining_days", sa.Integer, nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancellation_reason", sa.Text, nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "warranty_days IS NULL OR warranty_days >= 0",
            name="ck_appointments_warranty_days_non_negative",
        ),
    )
    op.create_index("ix_appointments_pair", "appointments", ["customer_id", "provider_id"])
    op.create_index("ix_appointments_status", "appointments", ["status"])
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_appointments_warranty_tracked
          ON appointments (warranty_expires_at)
          WHERE status IN ('in-warranty', 'backjob');
    """)

    # 2. backjob_applications
    op.create_table(
        "backjob_applications",
        sa.Column("id", UUID(as_uuid=True), server_default=sa.text("gen_random_uuid()"), primary_key=True),
        sa.Column("appointment_id", UUID(as_uuid=True), sa.ForeignKey("appointments.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("customer_id", UUID(as_uuid=True), nullable=False),
        sa.Column("provider_id", UUID(as_uuid=True), nullable=False),
        sa.Column("status", backjob_status_enum, server_default="pending", nullable=False),
        sa.Column("reason", sa.Text, nullable=False),
        sa.Column("evidence", JSONB, nullable=True),
        sa.Column("provider_dispute_reason", sa.Text, nullable=True),
        sa.Column("provider_dispute_evidence", JSONB, nullable=True),
        sa.Column("disputed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("admin_notes", sa.Text, nullable=True),
        sa.Column("resolved_by", UUID(as_uuid=True), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_backjob_applications_appointment_id", "backjob_applications", ["appointment_id"])
    op.create_index("ix_backjob_applications_status", "backjob_applications", ["status"])
    # At most one open application per appointment
    op.execute("""
        CREATE UNIQUE INDEX IF NOT EXISTS uq_backjob_applications_open_per_appointment
          ON backjob_applications (appointment_id)
          WHERE status IN ('pending', 'disputed');
    """)

    # 3. backjob_transitions
    op.create_table(
        "backjob_transitions",
        sa.Column("id", UUID(as_uuid=True), server_default=sa.text("gen_random_uuid()"), primary_key=True),
        sa.Column("backjob_id", UUID(as_uuid=True), sa.ForeignKey("backjob_applications.id", ondelete="CASCADE"), nullable=False),
        sa.Column("from_status", backjob_status_enum, nullable=True),
        sa.Column("to_status", backjob_status_enum, nullable=False),
        sa.Column("transitioned_by", UUID(as_uuid=True), nullable=True),
        sa.Column("actor_role", actor_role_enum, nullable=False),
        sa.Column("reason", sa.Text, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    )
    op.create_index("ix_backjob_transitions_backjob_id", "backjob_transitions", ["backjob_id"])

    # 4. conversations
    op.create_table(
        "conversations",
        sa.Column("id", UUID(as_uuid=True), server_default=sa.text("gen_random_uuid()"), primary_key=True),
        sa.Column("customer_id", UUID(as_uuid=True), nullable=False),
        sa.Column("provider_id", UUID(as_uuid=True), nullable=False),
        sa.Column("status", conversation_status_enum, server_default="closed", nullable=False),
        sa.Column("warranty_expires", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("customer_id", "provider_id", name="uq_conversations_pair"),
    )
    op.create_index("ix_conversations_status", "conversations", ["status"])

    # 5. event_outbox
    op.create_table(
        "event_outbox",
        sa.Column("id", UUID(as_uuid=True), server_default=sa.text("gen_random_uuid()"), primary_key=True),
        sa.Column("event_type", sa.String(255), nullable=False),
        sa.Column("aggregate_type", sa.String(255), nullable=False),
        sa.Column("aggregate_id", sa.String(255), nullable=False),
        sa.Column("payload", JSONB, nullable=False),
        sa.Column("status", event_status_enum, server_default="PENDING", nullable=False),
        sa.Column("retry_count", sa.Integer, server_default="0", nullable=False),
        sa.Column("last_error", sa.Text, nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("schema_version", sa.Integer, server_default="1", nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_event_outbox_status", "event_outbox", ["status"])
    op.create_index("ix_event_outbox_aggregate", "event_outbox", ["aggregate_type", "aggregate_id"])


def downgrade() -> None:
    op.drop_table("event_outbox")
    op.drop_table("conversations")
    op.drop_table("backjob_transitions")
    op.drop_table("backjob_applications")
    op.drop_table("appointments")

    for enum_type in reversed(ALL_ENUMS):
        enum_type.drop(op.get_bind(), checkfirst=True)
