"""Warranty and backjob state machine tables and outbox event types."""

from __future__ import annotations

from src.models.enums import AppointmentStatus, BackjobStatus

# Appointment statuses that count toward a pair's active warranty window
WARRANTY_TRACKED_STATUSES: frozenset[AppointmentStatus] = frozenset({
    AppointmentStatus.IN_WARRANTY,
    AppointmentStatus.BACKJOB,
})

# Statuses from which the provider may mark the job finished
FINISHABLE_STATUSES: frozenset[AppointmentStatus] = frozenset({
    AppointmentStatus.CONFIRMED,
    AppointmentStatus.IN_PROGRESS,
})

# Statuses from which the customer may close the warranty early
CUSTOMER_COMPLETABLE_STATUSES: frozenset[AppointmentStatus] = frozenset({
    AppointmentStatus.FINISHED,
    AppointmentStatus.IN_WARRANTY,
})

# Pre-service statuses that still allow a terminal cancellation
CANCELLABLE_STATUSES: frozenset[AppointmentStatus] = frozenset({
    AppointmentStatus.SCHEDULED,
    AppointmentStatus.CONFIRMED,
    AppointmentStatus.IN_PROGRESS,
})

# Valid backjob transitions: from_status -> [allowed to_statuses]
VALID_BACKJOB_TRANSITIONS: dict[BackjobStatus, list[BackjobStatus]] = {
    BackjobStatus.PENDING: [
        BackjobStatus.DISPUTED,
        BackjobStatus.APPROVED,
        BackjobStatus.CANCELLED_BY_USER,
        BackjobStatus.CANCELLED_BY_ADMIN,
    ],
    BackjobStatus.DISPUTED: [
        BackjobStatus.APPROVED,
        BackjobStatus.CANCELLED_BY_ADMIN,
    ],
}

OPEN_BACKJOB_STATUSES: frozenset[BackjobStatus] = frozenset({
    BackjobStatus.PENDING,
    BackjobStatus.DISPUTED,
})

# Outcomes an admin may pick when resolving
ADMIN_RESOLUTION_OUTCOMES: frozenset[BackjobStatus] = frozenset({
    BackjobStatus.APPROVED,
    BackjobStatus.CANCELLED_BY_ADMIN,
})

# Event type strings for the outbox
EVENT_APPOINTMENT_FINISHED = "appointment.finished"
EVENT_APPOINTMENT_COMPLETED = "appointment.completed"
EVENT_APPOINTMENT_CANCELLED = "appointment.cancelled"
EVENT_WARRANTY_PAUSED = "warranty.paused"
EVENT_WARRANTY_RESUMED = "warranty.resumed"
EVENT_WARRANTY_EXPIRED = "warranty.expired"
EVENT_BACKJOB_FILED = "backjob.filed"
EVENT_BACKJOB_DISPUTED = "backjob.disputed"
EVENT_BACKJOB_RESOLVED = "backjob.resolved"
EVENT_BACKJOB_CANCELLED = "backjob.cancelled"
EVENT_CONVERSATION_CLOSED = "conversation.closed"
EVENT_CONVERSATION_REOPENED = "conversation.reopened"

# Redis key guarding against overlapping sweep runs
SWEEP_LOCK_KEY = "warranty:sweep:lock"

# Deletes the lock only while it still holds our token, in one round trip
RELEASE_LOCK_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""

# Celery task registered for the periodic reconciliation sweep
SWEEP_TASK_NAME = "src.modules.warranty.tasks.reconcile_warranties"
