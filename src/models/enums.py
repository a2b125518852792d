import enum


class AppointmentStatus(str, enum.Enum):
    SCHEDULED = "scheduled"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in-progress"
    FINISHED = "finished"
    IN_WARRANTY = "in-warranty"
    BACKJOB = "backjob"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no-show"


class BackjobStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DISPUTED = "disputed"
    CANCELLED_BY_ADMIN = "cancelled-by-admin"
    CANCELLED_BY_USER = "cancelled-by-user"


class ConversationStatus(str, enum.Enum):
    ACTIVE = "active"
    CLOSED = "closed"


class ActorRole(str, enum.Enum):
    CUSTOMER = "customer"
    PROVIDER = "provider"
    ADMIN = "admin"
    SYSTEM = "system"


class EventStatus(str, enum.Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


def enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    """Persist enum *values* (``in-warranty``) rather than member names."""
    return [member.value for member in enum_cls]
