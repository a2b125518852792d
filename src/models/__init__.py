# Import all models so SQLAlchemy metadata is populated for Alembic autogenerate
from src.models.appointment import Appointment
from src.models.backjob_application import BackjobApplication
from src.models.backjob_transition import BackjobTransition
from src.models.conversation import Conversation
from src.models.enums import (
    ActorRole,
    AppointmentStatus,
    BackjobStatus,
    ConversationStatus,
    EventStatus,
)
from src.models.event_outbox import EventOutbox

__all__ = [
    "ActorRole",
    "Appointment",
    "AppointmentStatus",
    "BackjobApplication",
    "BackjobStatus",
    "BackjobTransition",
    "Conversation",
    "ConversationStatus",
    "EventOutbox",
    "EventStatus",
]
