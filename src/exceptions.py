"""Domain exception hierarchy for structured error responses."""

from __future__ import annotations


class AppException(Exception):
    """Base exception for all domain errors.

    Subclasses set ``code`` and ``status_code`` at the class level; callers
    provide ``message`` and an optional ``details`` list.
    """

    code: str = "APP_ERROR"
    status_code: int = 500

    def __init__(self, message: str, details: list[dict] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or []


class NotFoundException(AppException):
    code = "NOT_FOUND"
    status_code = 404


class ForbiddenException(AppException):
    code = "FORBIDDEN"
    status_code = 403


class UnauthorizedException(AppException):
    code = "UNAUTHORIZED"
    status_code = 401


class BusinessRuleException(AppException):
    code = "BUSINESS_RULE_VIOLATION"
    status_code = 422


# ---------------------------------------------------------------------------
# Warranty / backjob lifecycle
# ---------------------------------------------------------------------------


class InvalidTransitionException(AppException):
    """A mutation was attempted from a status that does not allow it."""

    code = "INVALID_TRANSITION"
    status_code = 409


class AlreadyPausedException(InvalidTransitionException):
    code = "WARRANTY_ALREADY_PAUSED"


class DuplicateBackjobException(BusinessRuleException):
    code = "DUPLICATE_BACKJOB"
    status_code = 409


class WarrantyExpiredException(BusinessRuleException):
    code = "WARRANTY_EXPIRED"


class ConcurrentModificationException(AppException):
    """A conditional update matched no row: the record changed underneath us.

    Callers re-read the record and retry instead of re-applying blindly.
    """

    code = "CONCURRENT_MODIFICATION"
    status_code = 409


class DataIntegrityDefect(AppException):
    """Stored state that cannot be repaired without an operator decision.

    Never rendered to end users; the reconciliation sweep collects these into
    its report.
    """

    code = "DATA_INTEGRITY_DEFECT"
    status_code = 500

    def __init__(self, message: str, appointment_id: str | None = None) -> None:
        super().__init__(message, details=[{"appointment_id": appointment_id}])
        self.appointment_id = appointment_id
