"""
Error taxonomy for roster status changes.

Validation errors are raised before any store access so the caller can
retry with corrected input. Store errors come from the persistence layer;
whether they are recoverable depends on which write path raised them.
"""


class RosterError(Exception):
    """Base exception for roster operations."""


class ValidationError(RosterError):
    """Raised when a requested status change violates a roster rule."""


class PickupPersonRequired(ValidationError):
    """Raised when checking a student out without naming who picked them up."""

    def __init__(self, student_id: str = None):
        self.student_id = student_id
        message = "A pickup person is required to check a student out"
        if student_id:
            message = f"{message} (student {student_id})"
        super().__init__(message)


class InvalidTransition(ValidationError):
    """Raised when the requested status cannot be reached from the current one."""

    def __init__(self, current, requested, reason: str):
        self.current = current
        self.requested = requested
        self.reason = reason
        super().__init__(f"Cannot move from {current} to {requested}: {reason}")


class SkipNotEligible(ValidationError):
    """Raised when skipping a student who is inactive or not on a bus route."""


class UnknownStudent(ValidationError):
    """Raised when a status change names a student the store does not have."""

    def __init__(self, student_id: str):
        self.student_id = student_id
        super().__init__(f"Unknown student {student_id}")


class StoreError(RosterError):
    """Raised by the roster store when a read or write fails."""


class TerminalPersistenceError(RosterError):
    """Raised when both the authoritative write and the fallback upsert failed."""

    def __init__(self, student_id: str, status, message: str = None):
        self.student_id = student_id
        self.status = status
        super().__init__(message or f"Could not persist status {status} for student {student_id}")


PersistenceFailure = TerminalPersistenceError
