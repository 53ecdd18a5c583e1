"""
Scheduling error taxonomy.

Services raise these; the app renders them as {"detail": ...} with the
carried status code.
"""
from typing import Optional


class SchedulingError(Exception):
    status_code: int = 400

    def __init__(self, detail: str, status_code: Optional[int] = None):
        super().__init__(detail)
        self.detail = detail
        if status_code is not None:
            self.status_code = status_code


class PolicyViolation(SchedulingError):
    """Range or business-rule violation, rejected before any write."""
    status_code = 400


class Forbidden(SchedulingError):
    status_code = 403


class NotFound(SchedulingError):
    status_code = 404


class Conflict(SchedulingError):
    """Request is incompatible with the record's current state."""
    status_code = 409


class PersistenceError(SchedulingError):
    """A write to the store failed; the session was rolled back."""
    status_code = 503
