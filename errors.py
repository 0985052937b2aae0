"""Error taxonomy of the attendance protocol.

Every error is terminal for the call that raised it: the core never retries
and never leaves a partial write behind.
"""
from typing import Optional


class AttendanceError(Exception):
    code = "attendance_error"
    status_code = 400

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class InvalidInput(AttendanceError):
    code = "invalid_input"
    status_code = 400


class SessionNotFound(AttendanceError):
    code = "session_not_found"
    status_code = 404


class SessionClosed(AttendanceError):
    code = "session_closed"
    status_code = 409


class NotEligible(AttendanceError):
    code = "not_eligible"
    status_code = 409


class AlreadyFinalized(AttendanceError):
    """Automated mutation attempted against a teacher-overridden entry.

    A rejected location ping still carries its measurement so the caller
    learns how far away it was.
    """

    code = "already_finalized"
    status_code = 409

    def __init__(self, detail: str, status: str, distance_meters: Optional[float] = None,
                 allowed: Optional[bool] = None):
        super().__init__(detail)
        self.status = status
        self.distance_meters = distance_meters
        self.allowed = allowed


class Unauthorized(AttendanceError):
    code = "unauthorized"
    status_code = 403
