"""
Domain exceptions

Services raise these; routers translate them into HTTPException responses and
the scheduler records them per user without aborting the tick.
"""

from __future__ import annotations


class DuesyncError(Exception):
    """Base class for all domain errors."""

    code = "error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.code)
        self.message = message or self.code


class RuleValidationError(DuesyncError, ValueError):
    """Invalid frequency parameters, dates or reminder offsets."""

    code = "invalid_rule"


class RuleNotFound(DuesyncError):
    code = "rule_not_found"


class InstanceNotFound(DuesyncError):
    code = "instance_not_found"


class InvalidTransition(DuesyncError):
    code = "invalid_transition"


class InstanceConflict(DuesyncError):
    code = "instance_conflict"


class CommitmentNotFound(DuesyncError):
    code = "commitment_not_found"


class ReconnectRequired(DuesyncError):
    """The calendar connection is revoked; the user has to connect again."""

    code = "reconnect_required"


class CalendarError(DuesyncError):
    code = "calendar_error"


class CalendarAuthRevoked(CalendarError):
    """Provider rejected the credentials (401 or a terminal refresh error)."""

    code = "calendar_auth_revoked"


class CalendarEventNotFound(CalendarError):
    code = "calendar_event_not_found"


class CalendarTransientError(CalendarError):
    """Timeout, 5xx, throttling or any other failure worth retrying next tick."""

    code = "calendar_transient"

    def __init__(self, message: str | None = None, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
