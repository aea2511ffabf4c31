"""
Domain errors for the time clock.
Routes translate these into HTTP responses; the client flow turns them into states.
"""
from typing import Optional


class ClockError(Exception):
    """Base class for time clock errors."""

    code: str = "clock_error"

    def __init__(self, message: str, *, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code


class JobNotFoundError(ClockError):
    code = "job_not_found"


class ClockConsistencyError(ClockError):
    """Clock action contradicts the worker's current time entry state."""

    code = "inconsistent_state"


class AlreadyClockedInError(ClockConsistencyError):
    code = "already_clocked_in"


class NoOpenTimeEntryError(ClockConsistencyError):
    code = "no_open_time_entry"


class OverrideRejectedError(ClockError):
    """Override submission does not satisfy the business override rules."""

    code = "override_rejected"
    # Set when the rejected submission was still recorded as a blocked attempt
    clock_event_id = None


class LedgerImmutableError(ClockError):
    code = "ledger_immutable"


class GeofenceExpansionError(ClockError):
    code = "invalid_expansion"


class LocationError(ClockError):
    """Device could not produce a location fix (permission_denied, unavailable, timeout)."""

    code = "unavailable"


class BackendUnavailableError(ClockError):
    """Network or server failure while talking to the clock service."""

    code = "backend_unavailable"
