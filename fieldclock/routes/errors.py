from fastapi import HTTPException

from ..exceptions import (
    BackendUnavailableError,
    ClockConsistencyError,
    ClockError,
    JobNotFoundError,
    LedgerImmutableError,
    OverrideRejectedError,
)

CONFLICT_CODES = {"not_an_override", "already_approved", "already_acknowledged"}


def status_for(error: ClockError) -> int:
    if isinstance(error, JobNotFoundError) or error.code.endswith("_not_found"):
        return 404
    if isinstance(error, BackendUnavailableError):
        return 503
    if isinstance(error, (ClockConsistencyError, LedgerImmutableError)) or error.code in CONFLICT_CODES:
        return 409
    if error.code == "stale_location":
        return 422
    if isinstance(error, OverrideRejectedError) and error.code == "override_not_allowed":
        return 403
    return 400


def clock_http_error(error: ClockError) -> HTTPException:
    """HTTPException carrying the domain error code, for clients that branch on it."""
    detail = {"code": error.code, "message": error.message}
    clock_event_id = getattr(error, "clock_event_id", None)
    if clock_event_id is not None:
        detail["clock_event_id"] = str(clock_event_id)
    return HTTPException(status_code=status_for(error), detail=detail)
