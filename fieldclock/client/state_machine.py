"""
Clock flow state machine.

Pure transition function: given the current state and an event it returns the
next state and, when the flow needs the outside world, a command to execute
(request a location fix, submit a validation). Nothing in here performs I/O,
so every path is testable without a device or a server.

    idle -> locating -> [accuracy_warning] -> validating -> clocked_in
                                                        -> blocked -> override_prompt -> validating
                                                        -> idle ("cannot clock in")
"""
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Optional, Tuple, Union

from ..exceptions import OverrideRejectedError
from ..models.enums import ClockEventStatus, ClockEventType
from ..services.geofence import LocationSample, OverrideRules
from ..services.overrides import OverrideRequest, check_override_request
from ..services.time_rules import ensure_utc, fix_is_stale

OVERRIDE_ERROR_CODES = frozenset({
    "override_rejected",
    "override_not_allowed",
    "reason_required",
    "photo_required",
})


@dataclass(frozen=True)
class ClockResult:
    """Server verdict for one recorded clock attempt."""

    status: ClockEventStatus
    event_type: ClockEventType
    allowed: bool
    within_geofence: bool
    message: str
    clock_event_id: Optional[str] = None
    time_entry_id: Optional[str] = None
    distance_meters: Optional[float] = None
    distance_feet: Optional[int] = None
    geofence_radius_meters: Optional[float] = None
    geofence_expanded: bool = False
    enforcement_mode: Optional[str] = None
    can_override: bool = False
    override_requires_reason: bool = False
    override_requires_photo: bool = False
    no_job_location: bool = False

    @classmethod
    def from_response(cls, data: dict) -> "ClockResult":
        return cls(
            status=ClockEventStatus(data["status"]),
            event_type=ClockEventType(data["event_type"]),
            allowed=bool(data.get("allowed")),
            within_geofence=bool(data.get("within_geofence")),
            message=data.get("message") or "",
            clock_event_id=data.get("clock_event_id"),
            time_entry_id=data.get("time_entry_id"),
            distance_meters=data.get("distance_meters"),
            distance_feet=data.get("distance_feet"),
            geofence_radius_meters=data.get("geofence_radius_meters"),
            geofence_expanded=bool(data.get("geofence_expanded")),
            enforcement_mode=data.get("enforcement_mode"),
            can_override=bool(data.get("can_override")),
            override_requires_reason=bool(data.get("override_requires_reason")),
            override_requires_photo=bool(data.get("override_requires_photo")),
            no_job_location=bool(data.get("no_job_location")),
        )

    @property
    def override_rules(self) -> OverrideRules:
        return OverrideRules(
            allowed=self.can_override,
            requires_reason=self.override_requires_reason,
            requires_photo=self.override_requires_photo,
        )


# States

@dataclass(frozen=True)
class Idle:
    message: Optional[str] = None


@dataclass(frozen=True)
class ClockedIn:
    job_id: str
    time_entry_id: Optional[str] = None
    clock_event_id: Optional[str] = None
    message: Optional[str] = None


@dataclass(frozen=True)
class Attempt:
    """One clock-in or clock-out attempt in flight."""

    event_type: ClockEventType
    job_id: str
    # Where cancel and failures land: Idle for a clock-in, the open shift for a clock-out
    resting: Union[Idle, ClockedIn] = Idle()
    override: Optional[OverrideRequest] = None
    # Prompt to return to if the server rejects the submitted override
    prompt: Optional["OverridePrompt"] = None


@dataclass(frozen=True)
class Locating:
    attempt: Attempt


@dataclass(frozen=True)
class AccuracyWarning:
    attempt: Attempt
    location: LocationSample
    threshold_meters: float


@dataclass(frozen=True)
class Validating:
    attempt: Attempt
    location: LocationSample


@dataclass(frozen=True)
class Blocked:
    attempt: Attempt
    location: LocationSample
    result: ClockResult


@dataclass(frozen=True)
class OverridePrompt:
    attempt: Attempt
    location: LocationSample
    result: ClockResult
    error: Optional[str] = None


ClockState = Union[Idle, ClockedIn, Locating, AccuracyWarning, Validating, Blocked, OverridePrompt]


# Events

@dataclass(frozen=True)
class StartClockIn:
    job_id: str


@dataclass(frozen=True)
class StartClockOut:
    pass


@dataclass(frozen=True)
class ResumeShift:
    """Restore an open shift reported by the server (app restart)."""

    job_id: str
    time_entry_id: Optional[str] = None


@dataclass(frozen=True)
class LocationAcquired:
    location: LocationSample


@dataclass(frozen=True)
class LocationFailed:
    code: str  # permission_denied|unavailable|timeout
    message: Optional[str] = None


@dataclass(frozen=True)
class Retry:
    pass


@dataclass(frozen=True)
class Cancel:
    pass


@dataclass(frozen=True)
class ProceedAnyway:
    pass


@dataclass(frozen=True)
class ValidationResult:
    result: ClockResult


@dataclass(frozen=True)
class ValidationRejected:
    """The server refused the attempt (consistency error, override rejected, stale fix)."""

    code: str
    message: str
    clock_event_id: Optional[str] = None


@dataclass(frozen=True)
class ValidationFailed:
    """Network or server failure; nothing was recorded."""

    message: Optional[str] = None


@dataclass(frozen=True)
class BeginOverride:
    pass


@dataclass(frozen=True)
class OverrideSubmitted:
    reason: Optional[str] = None
    photo_url: Optional[str] = None


FlowEvent = Union[
    StartClockIn, StartClockOut, ResumeShift, LocationAcquired, LocationFailed, Retry, Cancel,
    ProceedAnyway, ValidationResult, ValidationRejected, ValidationFailed, BeginOverride, OverrideSubmitted,
]


# Commands

@dataclass(frozen=True)
class RequestLocation:
    pass


@dataclass(frozen=True)
class SubmitValidation:
    job_id: str
    event_type: ClockEventType
    location: LocationSample
    override: Optional[OverrideRequest] = None


Command = Union[RequestLocation, SubmitValidation]

Transition = Tuple[ClockState, Optional[Command]]


def _action(event_type: ClockEventType) -> str:
    return "clock in" if event_type == ClockEventType.clock_in else "clock out"


def _rest(attempt: Attempt, message: Optional[str]) -> ClockState:
    return replace(attempt.resting, message=message)


def _is_stale(location: LocationSample, now: datetime, max_fix_age: Optional[float]) -> bool:
    if max_fix_age is None:
        return False
    return fix_is_stale(location.captured_at, now, max_fix_age)


def _validate(attempt: Attempt, location: LocationSample) -> Transition:
    return Validating(attempt=attempt, location=location), SubmitValidation(
        job_id=attempt.job_id,
        event_type=attempt.event_type,
        location=location,
        override=attempt.override,
    )


def _start(state: ClockState, event) -> Transition:
    if isinstance(event, StartClockIn):
        if isinstance(state, ClockedIn):
            # One open shift per device, whatever the job
            return replace(state, message="You are already clocked in, clock out first"), None
        attempt = Attempt(event_type=ClockEventType.clock_in, job_id=str(event.job_id))
        return Locating(attempt), RequestLocation()

    if isinstance(event, StartClockOut):
        if not isinstance(state, ClockedIn):
            return Idle(message="You are not clocked in"), None
        # Clock-out always takes a fresh fix; the clock-in position is never reused
        resting = replace(state, message=None)
        attempt = Attempt(event_type=ClockEventType.clock_out, job_id=state.job_id, resting=resting)
        return Locating(attempt), RequestLocation()

    if isinstance(event, ResumeShift):
        if isinstance(state, Idle):
            return ClockedIn(job_id=str(event.job_id), time_entry_id=event.time_entry_id), None
        return state, None

    return state, None


def _on_locating(state: Locating, event, now, accuracy_threshold, max_fix_age) -> Transition:
    attempt = state.attempt
    if isinstance(event, Cancel):
        return _rest(attempt, None), None
    if isinstance(event, LocationFailed):
        if event.code == "permission_denied":
            message = "Location permission is required to " + _action(attempt.event_type)
        else:
            message = event.message or "Could not get your location, please try again"
        return _rest(attempt, message), None
    if isinstance(event, LocationAcquired):
        location = event.location
        if _is_stale(location, now, max_fix_age):
            return _rest(attempt, "Location fix is too old, please try again"), None
        accuracy = location.accuracy_meters
        if accuracy is not None and accuracy_threshold is not None and accuracy > accuracy_threshold:
            return AccuracyWarning(attempt=attempt, location=location, threshold_meters=accuracy_threshold), None
        return _validate(attempt, location)
    return state, None


def _on_accuracy_warning(state: AccuracyWarning, event, now, max_fix_age) -> Transition:
    if isinstance(event, Retry):
        return Locating(state.attempt), RequestLocation()
    if isinstance(event, Cancel):
        return _rest(state.attempt, None), None
    if isinstance(event, ProceedAnyway):
        if _is_stale(state.location, now, max_fix_age):
            return Locating(state.attempt), RequestLocation()
        # The low-accuracy fix is submitted exactly as reported
        return _validate(state.attempt, state.location)
    return state, None


def _on_validating(state: Validating, event) -> Transition:
    attempt = state.attempt

    if isinstance(event, ValidationResult):
        result = event.result
        if result.status == ClockEventStatus.blocked:
            if result.can_override:
                return Blocked(attempt=replace(attempt, override=None), location=state.location, result=result), None
            return _rest(attempt, f"Cannot {_action(attempt.event_type)}: {result.message}"), None
        if attempt.event_type == ClockEventType.clock_in:
            return ClockedIn(
                job_id=attempt.job_id,
                time_entry_id=result.time_entry_id,
                clock_event_id=result.clock_event_id,
                message=result.message,
            ), None
        return Idle(message=result.message), None

    if isinstance(event, ValidationRejected):
        if event.code == "stale_location":
            return Locating(attempt), RequestLocation()
        if event.code in OVERRIDE_ERROR_CODES and isinstance(attempt.prompt, OverridePrompt):
            prompt = attempt.prompt
            # The rejected submission was itself recorded as a new blocked row
            result = replace(prompt.result, clock_event_id=event.clock_event_id or prompt.result.clock_event_id)
            return replace(prompt, result=result, error=event.message), None
        if event.code == "already_clocked_in" and attempt.event_type == ClockEventType.clock_in:
            return ClockedIn(job_id=attempt.job_id, message=event.message), None
        if event.code == "no_open_time_entry":
            return Idle(message=event.message), None
        return _rest(attempt, event.message), None

    if isinstance(event, ValidationFailed):
        return _rest(attempt, event.message or f"Cannot {_action(attempt.event_type)} right now, please try again"), None

    return state, None


def _on_blocked(state: Blocked, event) -> Transition:
    if isinstance(event, BeginOverride):
        return OverridePrompt(attempt=state.attempt, location=state.location, result=state.result), None
    if isinstance(event, Cancel):
        return _rest(state.attempt, None), None
    return state, None


def _on_override_prompt(state: OverridePrompt, event, now, max_fix_age) -> Transition:
    if isinstance(event, Cancel):
        return _rest(state.attempt, None), None
    if not isinstance(event, OverrideSubmitted):
        return state, None

    try:
        checked = check_override_request(state.result.override_rules, event.reason, event.photo_url)
    except OverrideRejectedError as e:
        return replace(state, error=e.message), None

    override = OverrideRequest(
        reason=checked.reason,
        photo_url=checked.photo_url,
        blocked_event_id=state.result.clock_event_id,
    )
    attempt = replace(state.attempt, override=override, prompt=replace(state, error=None))
    if _is_stale(state.location, now, max_fix_age):
        # The justification is kept; only the position is re-acquired
        return Locating(attempt), RequestLocation()
    return _validate(attempt, state.location)


def transition(
    state: ClockState,
    event,
    *,
    now: datetime,
    accuracy_threshold: Optional[float] = None,
    max_fix_age: Optional[float] = None,
) -> Transition:
    """
    Advance the flow by one event.

    Args:
        state: Current state
        event: What just happened
        now: Current instant, used to judge fix freshness
        accuracy_threshold: Accuracy (meters) above which the user is warned before validating
        max_fix_age: Seconds after which a fix must be re-acquired before submission

    Returns:
        Tuple of (next_state, command or None)
    """
    now = ensure_utc(now)

    if isinstance(event, (StartClockIn, StartClockOut, ResumeShift)):
        if isinstance(state, (Idle, ClockedIn)):
            return _start(state, event)
        return state, None

    if isinstance(state, Locating):
        return _on_locating(state, event, now, accuracy_threshold, max_fix_age)
    if isinstance(state, AccuracyWarning):
        return _on_accuracy_warning(state, event, now, max_fix_age)
    if isinstance(state, Validating):
        # Once submitted the attempt is on the ledger; cancel cannot undo it
        return _on_validating(state, event)
    if isinstance(state, Blocked):
        return _on_blocked(state, event)
    if isinstance(state, OverridePrompt):
        return _on_override_prompt(state, event, now, max_fix_age)
    return state, None
