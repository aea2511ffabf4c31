"""
Drives the clock state machine against a location provider and a backend.
"""
from datetime import datetime
from typing import Callable, Optional, Protocol

import structlog

from ..config import settings
from ..exceptions import BackendUnavailableError, ClockError, LocationError
from ..services.geofence import LocationSample
from ..services.time_rules import utc_now
from .state_machine import (
    BeginOverride,
    Cancel,
    ClockResult,
    ClockState,
    Idle,
    LocationAcquired,
    LocationFailed,
    Locating,
    OverrideSubmitted,
    ProceedAnyway,
    RequestLocation,
    ResumeShift,
    Retry,
    StartClockIn,
    StartClockOut,
    SubmitValidation,
    ValidationFailed,
    ValidationRejected,
    ValidationResult,
    transition,
)

logger = structlog.get_logger(__name__)

# Commands executed per user action before the session gives control back
MAX_COMMANDS_PER_ACTION = 5


class LocationProvider(Protocol):
    def get_location(self) -> LocationSample:
        """Return a fix or raise LocationError (permission_denied, unavailable, timeout)."""


class ClockBackend(Protocol):
    def submit(self, command: SubmitValidation) -> ClockResult:
        ...

    def open_shift(self) -> Optional[dict]:
        ...

    def accuracy_threshold(self) -> float:
        """Accuracy warning threshold in meters configured for the worker's business."""


class ClockSession:
    def __init__(
        self,
        backend: ClockBackend,
        location_provider: LocationProvider,
        accuracy_threshold: Optional[float] = None,
        max_fix_age: Optional[float] = None,
        clock: Callable[[], datetime] = utc_now,
        state: Optional[ClockState] = None,
    ):
        self.backend = backend
        self.location_provider = location_provider
        self._accuracy_threshold = accuracy_threshold
        self.max_fix_age = max_fix_age if max_fix_age is not None else settings.location_fix_max_age_s
        self.clock = clock
        self.state: ClockState = state or Idle()
        self.last_result: Optional[ClockResult] = None

    @property
    def accuracy_threshold(self) -> float:
        """Explicit threshold, else the business setting fetched once from the backend."""
        if self._accuracy_threshold is None:
            try:
                self._accuracy_threshold = float(self.backend.accuracy_threshold())
            except ClockError as e:
                logger.warning("accuracy_threshold_unavailable", code=e.code, fallback_m=settings.gps_accuracy_warning_m)
                return float(settings.gps_accuracy_warning_m)
        return self._accuracy_threshold

    def dispatch(self, event) -> ClockState:
        """Apply one event, then run commands until the flow waits on the user."""
        for _ in range(MAX_COMMANDS_PER_ACTION):
            previous = type(self.state).__name__
            self.state, command = transition(
                self.state,
                event,
                now=self.clock(),
                accuracy_threshold=self.accuracy_threshold,
                max_fix_age=self.max_fix_age,
            )
            logger.debug("clock_flow_transition", from_state=previous, to_state=type(self.state).__name__,
                         flow_event=type(event).__name__)
            if command is None:
                return self.state
            event = self._execute(command)
        logger.warning("clock_flow_command_limit", state=type(self.state).__name__)
        message = "Could not get a usable location, please try again"
        stop = LocationFailed(code="unavailable", message=message) if isinstance(self.state, Locating) \
            else ValidationFailed(message)
        self.state, _ = transition(self.state, stop, now=self.clock())
        return self.state

    def _execute(self, command):
        if isinstance(command, RequestLocation):
            try:
                return LocationAcquired(self.location_provider.get_location())
            except LocationError as e:
                logger.info("location_unavailable", code=e.code)
                return LocationFailed(code=e.code, message=e.message)

        if isinstance(command, SubmitValidation):
            try:
                result = self.backend.submit(command)
            except BackendUnavailableError as e:
                return ValidationFailed(e.message)
            except ClockError as e:
                clock_event_id = getattr(e, "clock_event_id", None)
                return ValidationRejected(
                    code=e.code,
                    message=e.message,
                    clock_event_id=str(clock_event_id) if clock_event_id else None,
                )
            self.last_result = result
            return ValidationResult(result)

        raise ValueError(f"Unknown command: {command!r}")

    def resume(self) -> ClockState:
        shift = self.backend.open_shift()
        if shift:
            return self.dispatch(ResumeShift(job_id=shift["job_id"], time_entry_id=shift.get("time_entry_id")))
        return self.state

    def clock_in(self, job_id) -> ClockState:
        return self.dispatch(StartClockIn(job_id=str(job_id)))

    def clock_out(self) -> ClockState:
        return self.dispatch(StartClockOut())

    def retry(self) -> ClockState:
        return self.dispatch(Retry())

    def proceed_anyway(self) -> ClockState:
        return self.dispatch(ProceedAnyway())

    def cancel(self) -> ClockState:
        return self.dispatch(Cancel())

    def begin_override(self) -> ClockState:
        return self.dispatch(BeginOverride())

    def submit_override(self, reason: Optional[str] = None, photo_url: Optional[str] = None) -> ClockState:
        return self.dispatch(OverrideSubmitted(reason=reason, photo_url=photo_url))
