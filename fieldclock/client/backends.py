"""
Clock backends
Where a ClockSession sends its validation commands: in-process against the
database, or over HTTP against the API.
"""
import uuid
from typing import Any, Callable, Dict, Optional

import httpx
import structlog
from sqlalchemy.orm import Session

from ..config import settings
from ..exceptions import BackendUnavailableError, ClockError, OverrideRejectedError
from ..models.models import Business, User
from ..services.enforcement import resolve_accuracy_threshold
from ..services.overrides import OverrideRequest
from ..services.time_clock import ClockRequest, record_clock_attempt
from ..services.time_entries import TimeEntryAccumulator
from .state_machine import ClockResult, SubmitValidation

logger = structlog.get_logger(__name__)


def _location_payload(command: SubmitValidation) -> Dict[str, Any]:
    location = command.location
    return {
        "latitude": location.latitude,
        "longitude": location.longitude,
        "accuracy_meters": location.accuracy_meters,
        "captured_at": location.captured_at.isoformat() if location.captured_at else None,
        "source": location.source,
    }


def _as_override(override: Optional[OverrideRequest]) -> Optional[OverrideRequest]:
    if override is None or override.blocked_event_id is None:
        return override
    return OverrideRequest(
        reason=override.reason,
        photo_url=override.photo_url,
        blocked_event_id=uuid.UUID(str(override.blocked_event_id)),
    )


class LocalClockBackend:
    """Runs clock attempts in-process with a fresh session per call."""

    def __init__(self, session_factory: Callable[[], Session], user_id: uuid.UUID):
        self.session_factory = session_factory
        self.user_id = user_id

    def _load(self, db: Session):
        user = db.query(User).filter(User.id == self.user_id).first()
        if user is None:
            raise ClockError("User not found", code="user_not_found")
        business = db.query(Business).filter(Business.id == user.business_id).first()
        if business is None:
            raise ClockError("User not associated with a business", code="business_not_found")
        return user, business

    def submit(self, command: SubmitValidation) -> ClockResult:
        db = self.session_factory()
        try:
            user, business = self._load(db)
            outcome = record_clock_attempt(
                db,
                business=business,
                user=user,
                request=ClockRequest(
                    job_id=uuid.UUID(str(command.job_id)),
                    event_type=command.event_type,
                    location=command.location,
                    override=_as_override(command.override),
                ),
            )
            return ClockResult.from_response(outcome.to_response())
        finally:
            db.close()

    def open_shift(self) -> Optional[Dict[str, Optional[str]]]:
        db = self.session_factory()
        try:
            entries = TimeEntryAccumulator(db).open_entries_for_user(self.user_id)
            if not entries:
                return None
            return {"job_id": str(entries[0].job_id), "time_entry_id": str(entries[0].id)}
        finally:
            db.close()

    def accuracy_threshold(self) -> float:
        db = self.session_factory()
        try:
            _, business = self._load(db)
            return resolve_accuracy_threshold(business)
        finally:
            db.close()


class HttpClockBackend:
    """Client for the clock API, authenticated with a bearer token."""

    def __init__(
        self,
        token: str,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.token = token
        self.base_url = (base_url or settings.api_base_url).rstrip("/")
        self.timeout = timeout or settings.api_timeout_s
        self.transport = transport

    def _request(self, method: str, endpoint: str, **kwargs) -> Any:
        url = f"{self.base_url}/{endpoint.lstrip('/')}"
        headers = {"Authorization": f"Bearer {self.token}"}
        headers.update(kwargs.pop("headers", {}))
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.request(method, url, headers=headers, **kwargs)
        except httpx.HTTPError as e:
            logger.warning("clock_api_unreachable", url=url, error=str(e))
            raise BackendUnavailableError("Cannot reach the clock service, please try again")

        if response.status_code >= 500:
            logger.warning("clock_api_server_error", url=url, status_code=response.status_code)
            raise BackendUnavailableError("Cannot clock in right now, please try again")
        if response.status_code >= 400:
            raise self._error_from(response)
        return response.json()

    def _error_from(self, response: httpx.Response) -> ClockError:
        try:
            detail = response.json().get("detail")
        except ValueError:
            detail = None
        if not isinstance(detail, dict):
            return ClockError(str(detail or response.text or "Request failed"), code=f"http_{response.status_code}")

        code = detail.get("code") or f"http_{response.status_code}"
        message = detail.get("message") or "Request failed"
        if detail.get("clock_event_id") or code in ("override_not_allowed", "reason_required", "photo_required"):
            error = OverrideRejectedError(message, code=code)
            error.clock_event_id = detail.get("clock_event_id")
            return error
        return ClockError(message, code=code)

    def submit(self, command: SubmitValidation) -> ClockResult:
        payload: Dict[str, Any] = {
            "job_id": str(command.job_id),
            "event_type": command.event_type.value,
            "location": _location_payload(command),
        }
        endpoint = "/clock/validate"
        if command.override is not None:
            endpoint = "/clock/override"
            payload["reason"] = command.override.reason
            payload["photo_url"] = command.override.photo_url
            if command.override.blocked_event_id:
                payload["blocked_event_id"] = str(command.override.blocked_event_id)
        return ClockResult.from_response(self._request("POST", endpoint, json=payload))

    def open_shift(self) -> Optional[Dict[str, Optional[str]]]:
        data = self._request("GET", "/clock/status")
        entries = data.get("open_entries") or []
        if not entries:
            return None
        return {"job_id": entries[0]["job_id"], "time_entry_id": entries[0]["id"]}

    def accuracy_threshold(self) -> float:
        data = self._request("GET", "/settings/geofence")
        return float(data["gps_accuracy_warning_m"])
