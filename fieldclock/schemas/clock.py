import uuid
from datetime import datetime
from typing import List, Optional, Union

from pydantic import BaseModel, Field, field_validator

from ..models.enums import AlertStatus, ClockEventType, EnforcementMode, LocationSource


# Clock attempt schemas
class LocationIn(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    accuracy_meters: Optional[float] = Field(default=None, ge=0)
    captured_at: Optional[datetime] = None
    source: LocationSource = LocationSource.gps


class ClockValidateRequest(BaseModel):
    job_id: uuid.UUID
    event_type: ClockEventType
    location: LocationIn


class ClockOverrideRequest(ClockValidateRequest):
    reason: Optional[str] = None
    photo_url: Optional[str] = None
    blocked_event_id: Optional[uuid.UUID] = None

    @field_validator("reason", "photo_url")
    @classmethod
    def strip_blank(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip()
        return v or None


class ClockAttemptResponse(BaseModel):
    allowed: bool
    status: str
    event_type: str
    within_geofence: bool
    distance_meters: Optional[float] = None
    distance_feet: Optional[int] = None
    geofence_radius_meters: Optional[float] = None
    geofence_expanded: bool = False
    enforcement_mode: str
    can_override: bool = False
    override_requires_reason: bool = False
    override_requires_photo: bool = False
    no_job_location: bool = False
    message: str
    clock_event_id: uuid.UUID
    time_entry_id: Optional[uuid.UUID] = None
    alert_id: Optional[uuid.UUID] = None


# Ledger schemas
class ClockEventResponse(BaseModel):
    id: uuid.UUID
    job_id: uuid.UUID
    user_id: uuid.UUID
    event_type: str
    status: str
    recorded_at: datetime
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    accuracy_meters: Optional[float] = None
    location_source: Optional[str] = None
    within_geofence: bool
    distance_from_job_meters: Optional[float] = None
    geofence_radius_meters: Optional[float] = None
    geofence_expanded: bool = False
    enforcement_mode: str
    no_job_location: bool = False
    override_reason: Optional[str] = None
    override_photo_url: Optional[str] = None
    override_approved_by: Optional[uuid.UUID] = None
    override_approved_at: Optional[datetime] = None
    supersedes_event_id: Optional[uuid.UUID] = None

    class Config:
        from_attributes = True


class LedgerSummaryResponse(BaseModel):
    total_events: int
    violation_count: int
    override_count: int
    blocked_count: int


# Time entry schemas
class TimeEntryResponse(BaseModel):
    id: uuid.UUID
    job_id: uuid.UUID
    user_id: uuid.UUID
    entry_type: str
    clock_in: datetime
    clock_out: Optional[datetime] = None
    duration_minutes: Optional[float] = None
    clock_in_event_id: Optional[uuid.UUID] = None
    clock_out_event_id: Optional[uuid.UUID] = None
    location_accuracy: Optional[float] = None
    corrects_entry_id: Optional[uuid.UUID] = None
    notes: Optional[str] = None

    class Config:
        from_attributes = True


class ClockStatusResponse(BaseModel):
    clocked_in: bool
    open_entries: List[TimeEntryResponse]


class ManualTimeEntryCreate(BaseModel):
    job_id: uuid.UUID
    user_id: uuid.UUID
    clock_in: datetime
    clock_out: datetime
    notes: Optional[str] = None
    corrects_entry_id: Optional[uuid.UUID] = None


class TimeEntryCorrection(BaseModel):
    clock_in: Optional[datetime] = None
    clock_out: Optional[datetime] = None
    notes: Optional[str] = None


# Geofence schemas
class GeofenceExpansionRequest(BaseModel):
    radius_meters: float = Field(gt=0)
    duration: Union[str, int] = "2h"  # 1h|2h|4h|eod or whole hours
    reason: Optional[str] = None


class JobGeofenceUpdate(BaseModel):
    geofence_radius_meters: Optional[int] = Field(default=None, gt=0)
    geofence_enforcement: Optional[EnforcementMode] = None
    clear_enforcement: bool = False  # Fall back to the business mode


class JobGeofenceResponse(BaseModel):
    job_id: uuid.UUID
    has_location: bool
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    geofence_radius_meters: Optional[int] = None
    effective_radius_meters: float
    base_radius_meters: float
    enforcement_mode: str
    is_expanded: bool
    expanded_until: Optional[datetime] = None
    expanded_radius_meters: Optional[int] = None
    expansion_reason: Optional[str] = None


class BusinessGeofenceSettings(BaseModel):
    default_geofence_radius_meters: Optional[int] = None
    geofence_enforcement_mode: Optional[str] = None
    geofence_allow_override: bool
    geofence_override_requires_reason: bool
    geofence_override_requires_photo: bool
    gps_accuracy_warning_m: float

    class Config:
        from_attributes = True


class BusinessGeofenceSettingsUpdate(BaseModel):
    default_geofence_radius_meters: Optional[int] = Field(default=None, gt=0)
    geofence_enforcement_mode: Optional[EnforcementMode] = None
    geofence_allow_override: Optional[bool] = None
    geofence_override_requires_reason: Optional[bool] = None
    geofence_override_requires_photo: Optional[bool] = None
    gps_accuracy_warning_m: Optional[float] = Field(default=None, gt=0)


# Alert schemas
class GeofenceAlertResponse(BaseModel):
    id: uuid.UUID
    clock_event_id: uuid.UUID
    job_id: uuid.UUID
    user_id: uuid.UUID
    alert_type: str
    severity: str
    distance_meters: Optional[float] = None
    status: AlertStatus
    acknowledged_by: Optional[uuid.UUID] = None
    acknowledged_at: Optional[datetime] = None
    resolution_notes: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class AlertAcknowledgeRequest(BaseModel):
    notes: Optional[str] = None
