"""
Geofence validation service.
Uses Haversine formula to calculate distance between points and decides
whether a worker's reported position permits a clock event.
"""
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Tuple

import structlog

from ..models.enums import ClockEventStatus, EnforcementMode
from .time_rules import ensure_utc, utc_now

logger = structlog.get_logger(__name__)

# Earth radius in meters (spherical approximation)
EARTH_RADIUS_M = 6371000

# Last-resort radius when neither the job, the business nor the deployment configure one
FALLBACK_RADIUS_M = 150.0

METERS_TO_FEET = 3.28084


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Calculate the great circle distance between two points on Earth.

    Args:
        lat1: Latitude of first point
        lon1: Longitude of first point
        lat2: Latitude of second point
        lon2: Longitude of second point

    Returns:
        Distance in meters
    """
    # Convert to radians
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    delta_phi = math.radians(lat2 - lat1)
    delta_lambda = math.radians(lon2 - lon1)

    # Haversine formula
    a = (
        math.sin(delta_phi / 2) ** 2 +
        math.cos(phi1) * math.cos(phi2) * math.sin(delta_lambda / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_M * c


@dataclass(frozen=True)
class OverrideRules:
    allowed: bool = True
    requires_reason: bool = True
    requires_photo: bool = False


@dataclass(frozen=True)
class GeofenceConfig:
    """Geofence of one job, already merged with business defaults."""

    center_latitude: Optional[float]
    center_longitude: Optional[float]
    base_radius_meters: Optional[float]
    enforcement_mode: EnforcementMode = EnforcementMode.warn
    expanded_radius_meters: Optional[float] = None
    expanded_until: Optional[datetime] = None
    business_default_radius_meters: Optional[float] = None
    override: OverrideRules = field(default_factory=OverrideRules)

    @property
    def has_location(self) -> bool:
        return self.center_latitude is not None and self.center_longitude is not None


@dataclass(frozen=True)
class LocationSample:
    latitude: float
    longitude: float
    accuracy_meters: Optional[float] = None  # None means no GPS fix quality was reported
    captured_at: Optional[datetime] = None
    source: str = "gps"


@dataclass(frozen=True)
class ValidationVerdict:
    within_geofence: bool
    distance_meters: Optional[float]
    effective_radius_meters: Optional[float]
    enforcement_mode: EnforcementMode
    status: ClockEventStatus
    can_override: bool = False
    override_requires_reason: bool = False
    override_requires_photo: bool = False
    geofence_expanded: bool = False
    expanded_until: Optional[datetime] = None
    no_job_location: bool = False

    @property
    def allowed(self) -> bool:
        return self.status != ClockEventStatus.blocked

    @property
    def warned(self) -> bool:
        return self.status == ClockEventStatus.warned

    @property
    def distance_feet(self) -> Optional[int]:
        if self.distance_meters is None:
            return None
        return round(self.distance_meters * METERS_TO_FEET)

    def message(self) -> str:
        if self.no_job_location:
            return "Job has no location set, allowing clock event"
        if self.within_geofence:
            return "You are within the job site geofence"
        return f"You are {self.distance_feet} feet from the job site"


def _positive(value: Optional[float]) -> Optional[float]:
    if value is None:
        return None
    try:
        value = float(value)
    except (TypeError, ValueError):
        return None
    return value if value > 0 else None


def expansion_active(config: GeofenceConfig, now: Optional[datetime] = None) -> bool:
    """An expansion counts only while `now` is strictly before its expiry."""
    if config.expanded_until is None or _positive(config.expanded_radius_meters) is None:
        return False
    now = ensure_utc(now or utc_now())
    return ensure_utc(config.expanded_until) > now


def effective_radius(config: GeofenceConfig, now: Optional[datetime] = None) -> Tuple[float, bool]:
    """
    Radius in effect at `now`.

    Evaluated on every call: an expansion is never cached, it simply stops
    applying once its expiry has passed.

    Returns:
        Tuple of (radius_meters, is_expanded)
    """
    if expansion_active(config, now):
        return float(config.expanded_radius_meters), True

    for candidate in (config.base_radius_meters, config.business_default_radius_meters):
        radius = _positive(candidate)
        if radius is not None:
            return radius, False
    return FALLBACK_RADIUS_M, False


def validate(
    location: LocationSample,
    config: GeofenceConfig,
    now: Optional[datetime] = None,
) -> ValidationVerdict:
    """
    Decide whether a clock event at `location` is permitted for this geofence.

    Within the radius the event is granted regardless of mode. Outside it,
    `off` grants, `warn` grants with a warning and `strict` blocks (the
    business override rules decide whether the worker may justify it).
    A job that was never geocoded cannot be checked and is always granted.
    """
    now = ensure_utc(now or utc_now())
    mode = config.enforcement_mode

    if not config.has_location:
        logger.warning("job_missing_coordinates", enforcement_mode=mode.value)
        return ValidationVerdict(
            within_geofence=True,
            distance_meters=None,
            effective_radius_meters=None,
            enforcement_mode=mode,
            status=ClockEventStatus.granted,
            no_job_location=True,
        )

    radius, is_expanded = effective_radius(config, now)
    distance = haversine_distance(
        location.latitude, location.longitude,
        float(config.center_latitude), float(config.center_longitude),
    )
    within = distance <= radius

    if within or mode == EnforcementMode.off:
        status = ClockEventStatus.granted
    elif mode == EnforcementMode.warn:
        status = ClockEventStatus.warned
    else:
        status = ClockEventStatus.blocked

    blocked = status == ClockEventStatus.blocked
    return ValidationVerdict(
        within_geofence=within,
        distance_meters=distance,
        effective_radius_meters=radius,
        enforcement_mode=mode,
        status=status,
        can_override=blocked and config.override.allowed,
        override_requires_reason=blocked and config.override.requires_reason,
        override_requires_photo=blocked and config.override.requires_photo,
        geofence_expanded=is_expanded,
        expanded_until=ensure_utc(config.expanded_until) if is_expanded else None,
    )
