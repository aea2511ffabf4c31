import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    Column,
    String,
    DateTime,
    Boolean,
    ForeignKey,
    Table,
    Integer,
    Float,
    JSON,
    UniqueConstraint,
    Text,
    Index,
    Uuid,
    event,
    inspect,
    text,
)
from sqlalchemy.orm import relationship, Mapped, mapped_column

from ..db import Base
from ..exceptions import LedgerImmutableError


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def uuid_pk() -> Mapped[uuid.UUID]:
    return mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)


# Association table for many-to-many User<->Role
user_roles = Table(
    "user_roles",
    Base.metadata,
    Column("user_id", Uuid(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    Column("role_id", Uuid(as_uuid=True), ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
    UniqueConstraint("user_id", "role_id", name="uq_user_role"),
)


class Business(Base):
    """Tenant. Carries the default geofence policy for all of its jobs."""
    __tablename__ = "businesses"

    id: Mapped[uuid.UUID] = uuid_pk()
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    timezone: Mapped[Optional[str]] = mapped_column(String(100), default="America/Vancouver")
    default_geofence_radius_meters: Mapped[Optional[int]] = mapped_column(Integer, default=150)
    geofence_enforcement_mode: Mapped[Optional[str]] = mapped_column(String(20), default="warn")  # off|warn|strict
    geofence_allow_override: Mapped[bool] = mapped_column(Boolean, default=True)
    geofence_override_requires_reason: Mapped[bool] = mapped_column(Boolean, default=True)
    geofence_override_requires_photo: Mapped[bool] = mapped_column(Boolean, default=False)
    gps_accuracy_warning_m: Mapped[Optional[float]] = mapped_column(Float)  # Falls back to settings
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class Role(Base):
    __tablename__ = "roles"

    id: Mapped[uuid.UUID] = uuid_pk()
    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)  # admin|supervisor|worker
    description: Mapped[Optional[str]] = mapped_column(String(255))

    users = relationship("User", secondary=user_roles, back_populates="roles")


class User(Base):
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = uuid_pk()
    business_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("businesses.id", ondelete="CASCADE"), nullable=False, index=True)
    username: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), unique=True)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    first_name: Mapped[Optional[str]] = mapped_column(String(100))
    last_name: Mapped[Optional[str]] = mapped_column(String(100))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    last_login_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    roles = relationship("Role", secondary=user_roles, back_populates="users")


class Job(Base):
    """Job site. Geofence columns are read-only from the clock's point of view."""
    __tablename__ = "jobs"

    id: Mapped[uuid.UUID] = uuid_pk()
    business_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("businesses.id", ondelete="CASCADE"), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    address: Mapped[Optional[str]] = mapped_column(String(500))
    latitude: Mapped[Optional[float]] = mapped_column(Float)  # Null until geocoded
    longitude: Mapped[Optional[float]] = mapped_column(Float)
    geofence_radius_meters: Mapped[Optional[int]] = mapped_column(Integer)  # Null -> business default
    geofence_enforcement: Mapped[Optional[str]] = mapped_column(String(20))  # Null -> business mode
    # Temporary expansion; inert once geofence_expanded_until has passed
    geofence_expanded_radius_meters: Mapped[Optional[int]] = mapped_column(Integer)
    geofence_expanded_until: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), index=True)
    geofence_expanded_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    geofence_expansion_reason: Mapped[Optional[str]] = mapped_column(Text)
    status: Mapped[Optional[str]] = mapped_column(String(50), default="scheduled")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class ClockEvent(Base):
    """Append-only ledger of clock attempts. One row per attempt, never rewritten."""
    __tablename__ = "clock_events"

    id: Mapped[uuid.UUID] = uuid_pk()
    business_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("businesses.id", ondelete="CASCADE"), nullable=False, index=True)
    job_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(20), nullable=False)  # clock_in|clock_out
    status: Mapped[str] = mapped_column(String(20), nullable=False)  # granted|warned|blocked|override
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    latitude: Mapped[Optional[float]] = mapped_column(Float)
    longitude: Mapped[Optional[float]] = mapped_column(Float)
    accuracy_meters: Mapped[Optional[float]] = mapped_column(Float)  # As reported by the device, never adjusted
    location_source: Mapped[Optional[str]] = mapped_column(String(20))  # gps|network|manual
    location_captured_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    # Frozen at write time: the geometry and policy that produced the verdict
    job_latitude: Mapped[Optional[float]] = mapped_column(Float)
    job_longitude: Mapped[Optional[float]] = mapped_column(Float)
    distance_from_job_meters: Mapped[Optional[float]] = mapped_column(Float)
    geofence_radius_meters: Mapped[Optional[float]] = mapped_column(Float)
    geofence_expanded: Mapped[bool] = mapped_column(Boolean, default=False)
    enforcement_mode: Mapped[str] = mapped_column(String(20), nullable=False)
    within_geofence: Mapped[bool] = mapped_column(Boolean, nullable=False)
    no_job_location: Mapped[bool] = mapped_column(Boolean, default=False)  # Job was never geocoded
    override_reason: Mapped[Optional[str]] = mapped_column(Text)
    override_photo_url: Mapped[Optional[str]] = mapped_column(String(1024))
    override_approved_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    override_approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    supersedes_event_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), ForeignKey("clock_events.id"))  # Blocked row re-admitted by this override
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index('idx_clock_events_job_recorded', 'job_id', 'recorded_at'),
        Index('idx_clock_events_user_recorded', 'user_id', 'recorded_at'),
    )


class TimeEntry(Base):
    """Labor duration derived from a matched clock-in/clock-out pair."""
    __tablename__ = "time_entries"

    id: Mapped[uuid.UUID] = uuid_pk()
    business_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("businesses.id", ondelete="CASCADE"), nullable=False, index=True)
    job_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    entry_type: Mapped[str] = mapped_column(String(20), default="work")  # work|manual
    clock_in: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    clock_out: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    duration_minutes: Mapped[Optional[float]] = mapped_column(Float)
    clock_in_event_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), ForeignKey("clock_events.id"))
    clock_out_event_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), ForeignKey("clock_events.id"))
    clock_in_latitude: Mapped[Optional[float]] = mapped_column(Float)
    clock_in_longitude: Mapped[Optional[float]] = mapped_column(Float)
    clock_out_latitude: Mapped[Optional[float]] = mapped_column(Float)
    clock_out_longitude: Mapped[Optional[float]] = mapped_column(Float)
    location_accuracy: Mapped[Optional[float]] = mapped_column(Float)
    corrects_entry_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), ForeignKey("time_entries.id"))
    notes: Mapped[Optional[str]] = mapped_column(Text)
    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        # At most one open entry per worker per job
        Index(
            'uq_time_entries_open_user_job', 'user_id', 'job_id',
            unique=True,
            sqlite_where=text("clock_out IS NULL"),
            postgresql_where=text("clock_out IS NULL"),
        ),
        Index('idx_time_entries_user_clock_in', 'user_id', 'clock_in'),
    )


class GeofenceAlert(Base):
    """Supervisor-facing alert raised for every clock event outside the geofence"""
    __tablename__ = "geofence_alerts"

    id: Mapped[uuid.UUID] = uuid_pk()
    business_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("businesses.id", ondelete="CASCADE"), nullable=False)
    clock_event_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("clock_events.id"), nullable=False, index=True)
    job_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    alert_type: Mapped[str] = mapped_column(String(50), nullable=False)  # clock_in_outside|clock_out_outside|override_requested
    severity: Mapped[str] = mapped_column(String(20), default="warning")  # info|warning|error
    distance_meters: Mapped[Optional[float]] = mapped_column(Float)
    status: Mapped[str] = mapped_column(String(20), default="pending")  # pending|acknowledged
    acknowledged_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    acknowledged_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    resolution_notes: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index('idx_geofence_alerts_business_status', 'business_id', 'status'),
    )


class AuditLog(Base):
    """Append-only audit log for administrative actions"""
    __tablename__ = "audit_logs"

    id: Mapped[uuid.UUID] = uuid_pk()
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)  # clock_event|time_entry|job|business
    entity_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(50), nullable=False)  # APPROVE_OVERRIDE|EXPAND_GEOFENCE|MANUAL_ENTRY|CORRECT_ENTRY|...
    actor_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), index=True)
    actor_role: Mapped[Optional[str]] = mapped_column(String(50))  # admin|supervisor|worker|system
    source: Mapped[Optional[str]] = mapped_column(String(50))  # app|system|api
    changes_json: Mapped[Optional[dict]] = mapped_column(JSON)  # Before/after diff
    timestamp_utc: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False, index=True)
    context: Mapped[Optional[dict]] = mapped_column(JSON)
    integrity_hash: Mapped[Optional[str]] = mapped_column(String(64))  # SHA256 hash for integrity verification

    __table_args__ = (
        Index('idx_audit_entity', 'entity_type', 'entity_id'),
        Index('idx_audit_actor', 'actor_id', 'timestamp_utc'),
    )


# Ledger guards: ClockEvent rows are immutable except for the one-time override approval

CLOCK_EVENT_APPROVAL_FIELDS = frozenset({"override_approved_by", "override_approved_at"})


@event.listens_for(ClockEvent, "before_update")
def _clock_event_before_update(mapper, connection, target):
    state = inspect(target)
    for attr in state.attrs:
        history = attr.history
        if not history.has_changes():
            continue
        if attr.key not in CLOCK_EVENT_APPROVAL_FIELDS:
            raise LedgerImmutableError(f"Clock event {target.id} is immutable; field '{attr.key}' cannot change")
        if history.deleted and history.deleted[0] is not None:
            raise LedgerImmutableError(f"Clock event {target.id} override approval is already recorded")
        if target.status != "override":
            raise LedgerImmutableError(f"Clock event {target.id} has no override to approve")


@event.listens_for(ClockEvent, "before_delete")
def _clock_event_before_delete(mapper, connection, target):
    raise LedgerImmutableError(f"Clock event {target.id} cannot be deleted")
