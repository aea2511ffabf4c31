from enum import Enum


class EnforcementMode(str, Enum):
    off = "off"
    warn = "warn"
    strict = "strict"


class ClockEventType(str, Enum):
    clock_in = "clock_in"
    clock_out = "clock_out"


class ClockEventStatus(str, Enum):
    granted = "granted"
    warned = "warned"
    blocked = "blocked"
    override = "override"


class LocationSource(str, Enum):
    gps = "gps"
    network = "network"
    manual = "manual"


class TimeEntryType(str, Enum):
    work = "work"
    manual = "manual"


class AlertType(str, Enum):
    clock_in_outside = "clock_in_outside"
    clock_out_outside = "clock_out_outside"
    override_requested = "override_requested"


class AlertSeverity(str, Enum):
    info = "info"
    warning = "warning"
    error = "error"


class AlertStatus(str, Enum):
    pending = "pending"
    acknowledged = "acknowledged"
