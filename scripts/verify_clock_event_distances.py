"""
Recompute the distance of every clock event from its frozen job coordinates
and report rows whose recorded distance or verdict disagrees. With --audit,
also re-verify the integrity hash of every administrative audit row.

Read only: ledger rows are never rewritten, discrepancies are for follow-up.

Usage:
  python scripts/verify_clock_event_distances.py [--tolerance-m 0.5] [--job-id UUID] [--audit]
"""
from __future__ import annotations

import argparse
import os
import sys
import uuid

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from fieldclock.config import settings
from fieldclock.db import SessionLocal
from fieldclock.models.models import AuditLog, ClockEvent
from fieldclock.services.audit import verify_audit_log
from fieldclock.services.geofence import haversine_distance


def check_event(event: ClockEvent, tolerance_m: float) -> list[str]:
    problems = []
    if event.no_job_location or event.job_latitude is None or event.job_longitude is None:
        if not event.within_geofence:
            problems.append("no job location but recorded outside geofence")
        return problems
    if event.latitude is None or event.longitude is None:
        problems.append("missing worker position")
        return problems

    distance = haversine_distance(event.latitude, event.longitude, event.job_latitude, event.job_longitude)
    if event.distance_from_job_meters is None:
        problems.append(f"distance missing (computed {distance:.1f}m)")
    elif abs(distance - event.distance_from_job_meters) > tolerance_m:
        problems.append(f"distance {event.distance_from_job_meters:.1f}m != computed {distance:.1f}m")

    if event.geofence_radius_meters is not None:
        within = distance <= event.geofence_radius_meters
        if within != bool(event.within_geofence):
            problems.append(
                f"within_geofence={event.within_geofence} but {distance:.1f}m vs radius {event.geofence_radius_meters:.1f}m"
            )
    return problems


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[1])
    parser.add_argument("--tolerance-m", type=float, default=0.5)
    parser.add_argument("--job-id", type=uuid.UUID, default=None)
    parser.add_argument("--audit", action="store_true", help="also verify audit log integrity hashes")
    args = parser.parse_args()

    print("database_url =", settings.database_url)
    db = SessionLocal()
    try:
        query = db.query(ClockEvent)
        if args.job_id:
            query = query.filter(ClockEvent.job_id == args.job_id)
        checked = 0
        flagged = 0
        for event in query.order_by(ClockEvent.recorded_at.asc()).yield_per(500):
            checked += 1
            problems = check_event(event, args.tolerance_m)
            if problems:
                flagged += 1
                print(f"{event.id} job={event.job_id} status={event.status}: " + "; ".join(problems))
        print(f"checked={checked} flagged={flagged}")
        if args.audit:
            tampered = 0
            total = 0
            for row in db.query(AuditLog).order_by(AuditLog.timestamp_utc.asc()).yield_per(500):
                total += 1
                if not verify_audit_log(row):
                    tampered += 1
                    print(f"audit {row.id} {row.entity_type}/{row.entity_id} {row.action}: integrity hash mismatch")
            print(f"audit_checked={total} audit_mismatched={tampered}")
    finally:
        db.close()


if __name__ == "__main__":
    main()
