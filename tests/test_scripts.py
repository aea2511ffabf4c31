"""Tests for the operational scripts."""

from fieldclock.models.models import ClockEvent
from fieldclock.services.geofence import haversine_distance
from scripts import run_server
from scripts.verify_clock_event_distances import check_event

from conftest import JOB_LAT, JOB_LNG, point_north_of


def _event(meters, recorded_distance=None, radius=150.0, within=None, **kwargs):
    lat, lng = point_north_of(JOB_LAT, JOB_LNG, meters)
    distance = haversine_distance(lat, lng, JOB_LAT, JOB_LNG)
    fields = dict(
        latitude=lat,
        longitude=lng,
        job_latitude=JOB_LAT,
        job_longitude=JOB_LNG,
        distance_from_job_meters=distance if recorded_distance is None else recorded_distance,
        geofence_radius_meters=radius,
        within_geofence=distance <= radius if within is None else within,
        no_job_location=False,
    )
    fields.update(kwargs)
    return ClockEvent(**fields)


def test_consistent_row_has_no_problems():
    assert check_event(_event(120), tolerance_m=0.5) == []


def test_distance_drift_is_reported():
    problems = check_event(_event(120, recorded_distance=90.0), tolerance_m=0.5)
    assert len(problems) == 1
    assert "computed 120.0m" in problems[0]


def test_wrong_verdict_is_reported():
    problems = check_event(_event(200, within=True), tolerance_m=0.5)
    assert any("within_geofence=True" in p for p in problems)


def test_no_job_location_rows_must_be_inside():
    event = _event(0, job_latitude=None, job_longitude=None, no_job_location=True, within=False)
    assert check_event(event, tolerance_m=0.5) == ["no job location but recorded outside geofence"]


def test_run_server_starts_uvicorn_with_the_app(monkeypatch):
    calls = {}
    monkeypatch.setattr(run_server.uvicorn, "run", lambda app, **kwargs: calls.update(app=app, **kwargs))

    run_server.main(["--host", "0.0.0.0", "--port", "9001"])

    assert calls["app"] == "fieldclock.main:app"
    assert calls["host"] == "0.0.0.0"
    assert calls["port"] == 9001
    assert calls["reload"] is False
