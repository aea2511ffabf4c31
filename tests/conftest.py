"""Pytest configuration and fixtures."""

import math
import os
from datetime import datetime, timezone
from typing import Generator

# Settings are read at import time; point them at throwaway values first
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("AUTO_CREATE_DB", "false")
os.environ.setdefault("JWT_SECRET", "test-secret")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from fieldclock.auth.security import create_access_token, get_password_hash
from fieldclock.db import Base, get_db
from fieldclock.main import app
from fieldclock.models.models import Business, Job, Role, User
from fieldclock.services.geofence import EARTH_RADIUS_M

# Use in-memory SQLite for tests
TEST_DATABASE_URL = "sqlite:///:memory:"

JOB_LAT = 49.2827
JOB_LNG = -123.1207


def point_north_of(lat: float, lng: float, meters: float):
    """A point `meters` due north; along a meridian the haversine distance is exact."""
    return lat + math.degrees(meters / EARTH_RADIUS_M), lng


@pytest.fixture
def offset_north():
    return point_north_of


@pytest.fixture
def now() -> datetime:
    return datetime.now(timezone.utc)


@pytest.fixture(scope="function")
def db_engine():
    """Create a test database engine."""
    engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture(scope="function")
def db_session(session_factory) -> Generator[Session, None, None]:
    """Create a test database session."""
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(scope="function")
def client(db_session: Session) -> Generator[TestClient, None, None]:
    """Create a test client with database override."""
    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    # Disable rate limiting during tests to avoid flaky failures
    app.state.limiter.enabled = False
    # Don't raise server exceptions so we can test error status codes
    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client
    app.state.limiter.enabled = True
    app.dependency_overrides.clear()


@pytest.fixture
def business(db_session: Session) -> Business:
    """Strict enforcement, override allowed with a reason."""
    business = Business(
        name="Test Roofing",
        timezone="America/Vancouver",
        default_geofence_radius_meters=150,
        geofence_enforcement_mode="strict",
        geofence_allow_override=True,
        geofence_override_requires_reason=True,
        geofence_override_requires_photo=False,
    )
    db_session.add(business)
    db_session.commit()
    db_session.refresh(business)
    return business


@pytest.fixture
def roles(db_session: Session) -> dict:
    rows = {}
    for name in ("admin", "supervisor", "worker"):
        role = Role(name=name, description=name.title())
        db_session.add(role)
        rows[name] = role
    db_session.commit()
    return rows


def _make_user(db_session: Session, business: Business, role: Role, username: str) -> User:
    user = User(
        business_id=business.id,
        username=username,
        email=f"{username}@example.com",
        password_hash=get_password_hash("testpass123"),
        first_name=username.split(".")[0].title(),
        last_name=username.split(".")[-1].title(),
        is_active=True,
    )
    user.roles = [role]
    db_session.add(user)
    db_session.commit()
    db_session.refresh(user)
    return user


@pytest.fixture
def worker(db_session: Session, business: Business, roles: dict) -> User:
    return _make_user(db_session, business, roles["worker"], "wendy.worker")


@pytest.fixture
def other_worker(db_session: Session, business: Business, roles: dict) -> User:
    return _make_user(db_session, business, roles["worker"], "oscar.other")


@pytest.fixture
def supervisor(db_session: Session, business: Business, roles: dict) -> User:
    return _make_user(db_session, business, roles["supervisor"], "sam.supervisor")


@pytest.fixture
def admin(db_session: Session, business: Business, roles: dict) -> User:
    return _make_user(db_session, business, roles["admin"], "admin.user")


@pytest.fixture
def job(db_session: Session, business: Business) -> Job:
    """Geocoded job with a 150 m geofence."""
    job = Job(
        business_id=business.id,
        title="Head Office Reroof",
        latitude=JOB_LAT,
        longitude=JOB_LNG,
        geofence_radius_meters=150,
    )
    db_session.add(job)
    db_session.commit()
    db_session.refresh(job)
    return job


@pytest.fixture
def ungeocoded_job(db_session: Session, business: Business) -> Job:
    job = Job(business_id=business.id, title="New Lead Site Visit", address="TBD")
    db_session.add(job)
    db_session.commit()
    db_session.refresh(job)
    return job


def auth_headers(user: User) -> dict:
    token = create_access_token(user)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def worker_headers(worker: User) -> dict:
    return auth_headers(worker)


@pytest.fixture
def supervisor_headers(supervisor: User) -> dict:
    return auth_headers(supervisor)


@pytest.fixture
def admin_headers(admin: User) -> dict:
    return auth_headers(admin)
