"""
Seed the local database with a demo business, users and geocoded jobs.

Usage:
  python scripts/seed_demo_data.py

This script is idempotent: running it multiple times will upsert the same
records based on unique fields (business name, username, job title).
"""

import os
import sys
from datetime import datetime, timezone

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from fieldclock.db import SessionLocal, Base, engine
from fieldclock.models.models import Business, Job, Role, User
from fieldclock.auth.security import get_password_hash


def ensure_business(session, name: str, **kwargs) -> Business:
    business = session.query(Business).filter(Business.name == name).first()
    if business:
        for k, v in kwargs.items():
            if hasattr(business, k):
                setattr(business, k, v)
        session.add(business)
        session.flush()
        return business
    business = Business(name=name, created_at=datetime.now(timezone.utc), **kwargs)
    session.add(business)
    session.flush()
    return business


def ensure_role(session, name: str, description: str = "") -> Role:
    role = session.query(Role).filter(Role.name == name).first()
    if role:
        if description and role.description != description:
            role.description = description
            session.add(role)
        return role
    role = Role(name=name, description=description or name.title())
    session.add(role)
    session.flush()
    return role


def ensure_user(session, business: Business, username: str, email: str, password: str, roles: list[str]) -> User:
    user = session.query(User).filter((User.username == username) | (User.email == email)).first()
    if user is None:
        user = User(
            business_id=business.id,
            username=username,
            email=email,
            password_hash=get_password_hash(password),
            first_name=username.split(".")[0].title(),
            last_name=username.split(".")[-1].title(),
            is_active=True,
            created_at=datetime.now(timezone.utc),
        )
        session.add(user)
        session.flush()
    user.business_id = business.id
    user.roles = session.query(Role).filter(Role.name.in_(roles)).all()
    session.add(user)
    session.flush()
    return user


def ensure_job(session, business: Business, title: str, **kwargs) -> Job:
    job = session.query(Job).filter(Job.business_id == business.id, Job.title == title).first()
    if job:
        for k, v in kwargs.items():
            if hasattr(job, k):
                setattr(job, k, v)
        session.add(job)
        session.flush()
        return job
    job = Job(business_id=business.id, title=title, created_at=datetime.now(timezone.utc), **kwargs)
    session.add(job)
    session.flush()
    return job


def main() -> None:
    # Ensure tables exist (safe for SQLite dev)
    Base.metadata.create_all(bind=engine)

    session = SessionLocal()
    try:
        business = ensure_business(
            session,
            "Demo Roofing",
            timezone="America/Vancouver",
            default_geofence_radius_meters=150,
            geofence_enforcement_mode="strict",
            geofence_allow_override=True,
            geofence_override_requires_reason=True,
            geofence_override_requires_photo=False,
        )

        ensure_role(session, "admin", "Administrator")
        ensure_role(session, "supervisor", "Field supervisor")
        ensure_role(session, "worker", "Field worker")

        ensure_user(session, business, "admin.user", "admin@example.com", "TestAdmin123!", ["admin"])
        ensure_user(session, business, "sam.supervisor", "sam.supervisor@example.com", "TestUser123!", ["supervisor"])
        ensure_user(session, business, "wendy.worker", "wendy.worker@example.com", "TestUser123!", ["worker"])

        ensure_job(
            session, business, "Head Office Reroof",
            address="100 Main St, Vancouver, BC",
            latitude=49.2827,
            longitude=-123.1207,
            geofence_radius_meters=150,
        )
        ensure_job(
            session, business, "Warehouse Inspection",
            address="2500 Commercial Dr, Vancouver, BC",
            latitude=49.2620,
            longitude=-123.0695,
            geofence_enforcement="warn",
        )
        # Not geocoded yet: clock events are always granted and flagged
        ensure_job(session, business, "New Lead Site Visit", address="TBD")

        session.commit()
        print("Seed completed: business, 3 users, 3 jobs")
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


if __name__ == "__main__":
    main()
