import os
import uuid
from typing import Generator

# Settings are read at import time
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("AUTO_CREATE_DB", "false")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("RATE_LIMIT", "10000/minute")
os.environ.setdefault("TZ_DEFAULT", "America/New_York")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from krib.auth.security import create_access_token
from krib.db import Base, get_db
from krib.main import app
from krib.models.models import Contractor, Job, Role, Technician, User
from krib.services.jobs import new_job_number
from krib.services.schedule_blocks import build_crew_requirements

test_engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(bind=test_engine, autoflush=False, autocommit=False)

ROLE_NAMES = ("admin", "contractor", "technician", "homeowner")


@pytest.fixture()
def db() -> Generator[Session, None, None]:
    Base.metadata.create_all(bind=test_engine)
    session = TestingSessionLocal()
    try:
        for name in ROLE_NAMES:
            session.add(Role(name=name))
        session.commit()
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture()
def client(db: Session) -> Generator[TestClient, None, None]:
    def _get_db():
        yield db

    app.dependency_overrides[get_db] = _get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def _make_user(db: Session, email: str, *role_names: str) -> User:
    user = User(email=email, display_name=email.split("@")[0])
    user.roles = db.query(Role).filter(Role.name.in_(role_names)).all()
    db.add(user)
    db.commit()
    return user


def auth_headers(user: User) -> dict:
    token = create_access_token(str(user.id), [r.name for r in user.roles])
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def admin_user(db):
    return _make_user(db, "admin@krib.test", "admin")


@pytest.fixture()
def owner(db):
    return _make_user(db, "owner@krib.test", "contractor")


@pytest.fixture()
def homeowner(db):
    return _make_user(db, "home@krib.test", "homeowner")


@pytest.fixture()
def outsider(db):
    return _make_user(db, "outsider@krib.test", "contractor")


@pytest.fixture()
def contractor(db, owner):
    contractor = Contractor(
        owner_user_id=owner.id,
        business_name="Acme Plumbing",
        timezone="America/New_York",
        scheduling={"timeOff": []},
    )
    db.add(contractor)
    db.commit()
    return contractor


@pytest.fixture()
def techs(db, contractor):
    """Three technicians; the first one has a login."""
    tech_user = _make_user(db, "tech@krib.test", "technician")
    created = []
    for idx, name in enumerate(("Ana", "Ben", "Cleo")):
        tech = Technician(
            contractor_id=contractor.id,
            user_id=tech_user.id if idx == 0 else None,
            name=name,
        )
        db.add(tech)
        created.append(tech)
    db.commit()
    db.refresh(contractor)
    return created


@pytest.fixture()
def tech_user(db, techs):
    return db.query(User).filter(User.email == "tech@krib.test").one()


@pytest.fixture()
def make_job(db, contractor, homeowner):
    def _make(**overrides) -> Job:
        duration = overrides.pop("estimated_duration", 120)
        values = dict(
            id=uuid.uuid4(),
            job_number=new_job_number(),
            contractor_id=contractor.id,
            homeowner_user_id=homeowner.id,
            title="Replace water heater",
            status="pending_schedule",
            estimated_duration=duration,
            scheduled_timezone="America/New_York",
            is_multi_day=duration > 480,
            crew_requirements=build_crew_requirements(None, duration),
            assigned_crew_ids=[],
            scheduling={},
            proposed_times=[],
            scheduling_requests=[],
            per_day_crew={},
            pause_history=[],
        )
        values.update(overrides)
        job = Job(**values)
        db.add(job)
        db.commit()
        return job

    return _make
