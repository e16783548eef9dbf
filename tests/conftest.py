"""Shared fixtures: an in-memory SQLite store seeded with reference data."""

import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

from datetime import date

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from clinicflow.models import clinical  # noqa: F401
from clinicflow.models.clinical import Patient, Staff
from clinicflow.models.database import Base, get_db
from clinicflow.services import catalog, encounters
from clinicflow.services.requests import registry


@pytest.fixture
def db():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    session = sessionmaker(bind=engine, autocommit=False, autoflush=False)()
    catalog.seed_reference_data(session)
    registry.clear()
    try:
        yield session
    finally:
        session.close()
        registry.clear()
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture
def patient(db):
    row = Patient(
        first_name="Amina",
        last_name="Wanjiru",
        gender="female",
        dob=date(1990, 5, 17),
        phone="+254712345678",
    )
    db.add(row)
    db.commit()
    return row


@pytest.fixture
def provider(db):
    row = Staff(title="Dr.", first_name="Otieno", last_name="Kamau", role="clinician")
    db.add(row)
    db.commit()
    return row


@pytest.fixture
def encounter(db, patient, provider):
    return encounters.open_encounter(db, patient.id, provider.id)


@pytest.fixture
def haemogram(db):
    return catalog.find_test_by_name(db, "Haemogram")


@pytest.fixture
def failing_commits(db, monkeypatch):
    """
    Make the session's commits fail. Call with ``after=n`` to let the
    first ``n`` commits through before the store starts refusing writes, and
    ``error=`` to refuse them with something other than an outage.
    """
    real_commit = db.commit

    def arm(after: int = 0, error=None):
        calls = {"n": 0}

        def commit():
            calls["n"] += 1
            if calls["n"] > after:
                raise error or OperationalError("COMMIT", {}, Exception("database is unavailable"))
            real_commit()

        monkeypatch.setattr(db, "commit", commit)

    def disarm():
        monkeypatch.setattr(db, "commit", real_commit)

    arm.disarm = disarm
    return arm


@pytest.fixture
def client(db):
    from clinicflow.main import app

    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
