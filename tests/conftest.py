"""Shared fixtures: a throwaway SQLite database per test and payload builders."""

import os

# The module-level engine is built at import time; keep it off PostgreSQL.
os.environ.setdefault("DATABASE_URL", "sqlite://")

from datetime import datetime, timezone  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

from medrecords.main import app  # noqa: E402
from medrecords.models.database import Base, build_engine, get_db  # noqa: E402
from medrecords.schemas.payload import ClinicalPayload  # noqa: E402
from medrecords.services.authorization import Caller, Role  # noqa: E402


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'records.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def now():
    return datetime(2025, 3, 1, 9, 30, tzinfo=timezone.utc)


def make_payload(
    primary="Hypertension",
    chief_complaint="Headache and dizziness",
    allergies=None,
    blood_group=None,
    chronic=None,
    medications=None,
    alerts=None,
    **extra,
):
    document = {
        "visit_type": "consultation",
        "visit_date": "2025-03-01T09:00:00Z",
        "chief_complaint": chief_complaint,
        "hospital": {"name": "City General", "registration_number": "REG-1001"},
        "diagnosis": {"primary": primary},
    }
    if allergies is not None:
        document["allergies"] = allergies
    if blood_group or chronic or medications or alerts:
        document["emergency_info"] = {
            "blood_group": blood_group,
            "chronic_conditions": chronic or [],
            "current_medications": medications or [],
            "medical_alerts": alerts or [],
        }
        if blood_group is None:
            del document["emergency_info"]["blood_group"]
    document.update(extra)
    return document


@pytest.fixture
def payload():
    return make_payload


@pytest.fixture
def typed_payload():
    def build(**kwargs):
        return ClinicalPayload.model_validate(make_payload(**kwargs))

    return build


@pytest.fixture
def doctor():
    return Caller("dr-house", Role.DOCTOR)


@pytest.fixture
def other_doctor():
    return Caller("dr-wilson", Role.DOCTOR)


@pytest.fixture
def patient():
    return Caller("patient-42", Role.PATIENT)


@pytest.fixture
def admin():
    return Caller("admin-1", Role.ADMIN)


@pytest.fixture
def client(session_factory):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    def build(caller):
        return {"X-Caller-Id": caller.caller_id, "X-Caller-Role": caller.role.value}

    return build
