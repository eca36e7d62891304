# tests/conftest.py
import pytest
import os
import sys
import random
import string
from datetime import datetime, timedelta, timezone
from typing import Dict

# Add the parent directory to the Python path so we can import modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

os.environ.setdefault("SECRET_KEY", "test-secret-key-that-is-at-least-32-characters")
os.environ.setdefault("DATABASE_URL", "sqlite:///./test_medtrack_app.db")
os.environ.setdefault("LOG_DIR", "logs/test")

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from fastapi.testclient import TestClient

from main import app
from database import (
    Base, get_db, Medication, MedicationStatus, TimingRelation, DosageUnit, UserRole,
)
from auth import create_user
from timezone_utils import get_clock, local_timezone

# Test database URL - use a separate test database
TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL", "sqlite:///./test_medtrack.db")

test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False} if "sqlite" in TEST_DATABASE_URL else {}
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)

LOCAL_TZ = local_timezone()


class FixedClock:
    """Injectable clock that only moves when a test advances it"""

    def __init__(self, instant: datetime):
        self.instant = instant

    def __call__(self) -> datetime:
        return self.instant.astimezone(timezone.utc)

    def advance(self, **kwargs):
        self.instant = self.instant + timedelta(**kwargs)

    def set_local(self, hour: int, minute: int = 0):
        local = self.instant.astimezone(LOCAL_TZ)
        self.instant = local.replace(hour=hour, minute=minute, second=0, microsecond=0)


def local_datetime(year, month, day, hour=0, minute=0) -> datetime:
    return datetime(year, month, day, hour, minute, tzinfo=LOCAL_TZ)


@pytest.fixture
def db_session():
    """Fresh tables for every test"""
    Base.metadata.create_all(bind=test_engine)
    session = TestingSessionLocal()

    yield session

    session.close()
    Base.metadata.drop_all(bind=test_engine)


@pytest.fixture
def clock():
    """Local 2025-06-15 12:45, inside the default lunch window"""
    return FixedClock(local_datetime(2025, 6, 15, 12, 45))


@pytest.fixture
def client(db_session, clock):
    """Create a test client with database and clock overrides"""
    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_clock] = lambda: clock
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def generate_random_string(length: int = 8) -> str:
    """Generate random string for testing"""
    return ''.join(random.choices(string.ascii_lowercase + string.digits, k=length))


def generate_test_user_data(role: str = "patient") -> Dict[str, str]:
    """Generate random test user data"""
    return {
        "username": f"{role}_{generate_random_string()}",
        "email": f"{role}_{generate_random_string()}@example.com",
        "password": f"TestPass{generate_random_string(4)}!",
        "full_name": f"Test {role.capitalize()}",
        "role": role,
    }


@pytest.fixture
def test_user_data():
    return generate_test_user_data()


@pytest.fixture
def patient(db_session):
    return create_user(
        db_session, "patient_one", "patient.one@example.com", "PatientPass1!",
        full_name="Pat One", role=UserRole.PATIENT
    )


@pytest.fixture
def caregiver(db_session, patient):
    caregiver = create_user(
        db_session, "caregiver_one", "caregiver.one@example.com", "CaregiverPass1!",
        full_name="Care Giver", role=UserRole.CAREGIVER
    )
    patient.caregiver_id = caregiver.id
    db_session.commit()
    return caregiver


@pytest.fixture
def make_medication(db_session, patient, caregiver, clock):
    """Factory persisting a medication with sensible defaults"""
    def factory(**overrides) -> Medication:
        fields = {
            "patient_id": patient.id,
            "caregiver_id": caregiver.id,
            "name": "Metformin",
            "dosage": "500",
            "dosage_unit": DosageUnit.MG,
            "frequency": 2,
            "timing_relation": TimingRelation.ANYTIME,
            "total_quantity": 30,
            "remaining_quantity": 30,
            "expiry_date": clock() + timedelta(days=180),
            "status": MedicationStatus.ACTIVE,
        }
        fields.update(overrides)
        medication = Medication(**fields)
        db_session.add(medication)
        db_session.commit()
        db_session.refresh(medication)
        return medication
    return factory


def login_headers(client, username: str, password: str) -> Dict[str, str]:
    response = client.post("/auth/login", data={"username": username, "password": password})
    assert response.status_code == 200
    return {"Authorization": f"Bearer {response.json()['access_token']}"}


@pytest.fixture
def patient_headers(client, patient):
    return login_headers(client, "patient_one", "PatientPass1!")


@pytest.fixture
def caregiver_headers(client, caregiver):
    return login_headers(client, "caregiver_one", "CaregiverPass1!")
