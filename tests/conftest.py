"""
Pytest configuration for the entire test suite.

Every test gets its own SQLite file under ``tmp_path`` and its own Fernet
key, so no state leaks between tests.
"""
from datetime import timedelta

import pytest
from cryptography.fernet import Fernet

from storage import db
from storage.crypto import reset_cipher
from storage.config import get_settings
from scheduling import access_graph, directory, family, notifications
from scheduling.time_utils import local_today


class RecordingSender:
    """Notification sender that remembers what it was asked to send."""

    def __init__(self):
        self.sent = []

    def send(self, event, appointment):
        self.sent.append((event, appointment.id))

    @property
    def events(self):
        return [event for event, _ in self.sent]


@pytest.fixture(autouse=True)
def store(tmp_path, monkeypatch):
    """Point the core at a fresh database and key."""
    monkeypatch.setenv("MEDAGENDA_DB_PATH", str(tmp_path / "medagenda-test.db"))
    monkeypatch.setenv("APP_DATA_KEY", Fernet.generate_key().decode("ascii"))
    get_settings.cache_clear()
    reset_cipher()
    db.init_db()
    yield
    notifications.set_sender(None)
    get_settings.cache_clear()
    reset_cipher()


@pytest.fixture
def sender():
    recording = RecordingSender()
    notifications.set_sender(recording)
    return recording


# ============================================================================
# Dates
# ============================================================================

@pytest.fixture
def today():
    return local_today()


@pytest.fixture
def tomorrow(today):
    return today + timedelta(days=1)


@pytest.fixture
def yesterday(today):
    return today - timedelta(days=1)


# ============================================================================
# Records
# ============================================================================

@pytest.fixture
def doctor():
    """A verified doctor."""
    return directory.register_doctor({
        "nombre": "Dra. Laura Méndez",
        "especialidad": "Clínica médica",
        "consultationFee": 15000,
        "verified": True,
        "gender": "female",
        "userId": "user-doc-1",
    })


@pytest.fixture
def other_doctor():
    """A second verified doctor."""
    return directory.register_doctor({
        "nombre": "Dr. Martín Ríos",
        "especialidad": "Pediatría",
        "verified": True,
        "userId": "user-doc-2",
    })


@pytest.fixture
def unverified_doctor():
    return directory.register_doctor({"nombre": "Dr. Pablo Ortega", "verified": False})


@pytest.fixture
def patient(doctor):
    """A primary patient registered by ``doctor``."""
    return access_graph.create_patient(
        {
            "name": "Ana García",
            "email": "ana.garcia@example.com",
            "phone": "+54 11 5555-0101",
            "dateOfBirth": "1985-04-12",
            "gender": "female",
            "userId": "user-ana",
        },
        doctor=doctor,
    )


@pytest.fixture
def family_member(patient):
    """A child of ``patient``."""
    return family.create_family_member({
        "primaryPatientId": patient.id,
        "name": "Tomás García",
        "relationship": "hijo",
        "dateOfBirth": "2016-09-03",
        "gender": "male",
    })
