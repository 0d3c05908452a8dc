"""
Tests for the SQLite store, payload encryption, configuration and the audit
log.
"""
import ast
import sqlite3
from pathlib import Path

import pydantic
import pytest
from cryptography.fernet import Fernet, InvalidToken

from storage import db
from storage.crypto import open_document, reset_cipher, seal_document
from storage.config import Settings, get_settings
from storage.errors import NotFoundError, TransientIOError, ValidationError
from scheduling import access_graph, directory
from scheduling.time_utils import generate_code, iter_slots


def _raw(sql, *params):
    conn = sqlite3.connect(str(get_settings().db_path))
    conn.row_factory = sqlite3.Row
    try:
        return conn.execute(sql, params).fetchall()
    finally:
        conn.close()


# ============================================================================
# Encryption
# ============================================================================

class TestEncryption:

    def test_round_trip(self):
        document = {"name": "Ana García", "allergies": "Penicilina"}
        token = seal_document(document)
        assert "Penicilina" not in token
        assert open_document(token) == document

    def test_patient_blob_is_not_plaintext(self, patient):
        rows = _raw("SELECT encrypted_blob FROM patients WHERE id = ?", patient.id)
        assert "Ana García" not in rows[0]["encrypted_blob"]

    def test_wrong_key(self, monkeypatch):
        token = seal_document({"name": "Ana"})
        monkeypatch.setenv("APP_DATA_KEY", Fernet.generate_key().decode("ascii"))
        get_settings.cache_clear()
        reset_cipher()
        with pytest.raises(InvalidToken):
            open_document(token)


# ============================================================================
# Store
# ============================================================================

class TestStore:

    def test_init_is_idempotent(self):
        db.init_db()
        db.init_db()

    def test_status_check_constraint(self):
        with pytest.raises(sqlite3.IntegrityError):
            conn = sqlite3.connect(str(get_settings().db_path))
            try:
                with conn:
                    conn.execute(
                        """
                        INSERT INTO appointments
                            (id, appointment_code, patient_id, doctor_id, date, time,
                             status, created_at, updated_at, encrypted_blob)
                        VALUES ('x', 'APT-1', 'p', 'd', '2030-01-01', '10:00',
                                'archived', 'now', 'now', '')
                        """
                    )
            finally:
                conn.close()

    def test_grant_is_unique(self, patient, doctor):
        grant = {"doctorId": doctor.id, "isPrimary": False}
        assert not db.insert_grant(patient.id, grant)
        assert len(db.get_grants(patient.id)) == 1

    def test_unreachable_database(self, tmp_path, monkeypatch):
        monkeypatch.setenv("MEDAGENDA_DB_PATH", str(tmp_path))
        get_settings.cache_clear()
        with pytest.raises(TransientIOError):
            db.get_doctor("anyone")


# ============================================================================
# Audit log
# ============================================================================

class TestAudit:

    def test_mutations_are_audited(self, patient, other_doctor):
        access_graph.assign_patient_to_doctor(patient.id, other_doctor.id, actor_id="user-doc-2")
        entries = db.list_audit(patient.id)
        actions = [e["action"] for e in entries]
        assert actions[0] == "patient_created"
        assert f"grant_added:{other_doctor.id}" in actions
        assert entries[-1]["actor_id"] == "user-doc-2"

    def test_failed_writes_are_not_audited(self, patient):
        before = len(db.list_audit())
        db.update_appointment(
            {"id": "missing", "date": "2030-01-01", "time": "10:00", "status": "pending", "updatedAt": "now"},
            expected_status="pending",
        )
        assert len(db.list_audit()) == before


# ============================================================================
# Doctor directory
# ============================================================================

class TestDirectory:

    def test_register_and_verify(self, unverified_doctor):
        assert not unverified_doctor.verified
        directory.set_doctor_verified(unverified_doctor.id, True)
        assert directory.get_doctor_by_id(unverified_doctor.id).verified

    def test_list_verified_only(self, doctor, unverified_doctor):
        ids = {d.id for d in directory.list_doctors(verified_only=True)}
        assert doctor.id in ids
        assert unverified_doctor.id not in ids
        assert len(directory.list_doctors()) == 2

    def test_name_required(self):
        with pytest.raises(ValidationError):
            directory.register_doctor({"nombre": " "})

    def test_missing(self):
        with pytest.raises(NotFoundError) as exc_info:
            directory.get_doctor_by_id("missing")
        assert exc_info.value.user_message == "Doctor no encontrado"


# ============================================================================
# Configuration and time helpers
# ============================================================================

class TestSettings:

    def test_defaults(self):
        settings = Settings()
        assert settings.timezone == "America/Argentina/Buenos_Aires"
        assert (settings.slot_start_hour, settings.slot_end_hour, settings.slot_minutes) == (9, 18, 30)

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("MEDAGENDA_SLOT_START_HOUR", "8")
        monkeypatch.setenv("MEDAGENDA_SLOT_MINUTES", "60")
        settings = Settings.from_env()
        assert settings.slot_start_hour == 8
        assert settings.slot_minutes == 60

    def test_unknown_timezone(self):
        with pytest.raises(pydantic.ValidationError):
            Settings(timezone="Mars/Olympus_Mons")

    def test_window_must_be_positive(self):
        with pytest.raises(pydantic.ValidationError):
            Settings(slot_start_hour=18, slot_end_hour=9)

    def test_slots(self):
        slots = list(iter_slots(9, 18, 30))
        assert len(slots) == 18
        assert slots[:2] == ["09:00", "09:30"]
        assert list(iter_slots(9, 11, 45)) == ["09:00", "09:45"]

    def test_generated_code(self):
        code = generate_code("APT")
        prefix, digits = code.split("-")
        assert prefix == "APT"
        assert len(digits) == 6 and digits.isdigit()


# ============================================================================
# Layering
# ============================================================================

@pytest.mark.parametrize("module", ["config", "errors", "crypto", "db", "models"])
def test_store_does_not_import_scheduling(module):
    source = (Path(db.__file__).parent / f"{module}.py").read_text(encoding="utf-8")
    imported = set()
    for node in ast.walk(ast.parse(source)):
        if isinstance(node, ast.ImportFrom) and node.module:
            imported.add(node.module.split(".")[0])
        elif isinstance(node, ast.Import):
            imported.update(alias.name.split(".")[0] for alias in node.names)
    assert "scheduling" not in imported
