"""
storage/db.py

SQLite document store for the MedAgenda core.

Schema
------
doctors         — doctor directory (public display data, stored in the clear)
patients        — primary patients (sealed document + clear lookup columns)
doctor_grants   — shared-care grants linking a primary patient to a doctor
family_members  — dependents of a primary patient (sealed document)
appointments    — appointments (sealed document + clear status/date columns)
audit_log       — append-only action log

Patient, family-member and appointment documents hold PHI and are stored
only inside ``encrypted_blob``, sealed by storage.crypto.  The clear columns
carry ids, dates and statuses so rows can be filtered without opening them.

There is deliberately no foreign key from family_members or appointments to
patients: deleting a patient leaves those rows pointing at a missing id.

Documents are plain dicts with camelCase keys (``Record.to_document()``).

Usage
-----
    from storage import db
    db.init_db()               # call once at startup
"""

import json
import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any

from storage.config import get_settings
from storage.errors import TransientIOError
from storage.crypto import open_document, seal_document

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"


# ---------------------------------------------------------------------------
# Connection
# ---------------------------------------------------------------------------


def _open() -> sqlite3.Connection:
    db_path = get_settings().db_path
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA foreign_keys=ON;")
    return conn


@contextmanager
def _connect() -> Iterator[sqlite3.Connection]:
    """
    Yield a connection inside a transaction, then close it.

    Commits when the block succeeds and rolls back when it raises.
    ``sqlite3.OperationalError`` (locked database, unreadable file, ...) is
    re-raised as :class:`TransientIOError`; the core never retries.
    """
    try:
        conn = _open()
    except sqlite3.OperationalError as exc:
        logger.error("Could not open database: %s", exc)
        raise TransientIOError(f"database unavailable: {exc}") from exc
    try:
        with conn:
            yield conn
    except sqlite3.OperationalError as exc:
        logger.error("Database operation failed: %s", exc)
        raise TransientIOError(f"database operation failed: {exc}") from exc
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# Schema initialisation
# ---------------------------------------------------------------------------

_DDL = """
CREATE TABLE IF NOT EXISTS doctors (
    id          TEXT    PRIMARY KEY,
    user_id     TEXT,
    verified    INTEGER NOT NULL DEFAULT 0,
    created_at  TEXT    NOT NULL,
    document    TEXT    NOT NULL               -- JSON, no PHI
);

CREATE TABLE IF NOT EXISTS patients (
    id               TEXT PRIMARY KEY,
    patient_code     TEXT NOT NULL,           -- PAT-xxxxxx
    user_id          TEXT,
    legacy_doctor_id TEXT,                    -- pre-grants single doctor
    created_at       TEXT NOT NULL,
    updated_at       TEXT NOT NULL,
    encrypted_blob   TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_patients_legacy_doctor ON patients(legacy_doctor_id);

CREATE TABLE IF NOT EXISTS doctor_grants (
    seq              INTEGER PRIMARY KEY AUTOINCREMENT,
    patient_id       TEXT    NOT NULL REFERENCES patients(id) ON DELETE CASCADE,
    doctor_id        TEXT    NOT NULL,
    doctor_user_id   TEXT,
    doctor_name      TEXT,
    doctor_specialty TEXT,
    is_primary       INTEGER NOT NULL DEFAULT 0,
    assigned_at      TEXT    NOT NULL,
    UNIQUE(patient_id, doctor_id)
);
CREATE INDEX IF NOT EXISTS idx_grants_doctor ON doctor_grants(doctor_id);

CREATE TABLE IF NOT EXISTS family_members (
    id                 TEXT PRIMARY KEY,
    family_member_code TEXT NOT NULL,         -- FAM-xxxxxx
    primary_patient_id TEXT NOT NULL,
    created_at         TEXT NOT NULL,
    updated_at         TEXT NOT NULL,
    encrypted_blob     TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_family_primary ON family_members(primary_patient_id);

CREATE TABLE IF NOT EXISTS appointments (
    id               TEXT PRIMARY KEY,
    appointment_code TEXT NOT NULL,           -- APT-xxxxxx
    patient_id       TEXT NOT NULL,
    doctor_id        TEXT NOT NULL,
    date             TEXT NOT NULL,           -- YYYY-MM-DD
    time             TEXT NOT NULL,           -- HH:MM
    status           TEXT NOT NULL
                         CHECK(status IN ('pending', 'scheduled', 'completed',
                                          'cancelled', 'rejected', 'rescheduled')),
    requested_at     TEXT,
    created_at       TEXT NOT NULL,
    updated_at       TEXT NOT NULL,
    encrypted_blob   TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_appointments_doctor ON appointments(doctor_id);
CREATE INDEX IF NOT EXISTS idx_appointments_patient ON appointments(patient_id);

CREATE TABLE IF NOT EXISTS audit_log (
    id        INTEGER PRIMARY KEY AUTOINCREMENT,
    actor_id  TEXT NOT NULL,
    action    TEXT NOT NULL,
    record_id TEXT,
    timestamp TEXT NOT NULL                  -- ISO-8601 UTC
);
"""


def init_db() -> None:
    """
    Create all tables if they do not already exist.

    Safe to call multiple times (idempotent).
    """
    with _connect() as conn:
        conn.executescript(_DDL)
    logger.info("Database initialised at %s", get_settings().db_path)


def _now() -> str:
    """Return the current UTC time as an ISO-8601 string."""
    return datetime.now(tz=timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Doctors
# ---------------------------------------------------------------------------


def insert_doctor(document: dict[str, Any], actor_id: str = SYSTEM_ACTOR) -> None:
    with _connect() as conn:
        conn.execute(
            """
            INSERT INTO doctors (id, user_id, verified, created_at, document)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                document["id"],
                document.get("userId"),
                int(bool(document.get("verified"))),
                document.get("createdAt") or _now(),
                json.dumps(document, ensure_ascii=False, default=str),
            ),
        )
        append_audit(actor_id, "doctor_registered", document["id"], _conn=conn)
    logger.info("Registered doctor id=%s", document["id"])


def update_doctor(document: dict[str, Any], actor_id: str = SYSTEM_ACTOR) -> bool:
    with _connect() as conn:
        cur = conn.execute(
            "UPDATE doctors SET user_id = ?, verified = ?, document = ? WHERE id = ?",
            (
                document.get("userId"),
                int(bool(document.get("verified"))),
                json.dumps(document, ensure_ascii=False, default=str),
                document["id"],
            ),
        )
        if cur.rowcount:
            append_audit(actor_id, "doctor_updated", document["id"], _conn=conn)
    return cur.rowcount > 0


def get_doctor(doctor_id: str) -> dict[str, Any] | None:
    with _connect() as conn:
        row = conn.execute("SELECT document FROM doctors WHERE id = ?", (doctor_id,)).fetchone()
    return json.loads(row["document"]) if row else None


def list_doctors(verified_only: bool = False) -> list[dict[str, Any]]:
    """Return doctor documents, newest first."""
    sql = "SELECT document FROM doctors"
    if verified_only:
        sql += " WHERE verified = 1"
    sql += " ORDER BY created_at DESC"
    with _connect() as conn:
        rows = conn.execute(sql).fetchall()
    return [json.loads(r["document"]) for r in rows]


# ---------------------------------------------------------------------------
# Patients
# ---------------------------------------------------------------------------


def _grant_row_to_dict(row: sqlite3.Row) -> dict[str, Any]:
    return {
        "doctorId": row["doctor_id"],
        "doctorUserId": row["doctor_user_id"],
        "doctorName": row["doctor_name"],
        "doctorSpecialty": row["doctor_specialty"],
        "isPrimary": bool(row["is_primary"]),
        "assignedAt": row["assigned_at"],
    }


def _grants_for(conn: sqlite3.Connection, patient_id: str) -> list[dict[str, Any]]:
    rows = conn.execute(
        "SELECT * FROM doctor_grants WHERE patient_id = ? ORDER BY seq",
        (patient_id,),
    ).fetchall()
    return [_grant_row_to_dict(r) for r in rows]


def _patient_from_row(conn: sqlite3.Connection, row: sqlite3.Row) -> dict[str, Any]:
    document = open_document(row["encrypted_blob"])
    document["doctors"] = _grants_for(conn, row["id"])
    return document


def insert_patient(
    document: dict[str, Any],
    grants: list[dict[str, Any]] | None = None,
    actor_id: str = SYSTEM_ACTOR,
) -> None:
    """
    Insert a primary patient and its initial doctor grants.

    The ``doctors`` key of *document* is ignored; grants live in their own
    table and are passed separately.
    """
    sealed = seal_document({k: v for k, v in document.items() if k != "doctors"})
    with _connect() as conn:
        conn.execute(
            """
            INSERT INTO patients
                (id, patient_code, user_id, legacy_doctor_id,
                 created_at, updated_at, encrypted_blob)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                document["id"],
                document["patientId"],
                document.get("userId"),
                document.get("doctorId"),
                document["createdAt"],
                document["updatedAt"],
                sealed,
            ),
        )
        for grant in grants or []:
            _insert_grant(conn, document["id"], grant)
        append_audit(actor_id, "patient_created", document["id"], _conn=conn)
    logger.info("Created patient id=%s code=%s", document["id"], document["patientId"])


def get_patient(patient_id: str) -> dict[str, Any] | None:
    """Return the patient document with its ``doctors`` grants, or ``None``."""
    with _connect() as conn:
        row = conn.execute("SELECT * FROM patients WHERE id = ?", (patient_id,)).fetchone()
        if row is None:
            return None
        return _patient_from_row(conn, row)


def list_patients() -> list[dict[str, Any]]:
    """Return every patient document, newest first (full collection scan)."""
    with _connect() as conn:
        rows = conn.execute(
            "SELECT * FROM patients ORDER BY created_at DESC, rowid DESC"
        ).fetchall()
        return [_patient_from_row(conn, r) for r in rows]


def list_patients_for_doctor(doctor_id: str) -> list[dict[str, Any]]:
    """
    Return patients a doctor holds a grant on, or is the legacy doctor of.

    Newest first; each patient appears once.
    """
    with _connect() as conn:
        rows = conn.execute(
            """
            SELECT p.* FROM patients p
            WHERE p.legacy_doctor_id = ?
               OR EXISTS (SELECT 1 FROM doctor_grants g
                          WHERE g.patient_id = p.id AND g.doctor_id = ?)
            ORDER BY p.created_at DESC, p.rowid DESC
            """,
            (doctor_id, doctor_id),
        ).fetchall()
        return [_patient_from_row(conn, r) for r in rows]


def update_patient(document: dict[str, Any], actor_id: str = SYSTEM_ACTOR) -> bool:
    """Overwrite a patient document (grants untouched).  Returns ``False`` if missing."""
    sealed = seal_document({k: v for k, v in document.items() if k != "doctors"})
    with _connect() as conn:
        cur = conn.execute(
            """
            UPDATE patients
            SET user_id = ?, legacy_doctor_id = ?, updated_at = ?, encrypted_blob = ?
            WHERE id = ?
            """,
            (
                document.get("userId"),
                document.get("doctorId"),
                document["updatedAt"],
                sealed,
                document["id"],
            ),
        )
        if cur.rowcount:
            append_audit(actor_id, "patient_updated", document["id"], _conn=conn)
    return cur.rowcount > 0


def delete_patient(patient_id: str, actor_id: str = SYSTEM_ACTOR) -> bool:
    """
    Hard-delete a patient and its grants.

    Family members and appointments are left in place.
    """
    with _connect() as conn:
        cur = conn.execute("DELETE FROM patients WHERE id = ?", (patient_id,))
        if cur.rowcount:
            append_audit(actor_id, "patient_deleted", patient_id, _conn=conn)
    if cur.rowcount:
        logger.info("Deleted patient id=%s", patient_id)
    return cur.rowcount > 0


# ---------------------------------------------------------------------------
# Doctor grants
# ---------------------------------------------------------------------------


def _insert_grant(conn: sqlite3.Connection, patient_id: str, grant: dict[str, Any]) -> bool:
    cur = conn.execute(
        """
        INSERT OR IGNORE INTO doctor_grants
            (patient_id, doctor_id, doctor_user_id, doctor_name,
             doctor_specialty, is_primary, assigned_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (
            patient_id,
            grant["doctorId"],
            grant.get("doctorUserId"),
            grant.get("doctorName"),
            grant.get("doctorSpecialty"),
            int(bool(grant.get("isPrimary"))),
            grant.get("assignedAt") or _now(),
        ),
    )
    return cur.rowcount > 0


def insert_grant(patient_id: str, grant: dict[str, Any], actor_id: str = SYSTEM_ACTOR) -> bool:
    """
    Grant a doctor access to a patient.

    Returns:
        ``True`` if the grant was added, ``False`` if the doctor already had one.
    """
    with _connect() as conn:
        added = _insert_grant(conn, patient_id, grant)
        if added:
            append_audit(actor_id, f"grant_added:{grant['doctorId']}", patient_id, _conn=conn)
    if added:
        logger.info("Granted doctor %s access to patient %s", grant["doctorId"], patient_id)
    return added


def delete_grant(patient_id: str, doctor_id: str, actor_id: str = SYSTEM_ACTOR) -> bool:
    """
    Remove a doctor's grant.  If it was the primary grant, the oldest remaining
    grant is promoted.
    """
    with _connect() as conn:
        row = conn.execute(
            "SELECT is_primary FROM doctor_grants WHERE patient_id = ? AND doctor_id = ?",
            (patient_id, doctor_id),
        ).fetchone()
        if row is None:
            return False
        conn.execute(
            "DELETE FROM doctor_grants WHERE patient_id = ? AND doctor_id = ?",
            (patient_id, doctor_id),
        )
        if row["is_primary"]:
            conn.execute(
                """
                UPDATE doctor_grants SET is_primary = 1
                WHERE seq = (SELECT MIN(seq) FROM doctor_grants WHERE patient_id = ?)
                """,
                (patient_id,),
            )
        append_audit(actor_id, f"grant_revoked:{doctor_id}", patient_id, _conn=conn)
    logger.info("Revoked doctor %s access to patient %s", doctor_id, patient_id)
    return True


def get_grants(patient_id: str) -> list[dict[str, Any]]:
    with _connect() as conn:
        return _grants_for(conn, patient_id)


# ---------------------------------------------------------------------------
# Family members
# ---------------------------------------------------------------------------


def insert_family_member(document: dict[str, Any], actor_id: str = SYSTEM_ACTOR) -> None:
    with _connect() as conn:
        conn.execute(
            """
            INSERT INTO family_members
                (id, family_member_code, primary_patient_id,
                 created_at, updated_at, encrypted_blob)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                document["id"],
                document["familyMemberId"],
                document["primaryPatientId"],
                document["createdAt"],
                document["updatedAt"],
                seal_document(document),
            ),
        )
        append_audit(actor_id, "family_member_created", document["id"], _conn=conn)
    logger.info(
        "Created family member id=%s for primary patient %s",
        document["id"], document["primaryPatientId"],
    )


def get_family_member(member_id: str) -> dict[str, Any] | None:
    with _connect() as conn:
        row = conn.execute(
            "SELECT encrypted_blob FROM family_members WHERE id = ?", (member_id,)
        ).fetchone()
    return open_document(row["encrypted_blob"]) if row else None


def list_family_members(primary_patient_id: str) -> list[dict[str, Any]]:
    """Return the family members of a primary patient, newest first."""
    with _connect() as conn:
        rows = conn.execute(
            """
            SELECT encrypted_blob FROM family_members
            WHERE primary_patient_id = ?
            ORDER BY created_at DESC, rowid DESC
            """,
            (primary_patient_id,),
        ).fetchall()
    return [open_document(r["encrypted_blob"]) for r in rows]


def update_family_member(document: dict[str, Any], actor_id: str = SYSTEM_ACTOR) -> bool:
    # primary_patient_id is not rewritten: ownership never moves.
    with _connect() as conn:
        cur = conn.execute(
            "UPDATE family_members SET updated_at = ?, encrypted_blob = ? WHERE id = ?",
            (document["updatedAt"], seal_document(document), document["id"]),
        )
        if cur.rowcount:
            append_audit(actor_id, "family_member_updated", document["id"], _conn=conn)
    return cur.rowcount > 0


def delete_family_member(member_id: str, actor_id: str = SYSTEM_ACTOR) -> bool:
    with _connect() as conn:
        cur = conn.execute("DELETE FROM family_members WHERE id = ?", (member_id,))
        if cur.rowcount:
            append_audit(actor_id, "family_member_deleted", member_id, _conn=conn)
    return cur.rowcount > 0


# ---------------------------------------------------------------------------
# Appointments
# ---------------------------------------------------------------------------


def insert_appointment(document: dict[str, Any], actor_id: str = SYSTEM_ACTOR) -> None:
    with _connect() as conn:
        conn.execute(
            """
            INSERT INTO appointments
                (id, appointment_code, patient_id, doctor_id, date, time, status,
                 requested_at, created_at, updated_at, encrypted_blob)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                document["id"],
                document["appointmentId"],
                document["patientId"],
                document["doctorId"],
                document["date"],
                document["time"],
                document["status"],
                document.get("requestedAt"),
                document["createdAt"],
                document["updatedAt"],
                seal_document(document),
            ),
        )
        append_audit(actor_id, f"appointment_created:{document['status']}", document["id"], _conn=conn)
    logger.info(
        "Created appointment id=%s doctor=%s status=%s",
        document["id"], document["doctorId"], document["status"],
    )


def get_appointment(appointment_id: str) -> dict[str, Any] | None:
    with _connect() as conn:
        row = conn.execute(
            "SELECT encrypted_blob FROM appointments WHERE id = ?", (appointment_id,)
        ).fetchone()
    return open_document(row["encrypted_blob"]) if row else None


def _list_appointments(column: str, value: str) -> list[dict[str, Any]]:
    with _connect() as conn:
        rows = conn.execute(
            f"SELECT encrypted_blob FROM appointments WHERE {column} = ? ORDER BY rowid",
            (value,),
        ).fetchall()
    return [open_document(r["encrypted_blob"]) for r in rows]


def list_appointments_for_doctor(doctor_id: str) -> list[dict[str, Any]]:
    """Every appointment of a doctor, in insertion order."""
    return _list_appointments("doctor_id", doctor_id)


def list_appointments_for_patient(patient_id: str) -> list[dict[str, Any]]:
    """Every appointment booked for a patient or family member, in insertion order."""
    return _list_appointments("patient_id", patient_id)


def booked_times(doctor_id: str, day: str, statuses: tuple[str, ...]) -> set[str]:
    """Return the ``HH:MM`` times a doctor has taken on *day* in any of *statuses*."""
    placeholders = ", ".join("?" for _ in statuses)
    with _connect() as conn:
        rows = conn.execute(
            f"""
            SELECT time FROM appointments
            WHERE doctor_id = ? AND date = ? AND status IN ({placeholders})
            """,
            (doctor_id, day, *statuses),
        ).fetchall()
    return {r["time"] for r in rows}


def update_appointment(
    document: dict[str, Any],
    *,
    expected_status: str | None = None,
    action: str = "appointment_updated",
    actor_id: str = SYSTEM_ACTOR,
) -> bool:
    """
    Overwrite an appointment document.

    When *expected_status* is given the write only happens if the stored
    status still equals it (compare-and-swap), so two concurrent transitions
    cannot both succeed.

    Returns:
        ``True`` if a row was written.
    """
    sql = """
        UPDATE appointments
        SET date = ?, time = ?, status = ?, updated_at = ?, encrypted_blob = ?
        WHERE id = ?
    """
    params: list[Any] = [
        document["date"],
        document["time"],
        document["status"],
        document["updatedAt"],
        seal_document(document),
        document["id"],
    ]
    if expected_status is not None:
        sql += " AND status = ?"
        params.append(expected_status)

    with _connect() as conn:
        cur = conn.execute(sql, params)
        if cur.rowcount:
            append_audit(actor_id, action, document["id"], _conn=conn)
    return cur.rowcount > 0


def delete_appointment(appointment_id: str, actor_id: str = SYSTEM_ACTOR) -> bool:
    with _connect() as conn:
        cur = conn.execute("DELETE FROM appointments WHERE id = ?", (appointment_id,))
        if cur.rowcount:
            append_audit(actor_id, "appointment_deleted", appointment_id, _conn=conn)
    return cur.rowcount > 0


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------


def append_audit(
    actor_id: str,
    action: str,
    record_id: str | None = None,
    *,
    _conn: sqlite3.Connection | None = None,
) -> None:
    """
    Append an entry to the append-only audit log.

    Can be called with an existing connection (*_conn*) to participate in the
    caller's transaction, or without one to open its own connection.

    Args:
        actor_id:  User id of the acting principal, or ``"system"``.
        action:    Short snake_case label, e.g. ``'appointment_approved'``.
        record_id: Affected record, if any.
    """
    sql = """
        INSERT INTO audit_log (actor_id, action, record_id, timestamp)
        VALUES (?, ?, ?, ?)
    """
    params = (actor_id, action, record_id, _now())

    if _conn is not None:
        _conn.execute(sql, params)
    else:
        with _connect() as conn:
            conn.execute(sql, params)

    logger.debug("Audit: actor=%s action=%s record=%s", actor_id, action, record_id)


def list_audit(record_id: str | None = None) -> list[dict[str, Any]]:
    """Return audit rows (optionally for one record), oldest first."""
    sql = "SELECT * FROM audit_log"
    params: tuple[Any, ...] = ()
    if record_id is not None:
        sql += " WHERE record_id = ?"
        params = (record_id,)
    sql += " ORDER BY id"
    with _connect() as conn:
        rows = conn.execute(sql, params).fetchall()
    return [dict(r) for r in rows]
