"""
scheduling/access_graph.py

Who may act on which patient record.

Responsibilities
----------------
- Primary patient records (create / read / update / delete).
- Doctor grants: the ``doctors`` set of a primary patient.  Several doctors may
  hold non-exclusive access to the same patient ("shared patient"); the first
  grant is flagged primary and mirrored into the legacy ``doctorId`` fields.
- Access resolution.  A family member has no grants of its own: every check
  goes through its ``primaryPatientId`` to the primary patient's grants, so
  granting or revoking a doctor on the primary applies to the whole family.
- Patient search, both within a doctor's patients and across the whole
  collection (used to find a patient before assigning them).

Searches fetch the full candidate set and filter in memory.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any
from uuid import uuid4

from pydantic import BaseModel

from storage import db as _db
from storage.models import Doctor, DoctorGrant, FamilyMember, MedicalNote, Patient, PatientInput
from storage.errors import NotFoundError, ValidationError
from scheduling import directory
from scheduling.time_utils import generate_code, now_utc
from scheduling.validation import is_blank, is_valid_email, normalize_keys, parse_model

logger = logging.getLogger(__name__)

# Keys that can only change through dedicated operations.
_PROTECTED_PATIENT_FIELDS = {
    "id", "patient_id", "doctors", "created_at", "medical_history",
    # Legacy mirror of the primary grant, maintained by assign and revoke.
    "doctor_id", "doctor_user_id", "doctor_name",
}


class AssignmentResult(BaseModel):
    """
    Outcome of :func:`assign_patient_to_doctor`.

    Assigning a doctor that already holds a grant is not an error: the call
    returns ``assigned=False, already_assigned=True`` and writes nothing.
    """
    assigned: bool
    already_assigned: bool = False
    message: str
    patient: Patient


# ---------------------------------------------------------------------------
# Primary patients
# ---------------------------------------------------------------------------


def _check_patient_fields(patient: Patient) -> None:
    errors: dict[str, str] = {}
    if is_blank(patient.name):
        errors["name"] = "El nombre es requerido"
    if patient.email and not is_valid_email(patient.email):
        errors["email"] = "El email no es válido"
    if errors:
        raise ValidationError(f"invalid patient: {errors}", errors)


def create_patient(
    data: Mapping[str, Any] | PatientInput,
    doctor: Doctor | None = None,
    actor_id: str = _db.SYSTEM_ACTOR,
) -> Patient:
    """
    Create a primary patient.

    Args:
        data:     Patient fields (camelCase or snake_case keys).
        doctor:   When a doctor registers the patient, that doctor becomes the
                  first (primary) grant and fills the legacy doctor fields.
        actor_id: Principal recorded in the audit log.

    Returns:
        The stored ``Patient``.

    Raises:
        ValidationError: Missing name or malformed email.
    """
    payload = parse_model(PatientInput, data, "patient")
    now = now_utc()
    patient = Patient(
        id=uuid4().hex,
        patient_id=generate_code("PAT"),
        created_at=now,
        updated_at=now,
        **payload.model_dump(),
    )
    _check_patient_fields(patient)

    if doctor is not None:
        grant = DoctorGrant(
            doctor_id=doctor.id,
            doctor_user_id=doctor.user_id,
            doctor_name=doctor.nombre,
            doctor_specialty=doctor.especialidad,
            is_primary=True,
            assigned_at=now,
        )
        patient = patient.model_copy(update={
            "doctors": [grant],
            "doctor_id": doctor.id,
            "doctor_user_id": doctor.user_id,
            "doctor_name": doctor.nombre,
        })

    _db.insert_patient(
        patient.to_document(),
        [g.to_document() for g in patient.doctors],
        actor_id=actor_id,
    )
    return patient


def get_patient_by_id(patient_id: str) -> Patient:
    raw = _db.get_patient(patient_id)
    if raw is None:
        raise NotFoundError("patient", patient_id, user_message="Paciente no encontrado")
    return Patient.model_validate(raw)


def update_patient(
    patient_id: str,
    data: Mapping[str, Any],
    actor_id: str = _db.SYSTEM_ACTOR,
) -> Patient:
    """
    Merge *data* into a patient and store it.

    Identity, grants (and their legacy doctor mirror) and the medical history
    are not writable here; use
    :func:`assign_patient_to_doctor`, :func:`revoke_doctor_access` and
    :func:`add_medical_note`.
    """
    current = get_patient_by_id(patient_id)
    updates = {
        k: v for k, v in normalize_keys(Patient, data).items()
        if k not in _PROTECTED_PATIENT_FIELDS
    }
    merged = parse_model(
        Patient,
        {**current.model_dump(), **updates, "updated_at": now_utc()},
        "patient",
    )
    _check_patient_fields(merged)
    _db.update_patient(merged.to_document(), actor_id=actor_id)
    return merged


def delete_patient(patient_id: str, actor_id: str = _db.SYSTEM_ACTOR) -> None:
    """
    Hard-delete a primary patient and its grants.

    Family members and appointments are NOT removed; they keep pointing at
    the deleted id.  The number of such records is logged.
    """
    if not _db.delete_patient(patient_id, actor_id=actor_id):
        raise NotFoundError("patient", patient_id, user_message="Paciente no encontrado")

    orphans = len(_db.list_family_members(patient_id))
    appointments = len(_db.list_appointments_for_patient(patient_id))
    if orphans or appointments:
        logger.warning(
            "Patient %s deleted; %d family member(s) and %d appointment(s) still reference it",
            patient_id, orphans, appointments,
        )


def add_medical_note(
    patient_id: str,
    text: str,
    author: str | None = None,
    extra: dict[str, Any] | None = None,
    actor_id: str = _db.SYSTEM_ACTOR,
) -> MedicalNote:
    """Prepend a timestamped note to the patient's medical history."""
    if is_blank(text):
        raise ValidationError("medical note is empty", {"text": "La nota no puede estar vacía"})
    patient = get_patient_by_id(patient_id)
    now = now_utc()
    note = MedicalNote(id=uuid4().hex, date=now, text=text.strip(), author=author, extra=extra or {})
    updated = patient.model_copy(update={
        "medical_history": [note, *patient.medical_history],
        "updated_at": now,
    })
    _db.update_patient(updated.to_document(), actor_id=actor_id)
    return note


# ---------------------------------------------------------------------------
# Doctor grants
# ---------------------------------------------------------------------------


def _grant_source(doctor_id: str, doctor_data: Doctor | Mapping[str, Any] | None) -> Doctor:
    if doctor_data is None:
        return directory.get_doctor_by_id(doctor_id)
    if isinstance(doctor_data, Doctor):
        return doctor_data
    return Doctor.model_validate({"nombre": "", **doctor_data, "id": doctor_id})


def assign_patient_to_doctor(
    patient_id: str,
    doctor_id: str,
    doctor_data: Doctor | Mapping[str, Any] | None = None,
    actor_id: str = _db.SYSTEM_ACTOR,
) -> AssignmentResult:
    """
    Give *doctor_id* shared access to a primary patient.

    Args:
        patient_id:  Primary patient id (family members inherit, they are
                     never assigned directly).
        doctor_id:   Doctor receiving access.
        doctor_data: Display data for the grant; looked up in the directory
                     when omitted.

    Returns:
        ``AssignmentResult``.  Callers must check ``assigned``: a doctor that
        already has access yields ``already_assigned=True``.

    Raises:
        NotFoundError: Unknown patient, or unknown doctor when *doctor_data*
                       is omitted.
    """
    patient = get_patient_by_id(patient_id)
    if any(g.doctor_id == doctor_id for g in patient.doctors):
        logger.info("Doctor %s already has access to patient %s", doctor_id, patient_id)
        return AssignmentResult(
            assigned=False,
            already_assigned=True,
            message="Este doctor ya tiene acceso a este paciente",
            patient=patient,
        )

    doctor = _grant_source(doctor_id, doctor_data)
    first = not patient.doctors
    if first and patient.doctor_id and patient.doctor_id != doctor_id:
        # Legacy single-doctor record: carry the old doctor over as primary.
        _db.insert_grant(
            patient_id,
            DoctorGrant(
                doctor_id=patient.doctor_id,
                doctor_user_id=patient.doctor_user_id,
                doctor_name=patient.doctor_name,
                is_primary=True,
                assigned_at=patient.created_at,
            ).to_document(),
            actor_id=actor_id,
        )
        first = False
    grant = DoctorGrant(
        doctor_id=doctor_id,
        doctor_user_id=doctor.user_id,
        doctor_name=doctor.nombre or None,
        doctor_specialty=doctor.especialidad,
        is_primary=first,
        assigned_at=now_utc(),
    )
    if not _db.insert_grant(patient_id, grant.to_document(), actor_id=actor_id):
        # Another writer added the same grant between our read and write.
        return AssignmentResult(
            assigned=False,
            already_assigned=True,
            message="Este doctor ya tiene acceso a este paciente",
            patient=get_patient_by_id(patient_id),
        )

    if first:
        _db.update_patient(
            patient.model_copy(update={
                "doctor_id": doctor_id,
                "doctor_user_id": grant.doctor_user_id,
                "doctor_name": grant.doctor_name,
                "updated_at": now_utc(),
            }).to_document(),
            actor_id=actor_id,
        )

    return AssignmentResult(
        assigned=True,
        message="Paciente asignado exitosamente",
        patient=get_patient_by_id(patient_id),
    )


def revoke_doctor_access(
    patient_id: str,
    doctor_id: str,
    actor_id: str = _db.SYSTEM_ACTOR,
) -> bool:
    """
    Remove a doctor's grant on a primary patient (and so on its family).

    Returns:
        ``False`` if the doctor held no grant.
    """
    patient = get_patient_by_id(patient_id)
    removed = _db.delete_grant(patient_id, doctor_id, actor_id=actor_id)

    if patient.doctor_id == doctor_id:
        # Keep the legacy mirror pointing at whoever is primary now.
        refreshed = get_patient_by_id(patient_id)
        primary = next((g for g in refreshed.doctors if g.is_primary), None)
        _db.update_patient(
            refreshed.model_copy(update={
                "doctor_id": primary.doctor_id if primary else None,
                "doctor_user_id": primary.doctor_user_id if primary else None,
                "doctor_name": primary.doctor_name if primary else None,
                "updated_at": now_utc(),
            }).to_document(),
            actor_id=actor_id,
        )
        removed = True
    return removed


# ---------------------------------------------------------------------------
# Access resolution
# ---------------------------------------------------------------------------


def get_care_record(record_id: str) -> Patient | FamilyMember:
    """Resolve an id to a primary patient or, failing that, a family member."""
    raw = _db.get_patient(record_id)
    if raw is not None:
        return Patient.model_validate(raw)
    raw = _db.get_family_member(record_id)
    if raw is not None:
        return FamilyMember.model_validate(raw)
    raise NotFoundError("patient", record_id, user_message="Paciente no encontrado")


def primary_patient_id_of(record: Patient | FamilyMember) -> str:
    return record.primary_patient_id if isinstance(record, FamilyMember) else record.id


def resolve_access(record: Patient | FamilyMember) -> list[DoctorGrant]:
    """
    Return the doctor grants that apply to *record*.

    Family members resolve through ``primaryPatientId``; a family member whose
    primary patient no longer exists has no access at all.  A primary patient
    predating the grants table falls back to its legacy ``doctorId``.
    """
    if isinstance(record, FamilyMember):
        raw = _db.get_patient(record.primary_patient_id)
        if raw is None:
            logger.warning(
                "Family member %s references missing primary patient %s",
                record.id, record.primary_patient_id,
            )
            return []
        record = Patient.model_validate(raw)

    if record.doctors:
        return list(record.doctors)
    if record.doctor_id:
        return [DoctorGrant(
            doctor_id=record.doctor_id,
            doctor_user_id=record.doctor_user_id,
            doctor_name=record.doctor_name,
            is_primary=True,
        )]
    return []


def get_doctors_for_patient(record_id: str) -> list[DoctorGrant]:
    return resolve_access(get_care_record(record_id))


def can_doctor_access(doctor_id: str, record_id: str) -> bool:
    """True if *doctor_id* may act on the patient or family member *record_id*."""
    return any(g.doctor_id == doctor_id for g in get_doctors_for_patient(record_id))


def get_patients_by_doctor_access(doctor_id: str) -> list[Patient]:
    """Primary patients the doctor holds a grant on (or is the legacy doctor of)."""
    return [Patient.model_validate(p) for p in _db.list_patients_for_doctor(doctor_id)]


def get_records_accessible_by_doctor(doctor_id: str) -> list[Patient | FamilyMember]:
    """Each accessible primary patient followed by its family members."""
    records: list[Patient | FamilyMember] = []
    for patient in get_patients_by_doctor_access(doctor_id):
        records.append(patient)
        records.extend(
            FamilyMember.model_validate(m) for m in _db.list_family_members(patient.id)
        )
    return records


# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------


def _matches(patient: Patient, term: str) -> bool:
    needle = term.lower()
    haystack = (patient.name, patient.email, patient.phone, patient.patient_id)
    return any(value and needle in value.lower() for value in haystack)


def search_patients(doctor_id: str, term: str | None) -> list[Patient]:
    """Search among the doctor's own patients."""
    patients = get_patients_by_doctor_access(doctor_id)
    if not term or not term.strip():
        return patients
    return [p for p in patients if _matches(p, term.strip())]


def search_all_patients(term: str | None) -> list[Patient]:
    """
    Case-insensitive search over every patient, whoever their doctors are.

    Matches name, email, phone and the ``PAT-`` code.  This is how a doctor
    finds a patient before :func:`assign_patient_to_doctor`, so results are
    deliberately not limited to the caller's grants.
    """
    patients = [Patient.model_validate(p) for p in _db.list_patients()]
    if not term or not term.strip():
        return patients
    return [p for p in patients if _matches(p, term.strip())]
