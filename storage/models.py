"""
storage/models.py

Pydantic v2 data models for the MedAgenda core.

These models describe the records flowing between the business logic
(scheduling/*) and the document store (storage/db.py).  They are NOT ORM
models; persistence is handled entirely by db.py.

Python attributes are snake_case; the stored/wire representation is
camelCase (``patientId``, ``requestedAt``...) via the alias generator, and
both spellings are accepted on input.
"""

from __future__ import annotations

import re
from datetime import date, datetime
from enum import Enum
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


_HHMM = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class AppointmentStatus(str, Enum):
    """Lifecycle states of an appointment."""
    pending = "pending"
    scheduled = "scheduled"
    completed = "completed"
    cancelled = "cancelled"
    rejected = "rejected"
    rescheduled = "rescheduled"


class AppointmentType(str, Enum):
    consultation = "consultation"
    followup = "followup"
    checkup = "checkup"
    emergency = "emergency"
    procedure = "procedure"
    specialist = "specialist"


class Urgency(str, Enum):
    """Patient-declared urgency of a requested appointment."""
    low = "low"
    normal = "normal"
    high = "high"
    urgent = "urgent"


class ActorRole(str, Enum):
    """Who is acting: used for ``cancelledBy`` and for sessions."""
    patient = "patient"
    doctor = "doctor"
    admin = "admin"


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------


class Record(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        use_enum_values=True,
        extra="ignore",
    )

    def to_document(self) -> dict[str, Any]:
        """Serialise with camelCase keys, as stored."""
        return self.model_dump(mode="json", by_alias=True)


def check_hhmm(value: str) -> str:
    value = (value or "").strip()
    if not _HHMM.match(value):
        raise ValueError("time must be HH:MM (24h)")
    return value


# ---------------------------------------------------------------------------
# Doctors and grants
# ---------------------------------------------------------------------------


class Doctor(Record):
    """A doctor as seen by the core: an authorization principal plus display data."""
    id: str
    user_id: str | None = None
    nombre: str
    especialidad: str | None = None
    consultation_fee: float | None = None
    verified: bool = False
    gender: str | None = None
    created_at: datetime | None = None


class DoctorGrant(Record):
    """One entry of a primary patient's ``doctors`` set."""
    doctor_id: str
    doctor_user_id: str | None = None
    doctor_name: str | None = None
    doctor_specialty: str | None = None
    is_primary: bool = False
    assigned_at: datetime | None = None


# ---------------------------------------------------------------------------
# Patients
# ---------------------------------------------------------------------------


class PersonDetails(Record):
    """Demographic, medical, insurance and emergency-contact fields."""
    name: str
    date_of_birth: date | None = None
    gender: str | None = None
    phone: str | None = None
    email: str | None = None
    address: str | None = None

    allergies: str | None = None
    current_medications: str | None = None
    blood_type: str | None = None
    weight: float | None = None
    height: float | None = None

    insurance_provider: str | None = Field(
        default=None,
        validation_alias=AliasChoices("insuranceProvider", "insurance_provider", "obraSocial"),
    )
    insurance_number: str | None = None

    emergency_contact_name: str | None = None
    emergency_contact_phone: str | None = None
    emergency_contact_relationship: str | None = None


class MedicalNote(Record):
    id: str
    date: datetime
    text: str = ""
    author: str | None = None
    extra: dict[str, Any] = Field(default_factory=dict)


class Patient(PersonDetails):
    """A primary patient: has (or may get) its own login identity."""
    id: str
    patient_id: str
    user_id: str | None = None
    medical_history: list[MedicalNote] = Field(default_factory=list)
    doctors: list[DoctorGrant] = Field(default_factory=list)

    # Legacy single-doctor fields, kept for backward compatibility.
    doctor_id: str | None = None
    doctor_user_id: str | None = None
    doctor_name: str | None = None

    created_at: datetime
    updated_at: datetime


class FamilyMember(PersonDetails):
    """A dependent record owned by a primary patient; no login, no own grants."""
    id: str
    family_member_id: str
    primary_patient_id: str
    relationship: str
    is_active: bool = True
    created_at: datetime
    updated_at: datetime


class PatientUnderCare(Record):
    """One row of the "patients under care" selector list."""
    id: str
    is_primary: bool
    relationship: str
    name: str
    email: str | None = None
    phone: str | None = None
    date_of_birth: date | None = None
    gender: str | None = None
    primary_patient_id: str


class PatientInput(PersonDetails):
    """Fields accepted when creating a primary patient."""
    user_id: str | None = None


class FamilyMemberInput(Record):
    """
    Raw family-member form data.

    Everything is optional here; ``scheduling.family.validate_family_member_data``
    reports missing fields as user-facing errors.
    """
    primary_patient_id: str | None = None
    name: str | None = None
    relationship: str | None = None
    date_of_birth: date | None = None
    gender: str | None = None
    phone: str | None = None
    email: str | None = None
    address: str | None = None
    allergies: str | None = None
    current_medications: str | None = None
    blood_type: str | None = None
    weight: float | None = None
    height: float | None = None
    insurance_provider: str | None = Field(
        default=None,
        validation_alias=AliasChoices("insuranceProvider", "insurance_provider", "obraSocial"),
    )
    insurance_number: str | None = None
    emergency_contact_name: str | None = None
    emergency_contact_phone: str | None = None
    emergency_contact_relationship: str | None = None


# ---------------------------------------------------------------------------
# Appointments
# ---------------------------------------------------------------------------


class Appointment(Record):
    """A stored appointment, with a denormalised patient/doctor snapshot."""
    id: str
    appointment_id: str

    patient_id: str
    patient_user_id: str | None = None
    primary_patient_id: str | None = None
    patient_name: str | None = None
    patient_email: str | None = None
    patient_phone: str | None = None

    doctor_id: str
    doctor_name: str | None = None
    doctor_specialty: str | None = None
    doctor_gender: str | None = None

    date: date
    time: str
    type: AppointmentType = AppointmentType.consultation
    reason: str
    notes: str | None = None
    urgency: Urgency | None = None
    status: AppointmentStatus
    duration: int = 30

    created_at: datetime
    updated_at: datetime
    requested_at: datetime | None = None
    approved_at: datetime | None = None
    doctor_notes: str | None = None
    rejected_at: datetime | None = None
    rejection_reason: str | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None
    cancelled_by: ActorRole | None = None
    cancellation_reason: str | None = None
    rescheduled_at: datetime | None = None
    reschedule_reason: str | None = None

    @field_validator("time")
    @classmethod
    def _valid_time(cls, value: str) -> str:
        return check_hhmm(value)


class AppointmentCreateInput(Record):
    """Doctor-initiated booking: no urgency, no approval step."""
    patient_id: str
    doctor_id: str
    date: date
    time: str
    reason: str = ""
    type: AppointmentType = AppointmentType.consultation
    notes: str | None = None
    duration: int | None = Field(default=None, gt=0)
    patient_name: str | None = None
    patient_email: str | None = None
    patient_phone: str | None = None
    patient_user_id: str | None = None

    @field_validator("time")
    @classmethod
    def _valid_time(cls, value: str) -> str:
        return check_hhmm(value)


class AppointmentRequestInput(AppointmentCreateInput):
    """Patient-initiated request: enters ``pending`` and waits for the doctor."""
    urgency: Urgency = Urgency.normal


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------


class AuditEntry(Record):
    """One row of the append-only audit log."""
    id: int
    actor_id: str
    action: str
    record_id: str | None = None
    timestamp: datetime
