"""
scheduling/session.py

Per-login context: who is acting, and (for patients) which of the patients
under their care is currently selected.

A ``CareSession`` is created at login, filled with ``initialize`` or ``load``
and torn down with ``clear`` at logout.  It is passed explicitly to the
lifecycle operations, which use ``check_booking`` / ``check_appointment`` to
authorize the caller against the access graph.
"""

from __future__ import annotations

import logging
from typing import Any

from storage.models import ActorRole, Appointment, FamilyMember, Patient, PatientUnderCare
from storage.errors import AuthorizationError
from scheduling import access_graph, family

logger = logging.getLogger(__name__)


class CareSession:
    """
    Session-scoped replacement for a global "active patient" store.

    Args:
        user_id:   Authenticated principal id (recorded in the audit log).
        role:      ``patient``, ``doctor`` or ``admin``.
        doctor_id: Doctor record id, required for doctor sessions.
    """

    def __init__(self, user_id: str, role: ActorRole | str, doctor_id: str | None = None):
        self.user_id = user_id
        self.role = ActorRole(role)
        self.doctor_id = doctor_id
        if self.role is ActorRole.doctor and not doctor_id:
            raise ValueError("doctor sessions need a doctor_id")
        self.primary_patient: Patient | None = None
        self.family_members: list[FamilyMember] = []
        self.active_patient_id: str | None = None

    def __repr__(self) -> str:
        return f"CareSession(user_id={self.user_id!r}, role={self.role.value!r}, active={self.active_patient_id!r})"

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self, primary: Patient, family_members: list[FamilyMember] | None = None) -> None:
        """Populate the session on login; the primary patient starts active."""
        self.primary_patient = primary
        self.family_members = list(family_members or [])
        self.active_patient_id = primary.id

    def load(self, primary_patient_id: str) -> None:
        """``initialize`` from the store."""
        self.initialize(
            access_graph.get_patient_by_id(primary_patient_id),
            family.get_family_members_by_primary_patient_id(primary_patient_id),
        )

    def clear(self) -> None:
        self.primary_patient = None
        self.family_members = []
        self.active_patient_id = None

    # ------------------------------------------------------------------
    # Patients under care
    # ------------------------------------------------------------------

    @property
    def patients_under_care(self) -> list[PatientUnderCare]:
        if self.primary_patient is None:
            return []
        return family.under_care_rows(self.primary_patient, self.family_members)

    def manages_patient(self, record_id: str) -> bool:
        """True if *record_id* is the primary patient or one of its family members."""
        return any(p.id == record_id for p in self.patients_under_care)

    def switch_to_patient(self, record_id: str) -> PatientUnderCare:
        """
        Make *record_id* the acting patient.

        Raises:
            AuthorizationError: *record_id* is not under this session's care.
        """
        for row in self.patients_under_care:
            if row.id == record_id:
                self.active_patient_id = record_id
                return row
        logger.warning("User %s tried to act as patient %s", self.user_id, record_id)
        raise AuthorizationError(
            f"patient {record_id} is not under the care of {self.user_id}",
            user_message="Paciente no encontrado",
        )

    def switch_to_primary(self) -> None:
        self.active_patient_id = self.primary_patient.id if self.primary_patient else None

    def add_family_member(self, member: FamilyMember) -> None:
        self.family_members.insert(0, member)

    def update_family_member(self, member: FamilyMember) -> None:
        self.family_members = [member if m.id == member.id else m for m in self.family_members]

    def remove_family_member(self, member_id: str) -> None:
        self.family_members = [m for m in self.family_members if m.id != member_id]
        if self.active_patient_id == member_id:
            self.switch_to_primary()

    # ------------------------------------------------------------------
    # Active patient
    # ------------------------------------------------------------------

    @property
    def active_patient(self) -> PatientUnderCare | None:
        return next((p for p in self.patients_under_care if p.id == self.active_patient_id), None)

    @property
    def is_active_primary(self) -> bool:
        active = self.active_patient
        return bool(active and active.is_primary)

    @property
    def active_display_name(self) -> str:
        active = self.active_patient
        if active is None:
            return ""
        if active.is_primary:
            return active.name
        return f"{active.name} ({active.relationship})"

    def active_patient_for_services(self) -> dict[str, Any] | None:
        """
        Identity of the acting patient, as the lifecycle operations expect it.

        ``primaryPatientId`` is what doctor-access resolution goes through
        when the active patient is a family member.
        """
        active = self.active_patient
        if active is None:
            return None
        return {
            "id": active.id,
            "name": active.name,
            "email": active.email,
            "phone": active.phone,
            "isPrimary": active.is_primary,
            "primaryPatientId": active.primary_patient_id,
            "userId": self.user_id,
        }

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------

    def _deny(self, message: str) -> AuthorizationError:
        logger.warning("Access denied for %s (%s): %s", self.user_id, self.role.value, message)
        return AuthorizationError(message)

    def check_booking(self, patient_id: str, doctor_id: str) -> None:
        """
        Authorize booking an appointment for *patient_id* with *doctor_id*.

        Doctors may book only for themselves and only for patients they hold
        a grant on (directly or through the primary patient).  Patients may
        book only for someone under their care.
        """
        if self.role is ActorRole.admin:
            return
        if self.role is ActorRole.doctor:
            if doctor_id != self.doctor_id:
                raise self._deny(f"doctor {self.doctor_id} cannot book for doctor {doctor_id}")
            if not access_graph.can_doctor_access(doctor_id, patient_id):
                raise self._deny(f"doctor {doctor_id} has no access to patient {patient_id}")
            return
        if not self.manages_patient(patient_id):
            raise self._deny(f"patient {patient_id} is not under this session's care")

    def check_appointment(self, appointment: Appointment) -> None:
        """Authorize acting on an existing appointment."""
        if self.role is ActorRole.admin:
            return
        if self.role is ActorRole.doctor:
            if appointment.doctor_id != self.doctor_id:
                raise self._deny(f"appointment {appointment.id} belongs to another doctor")
            return
        if not self.manages_patient(appointment.patient_id):
            raise self._deny(f"appointment {appointment.id} is for a patient not under care")

    def check_doctor(self, doctor_id: str) -> None:
        """Authorize reading a doctor's agenda."""
        if self.role is ActorRole.doctor and doctor_id != self.doctor_id:
            raise self._deny(f"doctor {self.doctor_id} cannot read agenda of {doctor_id}")
