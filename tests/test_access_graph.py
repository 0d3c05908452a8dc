"""
Tests for the patient access graph: primary patients, doctor grants, access
inheritance by family members and patient search.
"""
import pytest

from storage import db
from storage.models import FamilyMember
from storage.errors import NotFoundError, ValidationError
from scheduling import access_graph, family


# ============================================================================
# Primary patients
# ============================================================================

class TestPatients:

    def test_doctor_created_patient_gets_primary_grant(self, patient, doctor):
        assert patient.patient_id.startswith("PAT-")
        assert len(patient.doctors) == 1
        grant = patient.doctors[0]
        assert grant.doctor_id == doctor.id
        assert grant.is_primary
        assert patient.doctor_id == doctor.id
        assert patient.doctor_name == doctor.nombre

    def test_self_registered_patient_has_no_doctors(self):
        patient = access_graph.create_patient({"name": "Juan Pérez", "userId": "user-juan"})
        assert patient.doctors == []
        assert access_graph.get_doctors_for_patient(patient.id) == []

    def test_obra_social_alias(self):
        patient = access_graph.create_patient({"name": "Juan Pérez", "obraSocial": "PAMI"})
        assert access_graph.get_patient_by_id(patient.id).insurance_provider == "PAMI"

    @pytest.mark.parametrize("data", [{"name": "  "}, {"name": "Juan", "email": "juan@nowhere"}, {}])
    def test_invalid_patient(self, data):
        with pytest.raises(ValidationError):
            access_graph.create_patient(data)

    def test_update_merges_and_ignores_grants(self, patient, other_doctor):
        updated = access_graph.update_patient(patient.id, {
            "phone": "+54 11 4444-0000",
            "doctors": [{"doctorId": other_doctor.id}],
        })
        assert updated.phone == "+54 11 4444-0000"
        assert updated.name == "Ana García"
        assert [g.doctor_id for g in access_graph.get_patient_by_id(patient.id).doctors] == [patient.doctors[0].doctor_id]

    def test_update_cannot_set_legacy_doctor(self, patient, doctor, other_doctor):
        updated = access_graph.update_patient(patient.id, {
            "doctorId": other_doctor.id,
            "doctorUserId": other_doctor.user_id,
            "doctorName": other_doctor.nombre,
        })
        assert updated.doctor_id == doctor.id
        assert access_graph.get_patients_by_doctor_access(other_doctor.id) == []
        assert access_graph.search_patients(other_doctor.id, "") == []
        assert not access_graph.can_doctor_access(other_doctor.id, patient.id)

    def test_update_cannot_grant_ungranted_patient(self, other_doctor):
        patient = access_graph.create_patient({"name": "Juan Pérez"})
        access_graph.update_patient(patient.id, {"doctorId": other_doctor.id})
        assert access_graph.get_patient_by_id(patient.id).doctor_id is None
        assert not access_graph.can_doctor_access(other_doctor.id, patient.id)

    def test_medical_note_prepended(self, patient):
        access_graph.add_medical_note(patient.id, "Hipertensión leve", author="Dra. Méndez")
        access_graph.add_medical_note(patient.id, "Control de presión")
        notes = access_graph.get_patient_by_id(patient.id).medical_history
        assert [n.text for n in notes] == ["Control de presión", "Hipertensión leve"]

    def test_empty_medical_note(self, patient):
        with pytest.raises(ValidationError):
            access_graph.add_medical_note(patient.id, " ")

    def test_missing_patient(self):
        with pytest.raises(NotFoundError):
            access_graph.get_patient_by_id("missing")

    def test_delete_leaves_family_members(self, patient, family_member):
        access_graph.delete_patient(patient.id)
        with pytest.raises(NotFoundError):
            access_graph.get_patient_by_id(patient.id)
        orphan = family.get_family_member_by_id(family_member.id)
        assert orphan.primary_patient_id == patient.id
        assert db.get_grants(patient.id) == []


# ============================================================================
# Grants
# ============================================================================

class TestAssignment:

    def test_assign_twice_keeps_one_entry(self, patient, other_doctor):
        first = access_graph.assign_patient_to_doctor(patient.id, other_doctor.id)
        second = access_graph.assign_patient_to_doctor(patient.id, other_doctor.id)

        assert first.assigned
        assert not second.assigned
        assert second.already_assigned
        doctors = [g.doctor_id for g in access_graph.get_patient_by_id(patient.id).doctors]
        assert doctors.count(other_doctor.id) == 1

    def test_second_doctor_is_not_primary(self, patient, doctor, other_doctor):
        result = access_graph.assign_patient_to_doctor(patient.id, other_doctor.id)
        grants = {g.doctor_id: g for g in result.patient.doctors}
        assert grants[doctor.id].is_primary
        assert not grants[other_doctor.id].is_primary
        assert result.patient.doctor_id == doctor.id

    def test_first_grant_fills_legacy_fields(self, other_doctor):
        patient = access_graph.create_patient({"name": "Juan Pérez"})
        result = access_graph.assign_patient_to_doctor(patient.id, other_doctor.id)
        assert result.patient.doctors[0].is_primary
        assert result.patient.doctor_id == other_doctor.id
        assert result.patient.doctor_name == other_doctor.nombre

    def test_display_data_without_directory_lookup(self, patient):
        result = access_graph.assign_patient_to_doctor(
            patient.id, "external-doc", {"nombre": "Dr. Externo", "especialidad": "Traumatología"}
        )
        grant = next(g for g in result.patient.doctors if g.doctor_id == "external-doc")
        assert grant.doctor_name == "Dr. Externo"
        assert grant.doctor_specialty == "Traumatología"

    def test_unknown_doctor(self, patient):
        with pytest.raises(NotFoundError):
            access_graph.assign_patient_to_doctor(patient.id, "missing")

    def test_legacy_doctor_is_carried_over(self, doctor, other_doctor):
        patient = access_graph.create_patient({"name": "Juan Pérez"})
        db.update_patient(patient.model_copy(update={"doctor_id": doctor.id, "doctor_name": doctor.nombre}).to_document())
        assert access_graph.can_doctor_access(doctor.id, patient.id)

        access_graph.assign_patient_to_doctor(patient.id, other_doctor.id)
        grants = access_graph.get_patient_by_id(patient.id).doctors
        assert [(g.doctor_id, g.is_primary) for g in grants] == [
            (doctor.id, True),
            (other_doctor.id, False),
        ]

    def test_revoke_promotes_next_grant(self, patient, doctor, other_doctor):
        access_graph.assign_patient_to_doctor(patient.id, other_doctor.id)
        assert access_graph.revoke_doctor_access(patient.id, doctor.id)

        refreshed = access_graph.get_patient_by_id(patient.id)
        assert [g.doctor_id for g in refreshed.doctors] == [other_doctor.id]
        assert refreshed.doctors[0].is_primary
        assert refreshed.doctor_id == other_doctor.id
        assert not access_graph.can_doctor_access(doctor.id, patient.id)

    def test_revoke_unknown_grant(self, patient, other_doctor):
        assert not access_graph.revoke_doctor_access(patient.id, other_doctor.id)


# ============================================================================
# Access resolution
# ============================================================================

class TestFamilyInheritance:

    def test_family_member_inherits_grants(self, patient, family_member, doctor):
        grants = access_graph.get_doctors_for_patient(family_member.id)
        assert [g.doctor_id for g in grants] == [doctor.id]
        assert access_graph.can_doctor_access(doctor.id, family_member.id)

    def test_grant_on_primary_applies_to_family(self, patient, family_member, other_doctor):
        assert not access_graph.can_doctor_access(other_doctor.id, family_member.id)
        access_graph.assign_patient_to_doctor(patient.id, other_doctor.id)
        assert access_graph.can_doctor_access(other_doctor.id, family_member.id)

    def test_revoke_on_primary_applies_to_family(self, patient, family_member, doctor):
        access_graph.revoke_doctor_access(patient.id, doctor.id)
        assert not access_graph.can_doctor_access(doctor.id, family_member.id)

    def test_orphaned_family_member_has_no_access(self, patient, family_member, doctor):
        access_graph.delete_patient(patient.id)
        record = access_graph.get_care_record(family_member.id)
        assert isinstance(record, FamilyMember)
        assert access_graph.resolve_access(record) == []
        assert not access_graph.can_doctor_access(doctor.id, family_member.id)

    def test_records_accessible_by_doctor(self, patient, family_member, doctor, other_doctor):
        records = access_graph.get_records_accessible_by_doctor(doctor.id)
        assert [r.id for r in records] == [patient.id, family_member.id]
        assert access_graph.get_records_accessible_by_doctor(other_doctor.id) == []

    def test_unknown_record(self, doctor):
        with pytest.raises(NotFoundError):
            access_graph.can_doctor_access(doctor.id, "missing")


# ============================================================================
# Search
# ============================================================================

class TestSearch:

    @pytest.fixture
    def roster(self, patient, other_doctor):
        other = access_graph.create_patient(
            {"name": "Carlos Sosa", "email": "csosa@example.com", "phone": "+54 11 7777-1212"},
            doctor=other_doctor,
        )
        return patient, other

    def test_search_all_ignores_grants(self, roster, doctor):
        ana, carlos = roster
        assert [p.id for p in access_graph.search_all_patients("SOSA")] == [carlos.id]
        assert [p.id for p in access_graph.search_all_patients("7777")] == [carlos.id]
        assert [p.id for p in access_graph.search_all_patients(ana.patient_id.lower())] == [ana.id]

    def test_empty_term_returns_everyone(self, roster):
        assert {p.id for p in access_graph.search_all_patients("")} == {p.id for p in roster}

    def test_search_within_doctor(self, roster, doctor):
        ana, _ = roster
        assert [p.id for p in access_graph.search_patients(doctor.id, "a")] == [ana.id]
        assert access_graph.search_patients(doctor.id, "sosa") == []

    def test_patients_by_doctor_access_newest_first(self, patient, doctor):
        newer = access_graph.create_patient({"name": "Beatriz Luna"})
        access_graph.assign_patient_to_doctor(newer.id, doctor.id)
        ids = [p.id for p in access_graph.get_patients_by_doctor_access(doctor.id)]
        assert ids == [newer.id, patient.id]
