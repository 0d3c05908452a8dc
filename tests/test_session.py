"""
Tests for the per-login care session.
"""
import pytest

from storage.models import ActorRole
from storage.errors import AuthorizationError
from scheduling import family
from scheduling.session import CareSession


@pytest.fixture
def session(patient, family_member):
    care = CareSession("user-ana", "patient")
    care.load(patient.id)
    return care


class TestCareSession:

    def test_load_starts_on_primary(self, session, patient):
        assert session.active_patient_id == patient.id
        assert session.is_active_primary
        assert session.active_display_name == "Ana García"
        assert session.patients_under_care[0].id == patient.id

    def test_switch_to_family_member(self, session, family_member, patient):
        row = session.switch_to_patient(family_member.id)
        assert row.id == family_member.id
        assert not session.is_active_primary
        assert session.active_display_name == "Tomás García (hijo)"

        services = session.active_patient_for_services()
        assert services["id"] == family_member.id
        assert services["primaryPatientId"] == patient.id
        assert services["isPrimary"] is False

        session.switch_to_primary()
        assert session.is_active_primary

    def test_cannot_switch_to_stranger(self, session):
        with pytest.raises(AuthorizationError):
            session.switch_to_patient("someone-else")

    def test_add_update_remove(self, session, patient):
        member = family.create_family_member({
            "primaryPatientId": patient.id,
            "name": "Rosa",
            "relationship": "madre",
            "dateOfBirth": "1955-03-01",
            "gender": "female",
        })
        session.add_family_member(member)
        assert session.patients_under_care[1].id == member.id
        assert session.manages_patient(member.id)

        renamed = family.update_family_member(member.id, {"name": "Rosa María"})
        session.update_family_member(renamed)
        assert session.patients_under_care[1].name == "Rosa María"

        session.switch_to_patient(member.id)
        session.remove_family_member(member.id)
        assert session.is_active_primary
        assert not session.manages_patient(member.id)

    def test_clear(self, session):
        session.clear()
        assert session.patients_under_care == []
        assert session.active_patient_for_services() is None
        assert session.active_display_name == ""
        assert not session.is_active_primary

    def test_doctor_session_needs_doctor_id(self):
        with pytest.raises(ValueError):
            CareSession("user-doc-1", ActorRole.doctor)

    def test_unknown_role(self):
        with pytest.raises(ValueError):
            CareSession("user-x", "nurse")
