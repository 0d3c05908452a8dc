"""
Tests for family-member delegation.
"""
from datetime import date

import pytest

from storage.errors import NotFoundError, ValidationError
from scheduling import family
from scheduling.validation import calculate_age


def _years_ago(today, years):
    """Date of birth that makes someone exactly *years* old today."""
    try:
        return today.replace(year=today.year - years)
    except ValueError:  # 29 February
        return today.replace(year=today.year - years, day=28)


def _form(**overrides):
    data = {
        "name": "Lucía García",
        "relationship": "hija",
        "dateOfBirth": "2019-01-22",
        "gender": "female",
    }
    data.update(overrides)
    return data


# ============================================================================
# Validation
# ============================================================================

class TestValidation:

    def test_valid_form(self):
        assert family.validate_family_member_data(_form()) == {}

    def test_required_fields(self):
        errors = family.validate_family_member_data({})
        assert set(errors) == {"name", "relationship", "dateOfBirth", "gender"}

    def test_snake_case_keys_accepted(self):
        data = {"name": "Lucía", "relationship": "hija", "date_of_birth": "2019-01-22", "gender": "female"}
        assert family.validate_family_member_data(data) == {}

    @pytest.mark.parametrize("email", ["lucia", "lucia@casa", "@x.com"])
    def test_bad_email(self, email):
        assert "email" in family.validate_family_member_data(_form(email=email))

    def test_good_email(self):
        assert family.validate_family_member_data(_form(email="lucia@example.com")) == {}

    @pytest.mark.parametrize("years", [0, 120])
    def test_age_bounds_pass(self, today, years):
        dob = _years_ago(today, years)
        assert calculate_age(dob, today) == years
        assert family.validate_family_member_data(_form(dateOfBirth=dob.isoformat()), today) == {}

    def test_age_121_fails(self, today):
        dob = _years_ago(today, 121)
        assert "dateOfBirth" in family.validate_family_member_data(_form(dateOfBirth=dob), today)

    def test_age_minus_one_fails(self, today):
        dob = _years_ago(today, -1)
        assert calculate_age(dob, today) == -1
        assert "dateOfBirth" in family.validate_family_member_data(_form(dateOfBirth=dob), today)

    def test_unparseable_date(self):
        assert "dateOfBirth" in family.validate_family_member_data(_form(dateOfBirth="ayer"))

    def test_age_is_birthday_aware(self):
        assert calculate_age(date(2000, 6, 15), date(2020, 6, 14)) == 19
        assert calculate_age(date(2000, 6, 15), date(2020, 6, 15)) == 20


# ============================================================================
# CRUD
# ============================================================================

class TestFamilyMembers:

    def test_create(self, patient):
        member = family.create_family_member(_form(primaryPatientId=patient.id, obraSocial="OSDE"))
        assert member.family_member_id.startswith("FAM-")
        assert member.is_active
        stored = family.get_family_member_by_id(member.id)
        assert stored.primary_patient_id == patient.id
        assert stored.insurance_provider == "OSDE"

    def test_create_invalid(self, patient):
        with pytest.raises(ValidationError) as exc_info:
            family.create_family_member(_form(primaryPatientId=patient.id, name=""))
        assert "name" in exc_info.value.errors
        assert family.get_family_members_by_primary_patient_id(patient.id) == []

    def test_create_for_unknown_primary(self):
        with pytest.raises(NotFoundError):
            family.create_family_member(_form(primaryPatientId="missing"))

    def test_create_without_primary(self):
        with pytest.raises(ValidationError):
            family.create_family_member(_form())

    def test_update(self, family_member):
        updated = family.update_family_member(family_member.id, {"phone": "+54 11 2222-3333"})
        assert updated.phone == "+54 11 2222-3333"
        assert updated.name == family_member.name
        assert family.get_family_member_by_id(family_member.id).phone == "+54 11 2222-3333"

    def test_primary_patient_is_immutable(self, family_member):
        with pytest.raises(ValidationError) as exc_info:
            family.update_family_member(family_member.id, {"primaryPatientId": "someone-else"})
        assert "primaryPatientId" in exc_info.value.errors

    def test_same_primary_is_allowed(self, family_member):
        family.update_family_member(
            family_member.id, {"primaryPatientId": family_member.primary_patient_id, "name": "Tomi"}
        )
        assert family.get_family_member_by_id(family_member.id).name == "Tomi"

    def test_update_revalidates(self, family_member):
        with pytest.raises(ValidationError):
            family.update_family_member(family_member.id, {"dateOfBirth": "1850-01-01"})
        assert family.get_family_member_by_id(family_member.id).date_of_birth == date(2016, 9, 3)

    def test_delete(self, family_member):
        family.delete_family_member(family_member.id)
        with pytest.raises(NotFoundError):
            family.get_family_member_by_id(family_member.id)
        with pytest.raises(NotFoundError):
            family.delete_family_member(family_member.id)

    def test_search(self, patient, family_member):
        family.create_family_member(_form(primaryPatientId=patient.id, relationship="madre", name="Rosa"))
        assert [m.name for m in family.search_family_members(patient.id, "MADRE")] == ["Rosa"]
        assert [m.name for m in family.search_family_members(patient.id, "tomás")] == ["Tomás García"]
        assert len(family.search_family_members(patient.id, "")) == 2


# ============================================================================
# Patients under care
# ============================================================================

class TestPatientsUnderCare:

    def test_primary_first(self, patient, family_member):
        newest = family.create_family_member(_form(primaryPatientId=patient.id))
        rows = family.get_all_patients_under_care(patient.id)

        assert rows[0].id == patient.id
        assert rows[0].is_primary is True
        assert rows[0].relationship == "Usted"
        assert [r.id for r in rows[1:]] == [newest.id, family_member.id]
        assert all(r.is_primary is False for r in rows[1:])

    def test_primary_data_supplied_by_caller(self, patient, family_member):
        rows = family.get_all_patients_under_care(patient.id, {"name": "Ana (sesión)", "email": "ana@example.com"})
        assert rows[0].name == "Ana (sesión)"
        assert rows[0].is_primary
        assert rows[1].id == family_member.id

    def test_primary_data_without_name(self, patient):
        with pytest.raises(ValidationError):
            family.get_all_patients_under_care(patient.id, {"email": "ana@example.com"})

    def test_no_family(self, patient):
        rows = family.get_all_patients_under_care(patient.id)
        assert [r.id for r in rows] == [patient.id]

    def test_stats(self, patient, family_member, today):
        family.create_family_member(_form(primaryPatientId=patient.id, relationship="madre",
                                          dateOfBirth="1955-03-01", name="Rosa"))
        stats = family.get_family_member_stats(patient.id, today)
        assert stats == {"total": 2, "children": 1, "adults": 1, "minors": 1}

    def test_relationship_options(self):
        values = [o["value"] for o in family.RELATIONSHIP_OPTIONS]
        assert "hijo" in values
        assert "otro" in values
