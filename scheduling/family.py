"""
scheduling/family.py

Family-member delegation: dependents (children, parents, spouses...) that a
primary patient manages from their own account.

A family member never has its own login and never carries doctor grants;
see ``scheduling.access_graph.resolve_access``.  Its ``primaryPatientId`` is
fixed at creation.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any
from uuid import uuid4

from storage import db as _db
from storage.models import FamilyMember, FamilyMemberInput, Patient, PatientUnderCare
from storage.errors import NotFoundError, ValidationError
from scheduling import access_graph
from scheduling.time_utils import generate_code, now_utc
from scheduling.validation import (
    MAX_AGE,
    MIN_AGE,
    calculate_age,
    coerce_date,
    is_blank,
    is_valid_email,
    normalize_keys,
    parse_model,
)

logger = logging.getLogger(__name__)

SELF_RELATIONSHIP = "Usted"

RELATIONSHIP_OPTIONS: list[dict[str, str]] = [
    {"value": "esposo", "label": "Esposo"},
    {"value": "esposa", "label": "Esposa"},
    {"value": "hijo", "label": "Hijo"},
    {"value": "hija", "label": "Hija"},
    {"value": "padre", "label": "Padre"},
    {"value": "madre", "label": "Madre"},
    {"value": "hermano", "label": "Hermano"},
    {"value": "hermana", "label": "Hermana"},
    {"value": "abuelo", "label": "Abuelo"},
    {"value": "abuela", "label": "Abuela"},
    {"value": "nieto", "label": "Nieto"},
    {"value": "nieta", "label": "Nieta"},
    {"value": "otro", "label": "Otro"},
]

_CHILD_RELATIONSHIPS = {"hijo", "hija", "hijo/a"}
ADULT_AGE = 18


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def validate_family_member_data(data: Mapping[str, Any], today=None) -> dict[str, str]:
    """
    Check a family-member form.

    Args:
        data:  camelCase or snake_case fields.
        today: Reference date for the age check (defaults to today in the
               clinic timezone).

    Returns:
        ``{field: message}`` for every problem found; empty when valid.
    """
    fields = normalize_keys(FamilyMemberInput, data)
    errors: dict[str, str] = {}

    if is_blank(fields.get("name")):
        errors["name"] = "El nombre es requerido"
    if is_blank(fields.get("relationship")):
        errors["relationship"] = "La relación familiar es requerida"
    if is_blank(fields.get("gender")):
        errors["gender"] = "El género es requerido"

    email = fields.get("email")
    if email and not is_valid_email(email):
        errors["email"] = "El email no es válido"

    raw_dob = fields.get("date_of_birth")
    if is_blank(raw_dob):
        errors["dateOfBirth"] = "La fecha de nacimiento es requerida"
    else:
        dob = coerce_date(raw_dob)
        if dob is None:
            errors["dateOfBirth"] = "La fecha de nacimiento no es válida"
        else:
            age = calculate_age(dob, today)
            if age < MIN_AGE or age > MAX_AGE:
                errors["dateOfBirth"] = "La fecha de nacimiento no es válida"

    return errors


def _raise_if_invalid(data: Mapping[str, Any]) -> None:
    errors = validate_family_member_data(data)
    if errors:
        raise ValidationError(f"invalid family member: {errors}", errors)


# ---------------------------------------------------------------------------
# CRUD
# ---------------------------------------------------------------------------


def create_family_member(data: Mapping[str, Any], actor_id: str = _db.SYSTEM_ACTOR) -> FamilyMember:
    """
    Add a dependent to a primary patient.

    Raises:
        ValidationError: Form errors, or no ``primaryPatientId``.
        NotFoundError:   The primary patient does not exist.
    """
    _raise_if_invalid(data)
    payload = parse_model(FamilyMemberInput, dict(data), "family member")
    if is_blank(payload.primary_patient_id):
        raise ValidationError(
            "family member needs a primary patient",
            {"primaryPatientId": "El paciente principal es requerido"},
        )
    access_graph.get_patient_by_id(payload.primary_patient_id)

    now = now_utc()
    member = FamilyMember.model_validate({
        **payload.model_dump(),
        "id": uuid4().hex,
        "family_member_id": generate_code("FAM"),
        "is_active": True,
        "created_at": now,
        "updated_at": now,
    })
    _db.insert_family_member(member.to_document(), actor_id=actor_id)
    return member


def get_family_member_by_id(member_id: str) -> FamilyMember:
    raw = _db.get_family_member(member_id)
    if raw is None:
        raise NotFoundError("family member", member_id, user_message="Familiar no encontrado")
    return FamilyMember.model_validate(raw)


def get_family_members_by_primary_patient_id(primary_patient_id: str) -> list[FamilyMember]:
    """Newest first."""
    return [FamilyMember.model_validate(m) for m in _db.list_family_members(primary_patient_id)]


def update_family_member(
    member_id: str,
    data: Mapping[str, Any],
    actor_id: str = _db.SYSTEM_ACTOR,
) -> FamilyMember:
    """
    Merge *data* into a family member, re-validating the result.

    Raises:
        ValidationError: The merged record is invalid, or *data* tries to move
                         the member to another primary patient.
    """
    current = get_family_member_by_id(member_id)
    updates = normalize_keys(FamilyMember, data)

    new_owner = updates.pop("primary_patient_id", current.primary_patient_id)
    if new_owner != current.primary_patient_id:
        raise ValidationError(
            f"family member {member_id} cannot change primary patient",
            {"primaryPatientId": "No se puede cambiar el paciente principal"},
        )
    for key in ("id", "family_member_id", "created_at"):
        updates.pop(key, None)

    merged = {**current.model_dump(), **updates}
    _raise_if_invalid(merged)
    member = parse_model(FamilyMember, {**merged, "updated_at": now_utc()}, "family member")
    _db.update_family_member(member.to_document(), actor_id=actor_id)
    return member


def delete_family_member(member_id: str, actor_id: str = _db.SYSTEM_ACTOR) -> None:
    """Hard delete; appointments booked for the member are kept."""
    if not _db.delete_family_member(member_id, actor_id=actor_id):
        raise NotFoundError("family member", member_id, user_message="Familiar no encontrado")
    logger.info("Deleted family member id=%s", member_id)


def search_family_members(primary_patient_id: str, term: str | None) -> list[FamilyMember]:
    members = get_family_members_by_primary_patient_id(primary_patient_id)
    if not term:
        return members
    needle = term.lower()
    return [
        m for m in members
        if any(v and needle in v.lower() for v in (m.name, m.email, m.phone, m.relationship))
    ]


# ---------------------------------------------------------------------------
# Patients under care
# ---------------------------------------------------------------------------


def under_care_rows(primary: Patient, members: list[FamilyMember]) -> list[PatientUnderCare]:
    """The primary patient first, then each family member in the given order."""
    rows = [PatientUnderCare(
        id=primary.id,
        is_primary=True,
        relationship=SELF_RELATIONSHIP,
        name=primary.name,
        email=primary.email,
        phone=primary.phone,
        date_of_birth=primary.date_of_birth,
        gender=primary.gender,
        primary_patient_id=primary.id,
    )]
    rows.extend(
        PatientUnderCare(
            id=m.id,
            is_primary=False,
            relationship=m.relationship,
            name=m.name,
            email=m.email,
            phone=m.phone,
            date_of_birth=m.date_of_birth,
            gender=m.gender,
            primary_patient_id=m.primary_patient_id,
        )
        for m in members
    )
    return rows


def get_all_patients_under_care(
    primary_patient_id: str,
    primary_patient_data: Patient | Mapping[str, Any] | None = None,
) -> list[PatientUnderCare]:
    """
    Everyone the primary patient can act for.

    Index 0 is always the primary patient (``isPrimary=True``,
    ``relationship="Usted"``); family members follow, newest first.
    """
    if primary_patient_data is None:
        primary = access_graph.get_patient_by_id(primary_patient_id)
    elif isinstance(primary_patient_data, Patient):
        primary = primary_patient_data
    else:
        now = now_utc()
        primary = parse_model(Patient, {
            "patientId": "",
            "createdAt": now,
            "updatedAt": now,
            **primary_patient_data,
            "id": primary_patient_id,
        }, "patient")
    return under_care_rows(primary, get_family_members_by_primary_patient_id(primary_patient_id))


def get_family_member_stats(primary_patient_id: str, today=None) -> dict[str, int]:
    """Counts of family members: total, children, adults (18+) and minors."""
    members = get_family_members_by_primary_patient_id(primary_patient_id)
    ages = [calculate_age(m.date_of_birth, today) if m.date_of_birth else 0 for m in members]
    return {
        "total": len(members),
        "children": sum(1 for m in members if (m.relationship or "").lower() in _CHILD_RELATIONSHIPS),
        "adults": sum(1 for a in ages if a >= ADULT_AGE),
        "minors": sum(1 for a in ages if a < ADULT_AGE),
    }
