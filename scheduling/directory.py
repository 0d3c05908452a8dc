"""
scheduling/directory.py

Doctor directory: the doctors the core can authorize and display.
Only verified doctors can receive patient appointment requests.
"""

from __future__ import annotations

import logging
from typing import Any
from uuid import uuid4

from storage import db as _db
from storage.errors import NotFoundError, ValidationError
from storage.models import Doctor
from scheduling.time_utils import now_utc
from scheduling.validation import is_blank

logger = logging.getLogger(__name__)


def register_doctor(data: dict[str, Any], actor_id: str = _db.SYSTEM_ACTOR) -> Doctor:
    """Add a doctor.  New doctors are unverified unless *data* says otherwise."""
    if is_blank(data.get("nombre")):
        raise ValidationError("doctor name is required", {"nombre": "El nombre es requerido"})
    doctor = Doctor.model_validate(
        {**data, "id": data.get("id") or uuid4().hex, "createdAt": data.get("createdAt") or now_utc()}
    )
    _db.insert_doctor(doctor.to_document(), actor_id=actor_id)
    return doctor


def get_doctor_by_id(doctor_id: str) -> Doctor:
    raw = _db.get_doctor(doctor_id)
    if raw is None:
        raise NotFoundError("doctor", doctor_id, user_message="Doctor no encontrado")
    return Doctor.model_validate(raw)


def set_doctor_verified(doctor_id: str, verified: bool, actor_id: str = _db.SYSTEM_ACTOR) -> Doctor:
    doctor = get_doctor_by_id(doctor_id).model_copy(update={"verified": verified})
    _db.update_doctor(doctor.to_document(), actor_id=actor_id)
    logger.info("Doctor %s verified=%s", doctor_id, verified)
    return doctor


def list_doctors(verified_only: bool = False) -> list[Doctor]:
    return [Doctor.model_validate(d) for d in _db.list_doctors(verified_only)]
