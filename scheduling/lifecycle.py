"""
scheduling/lifecycle.py

Appointment lifecycle manager: booking, status transitions and the agenda
queries used by the doctor and patient portals.

Responsibilities
----------------
- Create appointments, either requested by a patient (``pending``) or
  booked directly by a doctor (``scheduled``), with a denormalised
  patient/doctor snapshot.
- Move appointments through the state machine in
  ``scheduling.transitions``.  Every status write is a compare-and-swap on
  the stored status, so of two racing transitions only the first wins and
  the second raises ``InvalidStateError``.
- Answer agenda queries.  The doctor's full appointment list is fetched and
  filtered in memory; sorts are stable, so ties keep insertion order.

Every operation accepts an optional ``CareSession``.  When given, the caller
is authorized through the access graph before anything is read back to them
or written; without one the caller is trusted.

Usage
-----
    from scheduling import lifecycle
    appt = lifecycle.request_appointment({
        "patientId": patient.id, "doctorId": doctor.id,
        "date": "2030-01-15", "time": "10:00", "reason": "Checkup",
    })
    lifecycle.approve_appointment(appt.id, notes="Traer estudios")
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import date, datetime
from typing import Any
from uuid import uuid4

from storage import db as _db
from storage.models import (
    ActorRole,
    Appointment,
    AppointmentCreateInput,
    AppointmentRequestInput,
    AppointmentStatus,
    FamilyMember,
    check_hhmm,
)
from storage.config import get_settings
from storage.errors import AuthorizationError, InvalidStateError, NotFoundError, ValidationError
from scheduling import access_graph, directory, notifications
from scheduling.session import CareSession
from scheduling.time_utils import appointment_start, generate_code, iter_slots, local_today, now_utc
from scheduling.transitions import ensure_transition, parse_status
from scheduling.validation import coerce_date, is_blank, normalize_keys, parse_model

logger = logging.getLogger(__name__)

S = AppointmentStatus

# Statuses that hold a time slot.
_BLOCKING_STATUSES = (S.pending.value, S.scheduled.value)
# Fields that only the booking and transition operations may set.
_FIXED_APPOINTMENT_FIELDS = {
    "id", "appointment_id", "patient_id", "patient_user_id", "primary_patient_id",
    "doctor_id", "doctor_name", "doctor_specialty", "doctor_gender",
    "created_at", "updated_at", "requested_at", "approved_at", "doctor_notes",
    "rejected_at", "rejection_reason", "completed_at", "cancelled_at",
    "cancelled_by", "cancellation_reason", "rescheduled_at", "reschedule_reason",
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _actor(session: CareSession | None) -> str:
    return session.user_id if session is not None else _db.SYSTEM_ACTOR


def _load(appointment_id: str) -> Appointment:
    raw = _db.get_appointment(appointment_id)
    if raw is None:
        raise NotFoundError("appointment", appointment_id, user_message="Cita no encontrada")
    return Appointment.model_validate(raw)


def _authorized(appointment_id: str, session: CareSession | None) -> Appointment:
    appointment = _load(appointment_id)
    if session is not None:
        session.check_appointment(appointment)
    return appointment


def _ensure_future(day: date, hhmm: str) -> None:
    if appointment_start(day, hhmm) < now_utc():
        raise ValidationError(
            f"appointment start {day} {hhmm} is in the past",
            {"date": "No se puede agendar una cita en una fecha pasada"},
        )


def _by_date_desc(appointments: list[Appointment]) -> list[Appointment]:
    return sorted(appointments, key=lambda a: a.date, reverse=True)


def _transition(
    appointment_id: str,
    target: AppointmentStatus,
    session: CareSession | None,
    *,
    allowed_from: set[AppointmentStatus] | None = None,
    changes: dict[str, Any] | None = None,
) -> Appointment:
    """
    Move an appointment to *target* and store it with a compare-and-swap.

    Args:
        allowed_from: Narrower set of source states than the transition table
                      allows (e.g. approve is only legal from ``pending``).
        changes:      Extra fields written together with the new status.

    Raises:
        NotFoundError:     Unknown id.
        InvalidStateError: Illegal edge, or the status changed underneath.
    """
    current = _authorized(appointment_id, session)
    if allowed_from is not None and S(current.status) not in allowed_from:
        raise InvalidStateError(
            f"cannot move appointment {appointment_id} from {current.status} to {target.value}",
            current=current.status,
            target=target.value,
        )
    ensure_transition(current.status, target)

    updated = current.model_copy(update={
        **(changes or {}),
        "status": target.value,
        "updated_at": now_utc(),
    })
    written = _db.update_appointment(
        updated.to_document(),
        expected_status=current.status,
        action=f"appointment_{target.value}",
        actor_id=_actor(session),
    )
    if not written:
        if _db.get_appointment(appointment_id) is None:
            raise NotFoundError("appointment", appointment_id, user_message="Cita no encontrada")
        logger.warning(
            "Appointment %s changed status concurrently; %s -> %s not applied",
            appointment_id, current.status, target.value,
        )
        raise InvalidStateError(
            f"appointment {appointment_id} was modified concurrently",
            current=current.status,
            target=target.value,
        )

    logger.info("Appointment %s: %s -> %s", appointment_id, current.status, target.value)
    return updated


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------


def _book(
    payload: AppointmentCreateInput,
    status: AppointmentStatus,
    session: CareSession | None,
    *,
    require_verified: bool,
) -> Appointment:
    if is_blank(payload.reason):
        raise ValidationError(
            "appointment reason is required",
            {"reason": "El motivo de la consulta es requerido"},
        )
    _ensure_future(payload.date, payload.time)

    doctor = directory.get_doctor_by_id(payload.doctor_id)
    if require_verified and not doctor.verified:
        raise ValidationError(
            f"doctor {doctor.id} is not verified",
            {"doctorId": "El doctor seleccionado no está verificado"},
        )
    record = access_graph.get_care_record(payload.patient_id)
    if session is not None:
        session.check_booking(record.id, doctor.id)

    is_family = isinstance(record, FamilyMember)
    patient_user_id = payload.patient_user_id
    if patient_user_id is None and not is_family:
        patient_user_id = record.user_id

    now = now_utc()
    appointment = Appointment(
        id=uuid4().hex,
        appointment_id=generate_code("APT"),
        patient_id=record.id,
        patient_user_id=patient_user_id,
        primary_patient_id=record.primary_patient_id if is_family else None,
        patient_name=payload.patient_name or record.name,
        patient_email=payload.patient_email or record.email,
        patient_phone=payload.patient_phone or record.phone,
        doctor_id=doctor.id,
        doctor_name=doctor.nombre,
        doctor_specialty=doctor.especialidad,
        doctor_gender=doctor.gender,
        date=payload.date,
        time=payload.time,
        type=payload.type,
        reason=payload.reason.strip(),
        notes=payload.notes,
        urgency=getattr(payload, "urgency", None),
        status=status,
        duration=payload.duration or get_settings().default_duration,
        created_at=now,
        updated_at=now,
        requested_at=now if status is S.pending else None,
    )
    _db.insert_appointment(appointment.to_document(), actor_id=_actor(session))
    return appointment


def request_appointment(
    data: Mapping[str, Any] | AppointmentRequestInput,
    session: CareSession | None = None,
) -> Appointment:
    """
    Patient-initiated request.  The appointment waits in ``pending`` until
    the doctor approves or rejects it.

    Args:
        data:    ``patientId`` (primary or family member), ``doctorId``,
                 ``date``, ``time`` (``HH:MM``), ``reason`` and optionally
                 ``type``, ``urgency``, ``notes``, ``duration``.
        session: Acting session, if the caller must be authorized.

    Returns:
        The stored ``Appointment``.

    Raises:
        ValidationError:    Empty reason, past date/time, malformed input or
                            unverified doctor.  Nothing is written.
        NotFoundError:      Unknown doctor or patient.
        AuthorizationError: The session may not book for this patient.
    """
    payload = parse_model(AppointmentRequestInput, data, "appointment request")
    appointment = _book(payload, S.pending, session, require_verified=True)
    notifications.dispatch("appointment_requested", appointment)
    return appointment


def create_appointment(
    data: Mapping[str, Any] | AppointmentCreateInput,
    session: CareSession | None = None,
) -> Appointment:
    """Doctor-initiated booking: skips approval and starts ``scheduled``."""
    payload = parse_model(AppointmentCreateInput, data, "appointment")
    appointment = _book(payload, S.scheduled, session, require_verified=False)
    notifications.dispatch("appointment_created", appointment)
    return appointment


def update_appointment(
    appointment_id: str,
    data: Mapping[str, Any],
    session: CareSession | None = None,
) -> Appointment:
    """
    Edit an appointment's details (date, time, type, reason, notes, urgency,
    duration, patient contact snapshot).

    Status is not editable here; it only moves through the transition
    operations.  Identity, doctor snapshot and lifecycle timestamps are
    ignored.  A new date or time must not be in the past.

    Raises:
        ValidationError:   ``status`` in *data*, blank reason, past date/time
                           or malformed fields.  Nothing is written.
        InvalidStateError: The status changed while the edit was in flight.
    """
    fields = normalize_keys(Appointment, data)
    if "status" in fields:
        raise ValidationError(
            f"status of appointment {appointment_id} cannot be edited directly",
            {"status": "El estado se cambia con las acciones de la cita"},
        )
    current = _authorized(appointment_id, session)
    updates = {k: v for k, v in fields.items() if k not in _FIXED_APPOINTMENT_FIELDS}
    merged = parse_model(
        Appointment,
        {**current.model_dump(), **updates, "updated_at": now_utc()},
        "appointment",
    )
    if is_blank(merged.reason):
        raise ValidationError(
            "appointment reason is required",
            {"reason": "El motivo de la consulta es requerido"},
        )
    if merged.duration <= 0:
        raise ValidationError(
            f"invalid duration {merged.duration}",
            {"duration": "La duración debe ser mayor a cero"},
        )
    if (merged.date, merged.time) != (current.date, current.time):
        _ensure_future(merged.date, merged.time)

    written = _db.update_appointment(
        merged.to_document(),
        expected_status=current.status,
        actor_id=_actor(session),
    )
    if not written:
        if _db.get_appointment(appointment_id) is None:
            raise NotFoundError("appointment", appointment_id, user_message="Cita no encontrada")
        raise InvalidStateError(
            f"appointment {appointment_id} was modified concurrently",
            current=current.status,
            target=current.status,
        )
    logger.info("Updated appointment id=%s fields=%s", appointment_id, sorted(updates))
    return merged


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------


def approve_appointment(
    appointment_id: str,
    notes: str | None = None,
    session: CareSession | None = None,
) -> Appointment:
    """``pending`` -> ``scheduled``.  *notes* are kept as ``doctorNotes``."""
    changes: dict[str, Any] = {"approved_at": now_utc()}
    if notes:
        changes["doctor_notes"] = notes
    appointment = _transition(
        appointment_id, S.scheduled, session, allowed_from={S.pending}, changes=changes
    )
    notifications.dispatch("appointment_approved", appointment)
    return appointment


def reject_appointment(
    appointment_id: str,
    reason: str,
    session: CareSession | None = None,
) -> Appointment:
    """
    ``pending`` -> ``rejected``.

    Raises:
        ValidationError:   Blank *reason*; checked before the record is read.
        InvalidStateError: The appointment is not pending.
    """
    if is_blank(reason):
        raise ValidationError(
            "a rejection reason is required",
            {"reason": "Debes indicar el motivo del rechazo"},
        )
    appointment = _transition(
        appointment_id,
        S.rejected,
        session,
        allowed_from={S.pending},
        changes={"rejection_reason": reason.strip(), "rejected_at": now_utc()},
    )
    notifications.dispatch("appointment_rejected", appointment)
    return appointment


def update_appointment_status(
    appointment_id: str,
    status: str | AppointmentStatus,
    notes: str | None = None,
    session: CareSession | None = None,
) -> Appointment:
    """
    General transition, checked against the transition table.  *notes*, when
    given, replace the appointment's ``notes``.

    Raises:
        ValidationError:   *status* is not a known status.
        InvalidStateError: The edge is not in the table.
    """
    target = parse_status(status)
    changes: dict[str, Any] = {}
    if target is S.completed:
        changes["completed_at"] = now_utc()
    elif target is S.cancelled:
        changes["cancelled_at"] = now_utc()
    if notes:
        changes["notes"] = notes
    return _transition(appointment_id, target, session, changes=changes)


def cancel_appointment(
    appointment_id: str,
    reason: str = "",
    cancelled_by: ActorRole | str = ActorRole.patient,
    session: CareSession | None = None,
) -> Appointment:
    """
    Cancel a pending or scheduled appointment.

    Cancelling an appointment that is already cancelled succeeds and changes
    nothing.

    Raises:
        ValidationError:   Unknown *cancelled_by* role.
        InvalidStateError: The appointment is completed, rejected or
                           rescheduled.
    """
    try:
        role = ActorRole(cancelled_by)
    except ValueError:
        raise ValidationError(
            f"unknown cancelling role {cancelled_by!r}",
            {"cancelledBy": "Rol no válido"},
        ) from None

    current = _authorized(appointment_id, session)
    if current.status == S.cancelled.value:
        logger.info("Appointment %s already cancelled", appointment_id)
        return current

    changes: dict[str, Any] = {"cancelled_at": now_utc(), "cancelled_by": role.value}
    if reason and reason.strip():
        changes["cancellation_reason"] = reason.strip()
    appointment = _transition(appointment_id, S.cancelled, session, changes=changes)
    notifications.dispatch("appointment_cancelled", appointment)
    return appointment


def reschedule_appointment(
    appointment_id: str,
    new_date: date | str,
    new_time: str,
    reason: str = "",
    session: CareSession | None = None,
) -> Appointment:
    """
    Move a scheduled appointment to a new date/time; it stays ``rescheduled``
    until :func:`confirm_reschedule`.
    """
    day = coerce_date(new_date)
    if day is None:
        raise ValidationError(f"invalid date {new_date!r}", {"date": "La fecha no es válida"})
    try:
        hhmm = check_hhmm(new_time)
    except ValueError:
        raise ValidationError(f"invalid time {new_time!r}", {"time": "La hora no es válida"}) from None
    _ensure_future(day, hhmm)

    changes: dict[str, Any] = {"date": day, "time": hhmm, "rescheduled_at": now_utc()}
    if reason and reason.strip():
        changes["reschedule_reason"] = reason.strip()
    appointment = _transition(
        appointment_id, S.rescheduled, session, allowed_from={S.scheduled}, changes=changes
    )
    notifications.dispatch("appointment_rescheduled", appointment)
    return appointment


def confirm_reschedule(appointment_id: str, session: CareSession | None = None) -> Appointment:
    """``rescheduled`` -> ``scheduled``."""
    return _transition(appointment_id, S.scheduled, session, allowed_from={S.rescheduled})


def delete_appointment(appointment_id: str, session: CareSession | None = None) -> None:
    """Hard delete in any state."""
    _authorized(appointment_id, session)
    if not _db.delete_appointment(appointment_id, actor_id=_actor(session)):
        raise NotFoundError("appointment", appointment_id, user_message="Cita no encontrada")
    logger.info("Deleted appointment id=%s", appointment_id)


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


def get_appointment_by_id(appointment_id: str, session: CareSession | None = None) -> Appointment:
    return _authorized(appointment_id, session)


def _doctor_agenda(doctor_id: str, session: CareSession | None) -> list[Appointment]:
    if session is not None:
        session.check_doctor(doctor_id)
    return [Appointment.model_validate(a) for a in _db.list_appointments_for_doctor(doctor_id)]


def get_appointments_by_doctor_id(doctor_id: str, session: CareSession | None = None) -> list[Appointment]:
    """All of a doctor's appointments, newest date first."""
    return _by_date_desc(_doctor_agenda(doctor_id, session))


def get_appointments_by_patient_id(patient_id: str, session: CareSession | None = None) -> list[Appointment]:
    """Appointments booked for a patient or family member, newest date first."""
    if session is not None:
        if session.role is ActorRole.patient and not session.manages_patient(patient_id):
            raise AuthorizationError(f"patient {patient_id} is not under this session's care")
        if session.role is ActorRole.doctor and not access_graph.can_doctor_access(session.doctor_id, patient_id):
            raise AuthorizationError(f"doctor {session.doctor_id} has no access to patient {patient_id}")
    return _by_date_desc(
        [Appointment.model_validate(a) for a in _db.list_appointments_for_patient(patient_id)]
    )


def get_upcoming_appointments(doctor_id: str, session: CareSession | None = None) -> list[Appointment]:
    """From today on, excluding cancelled; soonest first."""
    today = local_today()
    upcoming = [
        a for a in _doctor_agenda(doctor_id, session)
        if a.date >= today and a.status != S.cancelled.value
    ]
    return sorted(upcoming, key=lambda a: (a.date, a.time))


def get_recent_appointments(doctor_id: str, session: CareSession | None = None) -> list[Appointment]:
    """Completed appointments up to today, most recent first."""
    today = local_today()
    recent = [
        a for a in _doctor_agenda(doctor_id, session)
        if a.date <= today and a.status == S.completed.value
    ]
    return sorted(recent, key=lambda a: (a.date, a.time), reverse=True)


def get_pending_appointments(doctor_id: str, session: CareSession | None = None) -> list[Appointment]:
    """Requests awaiting the doctor, most recently requested first."""
    pending = [a for a in _doctor_agenda(doctor_id, session) if a.status == S.pending.value]
    return sorted(pending, key=lambda a: a.requested_at or a.created_at, reverse=True)


def get_appointments_by_status(
    doctor_id: str,
    status: str | AppointmentStatus,
    session: CareSession | None = None,
) -> list[Appointment]:
    wanted = parse_status(status).value
    return _by_date_desc([a for a in _doctor_agenda(doctor_id, session) if a.status == wanted])


def get_available_time_slots(doctor_id: str, day: date | datetime | str) -> list[str]:
    """
    Free ``HH:MM`` slots for *doctor_id* on *day*.

    Slots run from the configured opening hour to the closing hour; a slot
    is taken while a pending or scheduled appointment starts at it.
    """
    wanted = coerce_date(day)
    if wanted is None:
        raise ValidationError(f"invalid date {day!r}", {"date": "La fecha no es válida"})
    settings = get_settings()
    booked = _db.booked_times(doctor_id, wanted.isoformat(), _BLOCKING_STATUSES)
    return [
        slot
        for slot in iter_slots(settings.slot_start_hour, settings.slot_end_hour, settings.slot_minutes)
        if slot not in booked
    ]
