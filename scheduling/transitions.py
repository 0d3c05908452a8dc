"""
scheduling/transitions.py

The appointment state machine.  Every operation that changes an
appointment's status checks the edge here first.

    pending     -> scheduled | rejected | cancelled
    scheduled   -> completed | cancelled | rescheduled
    rescheduled -> scheduled
    completed, rejected, cancelled are terminal
"""

from __future__ import annotations

from storage.errors import InvalidStateError, ValidationError
from storage.models import AppointmentStatus

S = AppointmentStatus

_TRANSITIONS: dict[AppointmentStatus, frozenset[AppointmentStatus]] = {
    S.pending: frozenset({S.scheduled, S.rejected, S.cancelled}),
    S.scheduled: frozenset({S.completed, S.cancelled, S.rescheduled}),
    S.rescheduled: frozenset({S.scheduled}),
    S.completed: frozenset(),
    S.rejected: frozenset(),
    S.cancelled: frozenset(),
}


def parse_status(value: str | AppointmentStatus) -> AppointmentStatus:
    """Coerce *value* to a status, raising ``ValidationError`` for unknown strings."""
    try:
        return AppointmentStatus(value)
    except ValueError:
        raise ValidationError(
            f"unknown appointment status {value!r}",
            {"status": "Estado de cita no válido"},
        ) from None


def next_states(current: str | AppointmentStatus) -> frozenset[AppointmentStatus]:
    return _TRANSITIONS[parse_status(current)]


def can_transition(current: str | AppointmentStatus, target: str | AppointmentStatus) -> bool:
    return parse_status(target) in next_states(current)


def is_terminal(status: str | AppointmentStatus) -> bool:
    return not next_states(status)


def ensure_transition(current: str | AppointmentStatus, target: str | AppointmentStatus) -> None:
    """Raise ``InvalidStateError`` unless ``current -> target`` is an edge."""
    if not can_transition(current, target):
        cur, tgt = parse_status(current).value, parse_status(target).value
        raise InvalidStateError(
            f"cannot move appointment from {cur} to {tgt}",
            current=cur,
            target=tgt,
        )
