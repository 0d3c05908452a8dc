"""
scheduling/notifications.py

Seam between the lifecycle manager and whatever delivers messages (email in
production).  Delivery itself is out of scope: the default sender only logs.

Senders are called after the write has been committed.  ``dispatch`` never
lets a sender failure reach the caller of the lifecycle operation.
"""

from __future__ import annotations

import logging
from typing import Protocol

from storage.models import Appointment

logger = logging.getLogger(__name__)


class NotificationSender(Protocol):
    def send(self, event: str, appointment: Appointment) -> None:
        """Deliver a notification for *event* (e.g. ``"appointment_requested"``)."""


class LoggingNotificationSender:
    """Default sender: records what would have been sent."""

    def send(self, event: str, appointment: Appointment) -> None:
        logger.info(
            "Notification %s: appointment=%s doctor=%s patient=%s date=%s %s",
            event,
            appointment.appointment_id,
            appointment.doctor_id,
            appointment.patient_id,
            appointment.date,
            appointment.time,
        )


_sender: NotificationSender = LoggingNotificationSender()


def set_sender(sender: NotificationSender | None) -> NotificationSender:
    """Install *sender* (``None`` restores the logging sender); returns the previous one."""
    global _sender
    previous = _sender
    _sender = sender or LoggingNotificationSender()
    return previous


def get_sender() -> NotificationSender:
    return _sender


def dispatch(event: str, appointment: Appointment) -> None:
    """Fire-and-forget: failures are logged, never raised."""
    try:
        _sender.send(event, appointment)
    except Exception:
        logger.exception(
            "Notification %s for appointment %s failed", event, appointment.id
        )
