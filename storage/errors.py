"""
storage/errors.py

Error taxonomy for the appointment and patient-access core.

Every error carries a machine-readable ``code`` and a short, localised
``user_message`` the presentation layer can show as-is.  The ``str()`` of an
error is the English developer message used in logs.
"""

from __future__ import annotations


class SchedulingError(Exception):
    """Base class for all errors raised by the core."""

    code = "scheduling_error"
    default_user_message = "Ocurrió un error. Intenta nuevamente."

    def __init__(self, message: str, *, user_message: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.user_message = user_message or self.default_user_message


class ValidationError(SchedulingError):
    """Malformed or missing input.  Always raised before any write."""

    code = "validation_error"
    default_user_message = "Los datos ingresados no son válidos."

    def __init__(
        self,
        message: str,
        errors: dict[str, str] | None = None,
        *,
        user_message: str | None = None,
    ) -> None:
        self.errors: dict[str, str] = dict(errors or {})
        if user_message is None and len(self.errors) == 1:
            user_message = next(iter(self.errors.values()))
        super().__init__(message, user_message=user_message)


class NotFoundError(SchedulingError):
    """A referenced id does not resolve to a record."""

    code = "not_found"
    default_user_message = "El registro solicitado no existe."

    def __init__(self, kind: str, record_id: str, *, user_message: str | None = None) -> None:
        self.kind = kind
        self.record_id = record_id
        super().__init__(f"{kind} '{record_id}' not found", user_message=user_message)


class InvalidStateError(SchedulingError):
    """The operation is not legal for the record's current status."""

    code = "invalid_state"
    default_user_message = "La cita no se puede modificar en su estado actual."

    def __init__(self, message: str, *, current: str | None = None, target: str | None = None) -> None:
        self.current = current
        self.target = target
        super().__init__(message)


class AuthorizationError(SchedulingError):
    """The acting session has no access to the record."""

    code = "forbidden"
    default_user_message = "No tienes permiso para realizar esta acción."


class TransientIOError(SchedulingError):
    """The document store failed; the core does not retry."""

    code = "storage_unavailable"
    default_user_message = "No se pudo acceder a los datos. Intenta nuevamente."
