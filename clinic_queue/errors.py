"""Error taxonomy for queue operations.

Every error carries the HTTP status the API layer should answer with and a
``detail()`` dict with the entity id and current state where there is one,
so callers can decide whether to retry or show the message to the user.
Only ``ConcurrencyConflict`` is safe to retry.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class ClinicError(Exception):
    status_code = 400
    retryable = False

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = {k: v for k, v in context.items() if v is not None}

    @property
    def error(self) -> str:
        return type(self).__name__

    def detail(self) -> Dict[str, Any]:
        return {
            "error": self.error,
            "message": self.message,
            "retryable": self.retryable,
            **self.context,
        }


class ValidationError(ClinicError):
    """Malformed phone, date or missing field.  Rejected before the store is touched."""

    status_code = 422


class CapacityExceeded(ClinicError):
    status_code = 409


class ClosedDate(ClinicError):
    """Weekend, leave or past date."""

    status_code = 409


class NotFound(ClinicError):
    status_code = 404


class InvalidTransition(ClinicError):
    status_code = 409

    def __init__(self, entity_id: Optional[int], status: str, action: str, entity: str = "token") -> None:
        super().__init__(
            f"Cannot {action} {entity} {entity_id}: current status is {status}",
            entity=entity,
            id=entity_id,
            status=status,
            action=action,
        )
        self.entity_id = entity_id
        self.status = status
        self.action = action


class NoPatientsWaiting(ClinicError):
    status_code = 409


class NoPatientCalled(ClinicError):
    status_code = 409


class ConcurrencyConflict(ClinicError):
    status_code = 503
    retryable = True


class Fatal(ClinicError):
    """The store is unavailable."""

    status_code = 500
