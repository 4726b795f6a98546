from __future__ import annotations

from typing import Any, Dict, List, Optional


class RotaError(Exception):
    """Base class for every error the rota engine reports to callers."""

    kind = "rota_error"

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = {key: value for key, value in details.items() if value is not None}

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.kind, "message": self.message}
        payload.update(self.details)
        return payload


class ConflictError(RotaError):
    """Raised when an assignment or publish collides with approved time-off."""

    kind = "conflict"

    def __init__(self, message: str, conflicts: Optional[List[Dict[str, Any]]] = None, **details: Any) -> None:
        super().__init__(message, **details)
        self.conflicts: List[Dict[str, Any]] = list(conflicts or [])
        self.details["conflicts"] = self.conflicts


class InvalidStateError(RotaError):
    kind = "invalid_state"


class NotFoundError(RotaError):
    kind = "not_found"

    def __init__(self, resource: str, identifier: Any, message: Optional[str] = None) -> None:
        super().__init__(message or f"{resource} {identifier} was not found.", resource=resource, identifier=identifier)
        self.resource = resource
        self.identifier = identifier


class ValidationError(RotaError):
    kind = "validation"

    def __init__(self, message: str, field: Optional[str] = None, **details: Any) -> None:
        super().__init__(message, field=field, **details)
        self.field = field


class CapExceededError(RotaError):
    """Non-fatal: smart assign stopped short of the labor-cost cap.

    Returned alongside the partial proposal, never raised out of the engine.
    """

    kind = "cap_exceeded"

    def __init__(self, message: str, unassigned_slots: int, **details: Any) -> None:
        super().__init__(message, unassigned_slots=unassigned_slots, **details)
        self.unassigned_slots = unassigned_slots
