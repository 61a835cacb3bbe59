"""Error taxonomy shared by every procuredb service.

All errors carry a machine ``code`` and a ``detail`` list of
``{"field": ..., "reason": ...}`` dicts so callers can render every
problem at once instead of the first one only.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional


class ViolationType(str, enum.Enum):
    QUANTITY_EXCEEDED = "QUANTITY_EXCEEDED"
    LOCATION_ACCESS = "LOCATION_ACCESS"
    STATUS_INVALID = "STATUS_INVALID"
    BUSINESS_RULE = "BUSINESS_RULE"


@dataclass(frozen=True)
class Violation:
    type: ViolationType
    field: str
    message: str
    amount: Optional[int] = None


class ProcureError(Exception):
    code = "procure_error"

    def __init__(self, message: str, *, detail: Optional[Iterable[Dict[str, str]]] = None):
        super().__init__(message)
        self.message = message
        self.detail: List[Dict[str, str]] = list(detail or [])

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "detail": self.detail}


class ValidationError(ProcureError):
    """Malformed or missing input. Never persisted, never retried."""

    code = "validation_error"


class StateTransitionError(ProcureError):
    """The requested transition is not in the entity's transition table."""

    code = "invalid_transition"

    def __init__(
        self,
        message: str,
        *,
        from_state: str,
        to_state: str,
        allowed: Iterable[str],
        detail: Optional[Iterable[Dict[str, str]]] = None,
    ):
        super().__init__(message, detail=detail)
        self.from_state = from_state
        self.to_state = to_state
        self.allowed: List[str] = list(allowed)

    def to_dict(self) -> dict:
        payload = super().to_dict()
        payload["allowed"] = self.allowed
        return payload


class ConstraintViolationError(ProcureError):
    """Quantity, over-allocation or access rules failed.

    ``violations`` holds every failed rule, never just the first.
    """

    code = "constraint_violation"

    def __init__(self, message: str, *, violations: Iterable[Violation] = ()):
        self.violations: List[Violation] = list(violations)
        super().__init__(
            message,
            detail=[{"field": v.field, "reason": v.message} for v in self.violations],
        )

    @property
    def types(self) -> List[ViolationType]:
        return [v.type for v in self.violations]


class NotFoundError(ProcureError):
    """Entity missing, or owned by another tenant. Both read the same."""

    code = "not_found"

    def __init__(self, entity: str, entity_id: Optional[str] = None):
        message = f"{entity} not found" if entity_id is None else f"{entity} {entity_id} not found"
        super().__init__(message, detail=[{"field": "id", "reason": message}])
        self.entity = entity
        self.entity_id = entity_id


class ConcurrencyError(ProcureError):
    """A conditional update matched zero rows. Reload and retry."""

    code = "concurrency_conflict"
