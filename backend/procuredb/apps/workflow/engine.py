from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from procuredb.errors import ConcurrencyError, NotFoundError, StateTransitionError, ValidationError
from procuredb.utils.identifiers import IdSource
from procuredb.apps.audit import models as audit_models
from procuredb.apps.audit import services as audit_services
from procuredb.apps.workflow.registry import WORKFLOWS

logger = logging.getLogger(__name__)

INVALID_TRANSITION = "invalid_transition"
NOT_FOUND = "not_found"
MISSING_REQUIREMENTS = "validation_error"


@dataclass
class TransitionContext:
    """Everything a transition needs besides the entity itself."""

    tenant_id: str
    user_id: Optional[str]
    reason: Optional[str] = None
    notes: Optional[str] = None
    quantity_shipped: Optional[int] = None
    receiving: Any = None


@dataclass
class ValidationResult:
    valid: bool
    errors: List[Dict[str, str]] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    code: Optional[str] = None
    allowed: List[str] = field(default_factory=list)

    @property
    def messages(self) -> List[str]:
        return [item["reason"] for item in self.errors]


def get_workflow(entity_type: str) -> dict:
    workflow = WORKFLOWS.get(entity_type)
    if not workflow:
        raise ValueError(f"No workflow registered for {entity_type}")
    return workflow


def _coerce(workflow: dict, state: Any) -> Optional[enum.Enum]:
    states = workflow["states"]
    if isinstance(state, states):
        return state
    try:
        return states(state)
    except ValueError:
        return None


def _name(state: Any) -> str:
    return state.value if isinstance(state, enum.Enum) else str(state)


def allowed_transitions(entity_type: str, from_state: Any) -> List[enum.Enum]:
    workflow = get_workflow(entity_type)
    current = _coerce(workflow, from_state)
    if current is None:
        return []
    return list(workflow["transitions"].get(current, {}).keys())


def can_transition(entity_type: str, from_state: Any, to_state: Any) -> bool:
    """Pure lookup over the registered transition table."""
    workflow = get_workflow(entity_type)
    current = _coerce(workflow, from_state)
    target = _coerce(workflow, to_state)
    if current is None or target is None:
        return False
    return target in workflow["transitions"].get(current, {})


def is_terminal(entity_type: str, state: Any) -> bool:
    return not allowed_transitions(entity_type, state)


def initial_state(entity_type: str) -> enum.Enum:
    return get_workflow(entity_type)["initial"]


def check_transition(
    db: Session,
    *,
    entity_type: str,
    entity: Any,
    to_state: Any,
    ctx: TransitionContext,
) -> ValidationResult:
    """Tenant check, table check, then every guard for the edge.

    Tenant mismatch reads exactly like a missing row.
    """
    workflow = get_workflow(entity_type)
    label = workflow["label"]

    if getattr(entity, "tenant_id", None) != ctx.tenant_id:
        return ValidationResult(
            valid=False,
            errors=[{"field": "tenant_id", "reason": f"{label} not found"}],
            code=NOT_FOUND,
        )

    from_state = _coerce(workflow, entity.status)
    target = _coerce(workflow, to_state)
    allowed = [_name(state) for state in allowed_transitions(entity_type, from_state)]
    if from_state is None or target is None or not can_transition(entity_type, from_state, target):
        valid_list = ", ".join(allowed) if allowed else "none (terminal state)"
        return ValidationResult(
            valid=False,
            errors=[
                {
                    "field": "status",
                    "reason": f"Cannot transition from {_name(entity.status)} to {_name(to_state)}. "
                    f"Valid transitions: {valid_list}",
                }
            ],
            code=INVALID_TRANSITION,
            allowed=allowed,
        )

    failures: List[Dict[str, str]] = []
    if not ctx.user_id:
        failures.append({"field": "user_id", "reason": "Acting user is required"})
    for guard in workflow["transitions"][from_state][target]:
        failures.extend(guard(db, entity=entity, ctx=ctx, from_state=from_state, to_state=target))

    if failures:
        return ValidationResult(valid=False, errors=failures, code=MISSING_REQUIREMENTS, allowed=allowed)
    return ValidationResult(valid=True, allowed=allowed)


def raise_for_result(result: ValidationResult, *, entity_type: str, entity: Any, to_state: Any) -> None:
    if result.valid:
        return
    label = get_workflow(entity_type)["label"]
    if result.code == NOT_FOUND:
        raise NotFoundError(label, getattr(entity, "id", None))
    if result.code == INVALID_TRANSITION:
        raise StateTransitionError(
            result.errors[0]["reason"],
            from_state=_name(entity.status),
            to_state=_name(to_state),
            allowed=result.allowed,
            detail=result.errors,
        )
    raise ValidationError("; ".join(result.messages), detail=result.errors)


def compare_and_swap(
    db: Session,
    *,
    model: Any,
    entity: Any,
    tenant_id: str,
    values: Dict[str, Any],
    label: str,
) -> None:
    """Conditional update keyed on ``(id, tenant_id, version)``.

    Zero rows affected is a failure: NotFoundError when the row is gone
    (or belongs to another tenant), ConcurrencyError otherwise.
    """
    expected_version = entity.version
    stmt = (
        update(model)
        .where(
            model.id == entity.id,
            model.tenant_id == tenant_id,
            model.version == expected_version,
        )
        .values(**values, version=model.version + 1)
        .execution_options(synchronize_session=False)
    )
    result = db.execute(stmt)
    if result.rowcount == 0:
        exists = (
            db.query(model.id)
            .filter(model.id == entity.id, model.tenant_id == tenant_id)
            .first()
        )
        if exists is None:
            raise NotFoundError(label, entity.id)
        raise ConcurrencyError(
            f"{label} {entity.id} was modified concurrently (expected version {expected_version})",
            detail=[{"field": "version", "reason": "Reload and retry"}],
        )
    db.refresh(entity)


def apply_transition(
    db: Session,
    *,
    entity_type: str,
    entity: Any,
    to_state: Any,
    ctx: TransitionContext,
    values: Optional[Dict[str, Any]] = None,
    action: Optional[str] = None,
    notes: Optional[str] = None,
    performed_at: Optional[datetime] = None,
    ids: Optional[IdSource] = None,
) -> audit_models.AuditLogEntry:
    """Swap the status in place and append the audit entry in the same unit.

    The audit write is critical: if it fails the caller's transaction must
    be rolled back together with the status change.
    """
    workflow = get_workflow(entity_type)
    target = _coerce(workflow, to_state)
    from_state = _coerce(workflow, entity.status)
    old_values = audit_services.snapshot(entity)

    compare_and_swap(
        db,
        model=type(entity),
        entity=entity,
        tenant_id=ctx.tenant_id,
        values={**(values or {}), "status": target},
        label=workflow["label"],
    )

    entry = audit_services.log_event(
        db,
        tenant_id=ctx.tenant_id,
        entity_type=audit_models.AuditEntityType(entity_type),
        subject_id=entity.id,
        action=action or _name(target),
        performed_by=ctx.user_id,
        old_status=_name(from_state),
        new_status=_name(target),
        old_values=old_values,
        new_values=audit_services.snapshot(entity),
        notes=notes,
        performed_at=performed_at,
        ids=ids,
        critical=True,
    )
    logger.info(
        "Transition applied",
        extra={
            "tenant_id": ctx.tenant_id,
            "entity_type": entity_type,
            "entity_id": entity.id,
            "from_state": _name(from_state),
            "to_state": _name(target),
        },
    )
    return entry
