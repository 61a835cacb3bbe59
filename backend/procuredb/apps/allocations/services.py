from __future__ import annotations

import logging
from typing import List, Optional, Sequence, Tuple

from sqlalchemy import delete
from sqlalchemy.orm import Session

from procuredb.errors import (
    ConcurrencyError,
    ConstraintViolationError,
    NotFoundError,
    ValidationError,
    Violation,
    ViolationType,
)
from procuredb.utils.clock import Clock, resolve_clock
from procuredb.utils.identifiers import IdSource, resolve_id_source
from procuredb.apps.accounts import services as account_services
from procuredb.apps.accounts.services import UserContext
from procuredb.apps.audit import models as audit_models
from procuredb.apps.audit import services as audit_services
from procuredb.apps.workflow import engine, registry
from procuredb.apps.workflow.engine import TransitionContext
from procuredb.apps.allocations import models, schemas
from procuredb.apps.allocations.constraints import AllocationInput, AllocationOperation, ConstraintSolver, check_location_access

logger = logging.getLogger(__name__)

AllocationStatus = models.AllocationStatus


def get_allocation(db: Session, *, tenant_id: str, allocation_id: str) -> models.Allocation:
    allocation = (
        db.query(models.Allocation)
        .filter(models.Allocation.id == allocation_id, models.Allocation.tenant_id == tenant_id)
        .first()
    )
    if allocation is None:
        raise NotFoundError("Allocation", allocation_id)
    return allocation


def list_allocations(
    db: Session,
    *,
    tenant_id: str,
    po_item_id: Optional[str] = None,
    location_id: Optional[str] = None,
    status: Optional[AllocationStatus] = None,
) -> List[models.Allocation]:
    query = db.query(models.Allocation).filter(models.Allocation.tenant_id == tenant_id)
    if po_item_id:
        query = query.filter(models.Allocation.po_item_id == po_item_id)
    if location_id:
        query = query.filter(models.Allocation.target_location_id == location_id)
    if status is not None:
        query = query.filter(models.Allocation.status == status)
    return query.order_by(models.Allocation.created_at.asc(), models.Allocation.id.asc()).all()


def get_allocation_history(db: Session, *, tenant_id: str, allocation_id: str) -> List[audit_models.AuditLogEntry]:
    get_allocation(db, tenant_id=tenant_id, allocation_id=allocation_id)
    return audit_services.list_audit_entries(
        db,
        tenant_id=tenant_id,
        entity_type=audit_models.AuditEntityType.ALLOCATION,
        subject_id=allocation_id,
    )


def _require_access(user: UserContext, location_id: str) -> None:
    if not check_location_access(user, location_id):
        raise ConstraintViolationError(
            f"User {user.user_id} has no access to location {location_id}",
            violations=[
                Violation(
                    type=ViolationType.LOCATION_ACCESS,
                    field="target_location_id",
                    message=f"User {user.user_id} has no access to location {location_id}",
                )
            ],
        )


def _load_for_change(
    db: Session, *, tenant_id: str, allocation_id: str, user_id: str
) -> Tuple[models.Allocation, UserContext]:
    allocation = get_allocation(db, tenant_id=tenant_id, allocation_id=allocation_id)
    user = account_services.get_user_context(db, user_id=user_id, tenant_id=tenant_id)
    _require_access(user, allocation.target_location_id)
    return allocation, user


def _log(
    db: Session,
    *,
    allocation: models.Allocation,
    action: str,
    user_id: str,
    old_values: Optional[dict],
    notes: Optional[str],
    now,
    ids: Optional[IdSource],
) -> audit_models.AuditLogEntry:
    return audit_services.log_event(
        db,
        tenant_id=allocation.tenant_id,
        entity_type=audit_models.AuditEntityType.ALLOCATION,
        subject_id=allocation.id,
        action=action,
        performed_by=user_id,
        old_status=(old_values or {}).get("status"),
        new_status=allocation.status.value,
        old_values=old_values,
        new_values=audit_services.snapshot(allocation),
        notes=notes,
        performed_at=now,
        ids=ids,
        critical=True,
    )


def create_allocations(
    db: Session,
    *,
    tenant_id: str,
    user_id: str,
    allocations: Sequence[schemas.AllocationCreate],
    clock: Optional[Clock] = None,
    ids: Optional[IdSource] = None,
) -> List[models.Allocation]:
    """Insert PENDING allocations once every rule passes for the whole batch."""
    if not allocations:
        raise ValidationError(
            "At least one allocation is required",
            detail=[{"field": "allocations", "reason": "At least one allocation is required"}],
        )
    user = account_services.get_user_context(db, user_id=user_id, tenant_id=tenant_id)
    inputs = [
        AllocationInput(
            po_item_id=entry.po_item_id,
            target_location_id=entry.target_location_id,
            quantity_allocated=entry.quantity_allocated,
        )
        for entry in allocations
    ]
    result = ConstraintSolver(db).validate_constraints(inputs, tenant_id=tenant_id, user=user)
    if not result.valid:
        raise ConstraintViolationError(
            f"Allocation rejected: {len(result.violations)} rule violation(s)",
            violations=result.violations,
        )

    now = resolve_clock(clock).now()
    ids = resolve_id_source(ids)
    created = []
    for entry in allocations:
        allocation = models.Allocation(
            id=ids.new_id(),
            tenant_id=tenant_id,
            po_item_id=entry.po_item_id,
            target_location_id=entry.target_location_id,
            quantity_allocated=entry.quantity_allocated,
            quantity_received=0,
            status=AllocationStatus.PENDING,
            notes=entry.notes,
            created_by=user_id,
            created_at=now,
            updated_at=now,
        )
        db.add(allocation)
        created.append(allocation)
    db.flush()

    for allocation in created:
        _log(
            db,
            allocation=allocation,
            action="CREATED",
            user_id=user_id,
            old_values=None,
            notes=f"Allocated {allocation.quantity_allocated} to {allocation.target_location_id}",
            now=now,
            ids=ids,
        )
    for warning in result.warnings:
        logger.warning(warning.message, extra={"tenant_id": tenant_id, "field": warning.field})
    return created


def _transition(
    db: Session,
    *,
    allocation: models.Allocation,
    to_state: AllocationStatus,
    ctx: TransitionContext,
    values: Optional[dict] = None,
    notes: Optional[str] = None,
    clock: Optional[Clock] = None,
    ids: Optional[IdSource] = None,
) -> models.Allocation:
    result = engine.check_transition(
        db, entity_type=registry.ALLOCATION, entity=allocation, to_state=to_state, ctx=ctx
    )
    engine.raise_for_result(result, entity_type=registry.ALLOCATION, entity=allocation, to_state=to_state)
    engine.apply_transition(
        db,
        entity_type=registry.ALLOCATION,
        entity=allocation,
        to_state=to_state,
        ctx=ctx,
        values=values,
        notes=notes,
        performed_at=resolve_clock(clock).now(),
        ids=ids,
    )
    return allocation


def confirm_allocation(
    db: Session,
    *,
    tenant_id: str,
    allocation_id: str,
    user_id: str,
    clock: Optional[Clock] = None,
    ids: Optional[IdSource] = None,
) -> models.Allocation:
    allocation, _ = _load_for_change(db, tenant_id=tenant_id, allocation_id=allocation_id, user_id=user_id)
    return _transition(
        db,
        allocation=allocation,
        to_state=AllocationStatus.ALLOCATED,
        ctx=TransitionContext(tenant_id=tenant_id, user_id=user_id),
        notes="Allocation confirmed",
        clock=clock,
        ids=ids,
    )


def cancel_allocation(
    db: Session,
    *,
    tenant_id: str,
    allocation_id: str,
    user_id: str,
    reason: Optional[str],
    clock: Optional[Clock] = None,
    ids: Optional[IdSource] = None,
) -> models.Allocation:
    allocation, _ = _load_for_change(db, tenant_id=tenant_id, allocation_id=allocation_id, user_id=user_id)
    return _transition(
        db,
        allocation=allocation,
        to_state=AllocationStatus.CANCELLED,
        ctx=TransitionContext(tenant_id=tenant_id, user_id=user_id, reason=reason),
        notes=f"Allocation cancelled: {(reason or '').strip()}",
        clock=clock,
        ids=ids,
    )


def receive_allocation(
    db: Session,
    *,
    tenant_id: str,
    allocation_id: str,
    user_id: str,
    quantity: int,
    clock: Optional[Clock] = None,
    ids: Optional[IdSource] = None,
) -> models.Allocation:
    """Accumulate received stock; RECEIVED once the allocated quantity is in."""
    allocation, _ = _load_for_change(db, tenant_id=tenant_id, allocation_id=allocation_id, user_id=user_id)
    if quantity is None or quantity <= 0:
        raise ValidationError(
            "Received quantity must be greater than 0",
            detail=[{"field": "quantity", "reason": "Received quantity must be greater than 0"}],
        )
    total = (allocation.quantity_received or 0) + quantity
    if total > allocation.quantity_allocated:
        over = total - allocation.quantity_allocated
        raise ConstraintViolationError(
            f"Receipt exceeds allocated quantity by {over}",
            violations=[
                Violation(
                    type=ViolationType.QUANTITY_EXCEEDED,
                    field="quantity_received",
                    message=(
                        f"Receiving {quantity} would bring the total to {total}, "
                        f"above the allocated {allocation.quantity_allocated}"
                    ),
                    amount=over,
                )
            ],
        )
    to_state = AllocationStatus.RECEIVED if total == allocation.quantity_allocated else AllocationStatus.PARTIALLY_RECEIVED
    return _transition(
        db,
        allocation=allocation,
        to_state=to_state,
        ctx=TransitionContext(tenant_id=tenant_id, user_id=user_id),
        values={"quantity_received": total},
        notes=f"Received {quantity} ({total} of {allocation.quantity_allocated})",
        clock=clock,
        ids=ids,
    )


def update_allocation_quantity(
    db: Session,
    *,
    tenant_id: str,
    allocation_id: str,
    user_id: str,
    quantity: int,
    clock: Optional[Clock] = None,
    ids: Optional[IdSource] = None,
) -> models.Allocation:
    allocation, _ = _load_for_change(db, tenant_id=tenant_id, allocation_id=allocation_id, user_id=user_id)
    solver = ConstraintSolver(db)
    solver.enforce_status_constraints(allocation, AllocationOperation.UPDATE)

    result = solver.check_quantity_constraints(
        [
            AllocationInput(
                po_item_id=allocation.po_item_id,
                target_location_id=allocation.target_location_id,
                quantity_allocated=quantity,
            )
        ],
        tenant_id=tenant_id,
        exclude_allocation_id=allocation.id,
    )
    if not result.valid:
        raise ConstraintViolationError(result.violations[0].message, violations=result.violations)

    now = resolve_clock(clock).now()
    old_values = audit_services.snapshot(allocation)
    engine.compare_and_swap(
        db,
        model=models.Allocation,
        entity=allocation,
        tenant_id=tenant_id,
        values={"quantity_allocated": quantity},
        label="Allocation",
    )
    _log(
        db,
        allocation=allocation,
        action="QUANTITY_UPDATED",
        user_id=user_id,
        old_values=old_values,
        notes=f"Quantity changed from {old_values['quantity_allocated']} to {quantity}",
        now=now,
        ids=ids,
    )
    return allocation


def delete_allocation(
    db: Session,
    *,
    tenant_id: str,
    allocation_id: str,
    user_id: str,
    clock: Optional[Clock] = None,
    ids: Optional[IdSource] = None,
) -> None:
    allocation, _ = _load_for_change(db, tenant_id=tenant_id, allocation_id=allocation_id, user_id=user_id)
    ConstraintSolver(db).enforce_status_constraints(allocation, AllocationOperation.DELETE)

    now = resolve_clock(clock).now()
    old_values = audit_services.snapshot(allocation)
    stmt = (
        delete(models.Allocation)
        .where(
            models.Allocation.id == allocation.id,
            models.Allocation.tenant_id == tenant_id,
            models.Allocation.version == allocation.version,
        )
        .execution_options(synchronize_session=False)
    )
    if db.execute(stmt).rowcount == 0:
        raise ConcurrencyError(
            f"Allocation {allocation.id} was modified concurrently (expected version {allocation.version})",
            detail=[{"field": "version", "reason": "Reload and retry"}],
        )
    db.expunge(allocation)
    audit_services.log_event(
        db,
        tenant_id=tenant_id,
        entity_type=audit_models.AuditEntityType.ALLOCATION,
        subject_id=allocation_id,
        action="DELETED",
        performed_by=user_id,
        old_status=old_values["status"],
        old_values=old_values,
        notes=f"Allocation of {old_values['quantity_allocated']} deleted",
        performed_at=now,
        ids=ids,
        critical=True,
    )
