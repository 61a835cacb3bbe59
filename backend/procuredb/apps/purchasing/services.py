from __future__ import annotations

import logging
from collections import defaultdict
from typing import Dict, List, Optional, Sequence

from sqlalchemy.orm import Session

from procuredb.errors import ConstraintViolationError, NotFoundError, ValidationError, Violation, ViolationType
from procuredb.utils.clock import Clock, resolve_clock
from procuredb.utils.identifiers import IdSource, resolve_id_source
from procuredb.apps.audit import models as audit_models
from procuredb.apps.audit import services as audit_services
from procuredb.apps.workflow.engine import TransitionContext, compare_and_swap
from procuredb.apps.purchasing import models, schemas
from procuredb.apps.purchasing.po_numbers import PONumberGenerator
from procuredb.apps.purchasing.state_machine import POTransitionResult, PurchaseOrderStateMachine

logger = logging.getLogger(__name__)


def _validate_items(items: Sequence[schemas.POItemCreate], *, start: int = 1) -> None:
    failures = []
    for index, item in enumerate(items, start=start):
        if item.quantity_ordered <= 0:
            failures.append(
                {"field": f"items[{index}].quantity_ordered", "reason": f"Line {index}: quantity must be greater than 0"}
            )
        if item.unit_price_cents < 0:
            failures.append(
                {"field": f"items[{index}].unit_price_cents", "reason": f"Line {index}: unit price cannot be negative"}
            )
    if failures:
        raise ValidationError("Invalid purchase order lines", detail=failures)


def _build_item(
    po: models.PurchaseOrder,
    data: schemas.POItemCreate,
    *,
    line_number: int,
    ids: IdSource,
    now,
) -> models.POItem:
    return models.POItem(
        id=ids.new_id(),
        tenant_id=po.tenant_id,
        line_number=line_number,
        product_id=data.product_id,
        quantity_ordered=data.quantity_ordered,
        unit_price_cents=data.unit_price_cents,
        line_total_cents=data.quantity_ordered * data.unit_price_cents,
        quantity_received=0,
        notes=data.notes,
        created_at=now,
    )


def get_purchase_order(db: Session, *, tenant_id: str, po_id: str) -> models.PurchaseOrder:
    po = (
        db.query(models.PurchaseOrder)
        .filter(models.PurchaseOrder.id == po_id, models.PurchaseOrder.tenant_id == tenant_id)
        .first()
    )
    if po is None:
        raise NotFoundError("Purchase order", po_id)
    return po


def list_po_items(db: Session, *, tenant_id: str, po_id: str) -> List[models.POItem]:
    get_purchase_order(db, tenant_id=tenant_id, po_id=po_id)
    return (
        db.query(models.POItem)
        .filter(models.POItem.po_id == po_id, models.POItem.tenant_id == tenant_id)
        .order_by(models.POItem.line_number.asc())
        .all()
    )


def get_audit_history(db: Session, *, tenant_id: str, po_id: str) -> List[audit_models.AuditLogEntry]:
    get_purchase_order(db, tenant_id=tenant_id, po_id=po_id)
    return audit_services.list_audit_entries(
        db,
        tenant_id=tenant_id,
        entity_type=audit_models.AuditEntityType.PURCHASE_ORDER,
        subject_id=po_id,
    )


def create_purchase_order(
    db: Session,
    *,
    tenant_id: str,
    created_by: str,
    data: schemas.PurchaseOrderCreate,
    clock: Optional[Clock] = None,
    ids: Optional[IdSource] = None,
) -> models.PurchaseOrder:
    """New DRAFT order. Lines are optional here; approval requires at least one."""
    _validate_items(data.items)
    now = resolve_clock(clock).now()
    ids = resolve_id_source(ids)

    po = models.PurchaseOrder(
        id=ids.new_id(),
        tenant_id=tenant_id,
        supplier_id=data.supplier_id,
        status=models.PurchaseOrderStatus.DRAFT,
        notes=data.notes,
        created_by=created_by,
        created_at=now,
        updated_at=now,
    )
    po.items = [
        _build_item(po, item, line_number=index, ids=ids, now=now)
        for index, item in enumerate(data.items, start=1)
    ]
    po.total_cost_cents = sum(item.line_total_cents for item in po.items)
    db.add(po)
    db.flush()

    audit_services.log_event(
        db,
        tenant_id=tenant_id,
        entity_type=audit_models.AuditEntityType.PURCHASE_ORDER,
        subject_id=po.id,
        action="CREATED",
        performed_by=created_by,
        new_status=po.status.value,
        new_values=audit_services.snapshot(po),
        notes=f"Purchase order created with {len(po.items)} line(s)",
        performed_at=now,
        ids=ids,
        critical=True,
    )
    logger.info("Purchase order created", extra={"tenant_id": tenant_id, "po_id": po.id})
    return po


def add_po_item(
    db: Session,
    *,
    tenant_id: str,
    po_id: str,
    user_id: str,
    data: schemas.POItemCreate,
    clock: Optional[Clock] = None,
    ids: Optional[IdSource] = None,
) -> models.POItem:
    po = get_purchase_order(db, tenant_id=tenant_id, po_id=po_id)
    if po.status != models.PurchaseOrderStatus.DRAFT:
        raise ValidationError(
            "Line items can only be added to DRAFT purchase orders",
            detail=[{"field": "status", "reason": f"Purchase order is {po.status.value}"}],
        )
    line_number = max((item.line_number for item in po.items), default=0) + 1
    _validate_items([data], start=line_number)

    now = resolve_clock(clock).now()
    ids = resolve_id_source(ids)
    old_values = audit_services.snapshot(po)
    item = _build_item(po, data, line_number=line_number, ids=ids, now=now)
    po.items.append(item)
    db.flush()

    compare_and_swap(
        db,
        model=models.PurchaseOrder,
        entity=po,
        tenant_id=tenant_id,
        values={"total_cost_cents": po.total_cost_cents + item.line_total_cents},
        label="Purchase order",
    )
    audit_services.log_event(
        db,
        tenant_id=tenant_id,
        entity_type=audit_models.AuditEntityType.PURCHASE_ORDER,
        subject_id=po.id,
        action="ITEM_ADDED",
        performed_by=user_id,
        old_values=old_values,
        new_values=audit_services.snapshot(po),
        notes=f"Line {line_number} added: {item.quantity_ordered} x {item.product_id}",
        performed_at=now,
        ids=ids,
        critical=True,
    )
    return item


def receive_po_items(
    db: Session,
    *,
    tenant_id: str,
    po_id: str,
    user_id: str,
    receipts: Sequence[schemas.POReceipt],
    clock: Optional[Clock] = None,
    ids: Optional[IdSource] = None,
) -> List[models.POItem]:
    """Add received quantities to the lines of an APPROVED order.

    All receipts are checked before any line changes; every line that would
    go over its ordered quantity is reported.
    """
    po = get_purchase_order(db, tenant_id=tenant_id, po_id=po_id)
    if po.status != models.PurchaseOrderStatus.APPROVED:
        raise ValidationError(
            "Items can only be received on APPROVED purchase orders",
            detail=[{"field": "status", "reason": f"Purchase order is {po.status.value}"}],
        )
    if not receipts:
        raise ValidationError("At least one receipt is required", detail=[{"field": "receipts", "reason": "Empty"}])

    items = {item.id: item for item in po.items}
    totals: Dict[str, int] = defaultdict(int)
    failures = []
    for index, receipt in enumerate(receipts):
        if receipt.po_item_id not in items:
            failures.append({"field": f"receipts[{index}].po_item_id", "reason": f"Line {receipt.po_item_id} is not on this order"})
        elif receipt.quantity_received <= 0:
            failures.append({"field": f"receipts[{index}].quantity_received", "reason": "Received quantity must be greater than 0"})
        else:
            totals[receipt.po_item_id] += receipt.quantity_received
    if failures:
        raise ValidationError("Invalid receipts", detail=failures)

    violations = []
    for item_id, quantity in totals.items():
        item = items[item_id]
        over = item.quantity_received + quantity - item.quantity_ordered
        if over > 0:
            violations.append(
                Violation(
                    type=ViolationType.QUANTITY_EXCEEDED,
                    field=f"items[{item.line_number}].quantity_received",
                    message=(
                        f"Line {item.line_number}: receiving {quantity} would exceed ordered "
                        f"quantity {item.quantity_ordered} by {over}"
                    ),
                    amount=over,
                )
            )
    if violations:
        raise ConstraintViolationError("Receipt exceeds ordered quantity", violations=violations)

    now = resolve_clock(clock).now()
    before = {item_id: items[item_id].quantity_received for item_id in totals}
    for item_id, quantity in totals.items():
        items[item_id].quantity_received += quantity
    db.flush()

    compare_and_swap(
        db,
        model=models.PurchaseOrder,
        entity=po,
        tenant_id=tenant_id,
        values={},
        label="Purchase order",
    )
    audit_services.log_event(
        db,
        tenant_id=tenant_id,
        entity_type=audit_models.AuditEntityType.PURCHASE_ORDER,
        subject_id=po.id,
        action="ITEMS_RECEIVED",
        performed_by=user_id,
        old_values={"quantity_received": before},
        new_values={"quantity_received": {item_id: items[item_id].quantity_received for item_id in totals}},
        notes=f"Received {sum(totals.values())} unit(s) across {len(totals)} line(s)",
        performed_at=now,
        ids=resolve_id_source(ids),
        critical=True,
    )
    return [items[item_id] for item_id in totals]


def _transition(
    db: Session,
    *,
    tenant_id: str,
    po_id: str,
    to_state: models.PurchaseOrderStatus,
    ctx: TransitionContext,
    clock: Optional[Clock],
    ids: Optional[IdSource],
    number_generator: Optional[PONumberGenerator] = None,
) -> POTransitionResult:
    po = get_purchase_order(db, tenant_id=tenant_id, po_id=po_id)
    machine = PurchaseOrderStateMachine(db, clock=clock, ids=ids, number_generator=number_generator)
    return machine.execute_transition(po, to_state, ctx)


def approve_purchase_order(
    db: Session,
    *,
    tenant_id: str,
    po_id: str,
    user_id: str,
    notes: Optional[str] = None,
    clock: Optional[Clock] = None,
    ids: Optional[IdSource] = None,
    number_generator: Optional[PONumberGenerator] = None,
) -> POTransitionResult:
    return _transition(
        db,
        tenant_id=tenant_id,
        po_id=po_id,
        to_state=models.PurchaseOrderStatus.APPROVED,
        ctx=TransitionContext(tenant_id=tenant_id, user_id=user_id, notes=notes),
        clock=clock,
        ids=ids,
        number_generator=number_generator,
    )


def receive_purchase_order(
    db: Session,
    *,
    tenant_id: str,
    po_id: str,
    user_id: str,
    notes: Optional[str] = None,
    clock: Optional[Clock] = None,
    ids: Optional[IdSource] = None,
) -> POTransitionResult:
    return _transition(
        db,
        tenant_id=tenant_id,
        po_id=po_id,
        to_state=models.PurchaseOrderStatus.RECEIVED,
        ctx=TransitionContext(tenant_id=tenant_id, user_id=user_id, notes=notes),
        clock=clock,
        ids=ids,
    )


def cancel_purchase_order(
    db: Session,
    *,
    tenant_id: str,
    po_id: str,
    user_id: str,
    reason: Optional[str] = None,
    clock: Optional[Clock] = None,
    ids: Optional[IdSource] = None,
) -> POTransitionResult:
    return _transition(
        db,
        tenant_id=tenant_id,
        po_id=po_id,
        to_state=models.PurchaseOrderStatus.CANCELLED,
        ctx=TransitionContext(tenant_id=tenant_id, user_id=user_id, reason=reason),
        clock=clock,
        ids=ids,
    )
