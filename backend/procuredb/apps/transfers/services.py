from __future__ import annotations

import logging
from typing import List, Optional

from sqlalchemy.orm import Session

from procuredb.errors import ConstraintViolationError, NotFoundError, ValidationError, Violation, ViolationType
from procuredb.utils.clock import Clock, resolve_clock
from procuredb.utils.identifiers import IdSource, resolve_id_source
from procuredb.apps.accounts import services as account_services
from procuredb.apps.allocations.constraints import ConstraintSolver, TransferAction
from procuredb.apps.audit import models as audit_models
from procuredb.apps.audit import services as audit_services
from procuredb.apps.notifications import providers as notification_providers
from procuredb.apps.notifications import service as notification_service
from procuredb.apps.workflow.engine import TransitionContext
from procuredb.apps.transfers import models, schemas
from procuredb.apps.transfers.reservations import InventoryReservationManager
from procuredb.apps.transfers.state_machine import TransferStateMachine, TransferTransitionResult

logger = logging.getLogger(__name__)


def get_transfer(db: Session, *, tenant_id: str, transfer_id: str) -> models.Transfer:
    transfer = (
        db.query(models.Transfer)
        .filter(models.Transfer.id == transfer_id, models.Transfer.tenant_id == tenant_id)
        .first()
    )
    if transfer is None:
        raise NotFoundError("Transfer", transfer_id)
    return transfer


def list_transfers(
    db: Session,
    *,
    tenant_id: str,
    status: Optional[models.TransferStatus] = None,
    location_id: Optional[str] = None,
) -> List[models.Transfer]:
    query = db.query(models.Transfer).filter(models.Transfer.tenant_id == tenant_id)
    if status is not None:
        query = query.filter(models.Transfer.status == status)
    if location_id:
        query = query.filter(
            (models.Transfer.source_location_id == location_id)
            | (models.Transfer.destination_location_id == location_id)
        )
    return query.order_by(models.Transfer.created_at.desc(), models.Transfer.id.desc()).all()


def get_transfer_history(db: Session, *, tenant_id: str, transfer_id: str) -> List[audit_models.AuditLogEntry]:
    get_transfer(db, tenant_id=tenant_id, transfer_id=transfer_id)
    return audit_services.list_audit_entries(
        db,
        tenant_id=tenant_id,
        entity_type=audit_models.AuditEntityType.TRANSFER,
        subject_id=transfer_id,
    )


def _raise_access(violations: List[Violation]) -> None:
    if violations:
        raise ConstraintViolationError(violations[0].message, violations=violations)


def _notify_location(
    db: Session,
    *,
    tenant_id: str,
    location_id: str,
    transfer: models.Transfer,
    event_type: str,
    exclude_user_id: Optional[str] = None,
    provider: Optional[notification_providers.NotificationProvider] = None,
    clock: Optional[Clock] = None,
) -> None:
    recipients = [
        user.id
        for user in account_services.list_location_users(db, tenant_id=tenant_id, location_id=location_id)
        if user.id != exclude_user_id
    ]
    notification_service.notify_many(
        db,
        tenant_id=tenant_id,
        recipients=recipients,
        event_type=event_type,
        payload={
            "transfer_id": transfer.id,
            "product_id": transfer.product_id,
            "status": transfer.status.value,
            "quantity_requested": transfer.quantity_requested,
        },
        provider=provider,
        clock=clock,
    )


def create_transfer_request(
    db: Session,
    *,
    tenant_id: str,
    requested_by: str,
    data: schemas.TransferCreate,
    clock: Optional[Clock] = None,
    ids: Optional[IdSource] = None,
    provider: Optional[notification_providers.NotificationProvider] = None,
) -> models.Transfer:
    """Open a REQUESTED transfer after checking access and source availability."""
    clock = resolve_clock(clock)
    ids = resolve_id_source(ids)

    if data.source_location_id == data.destination_location_id:
        raise ValidationError(
            "Source and destination locations must be different",
            detail=[{"field": "destination_location_id", "reason": "Must differ from source location"}],
        )

    user = account_services.get_user_context(db, user_id=requested_by, tenant_id=tenant_id)
    solver = ConstraintSolver(db)
    _raise_access(solver.check_transfer_access(user, data, TransferAction.REQUEST))

    rules = solver.check_quantity_rules(data.quantity_requested, field="quantity_requested")
    if not rules.valid:
        raise ConstraintViolationError(rules.violations[0].message, violations=rules.violations)

    availability = InventoryReservationManager(db, clock=clock, ids=ids).check_availability(
        tenant_id=tenant_id,
        product_id=data.product_id,
        location_id=data.source_location_id,
    )
    if not availability.covers(data.quantity_requested):
        raise ConstraintViolationError(
            "Insufficient stock at source location",
            violations=[
                Violation(
                    type=ViolationType.QUANTITY_EXCEEDED,
                    field="quantity_requested",
                    message=(
                        f"Available at source is {availability.available}; "
                        f"cannot request {data.quantity_requested}"
                    ),
                    amount=data.quantity_requested - availability.available,
                )
            ],
        )

    now = clock.now()
    transfer = models.Transfer(
        id=ids.new_id(),
        tenant_id=tenant_id,
        product_id=data.product_id,
        source_location_id=data.source_location_id,
        destination_location_id=data.destination_location_id,
        quantity_requested=data.quantity_requested,
        priority=data.priority,
        status=models.TransferStatus.REQUESTED,
        requested_by=requested_by,
        notes=data.notes,
        created_at=now,
        updated_at=now,
    )
    db.add(transfer)
    db.flush()

    audit_services.log_event(
        db,
        tenant_id=tenant_id,
        entity_type=audit_models.AuditEntityType.TRANSFER,
        subject_id=transfer.id,
        action="CREATED",
        performed_by=requested_by,
        new_status=transfer.status.value,
        new_values=audit_services.snapshot(transfer),
        notes=f"Transfer requested: {transfer.quantity_requested} units",
        performed_at=now,
        ids=ids,
        critical=True,
    )
    logger.info(
        "Transfer requested",
        extra={"tenant_id": tenant_id, "transfer_id": transfer.id, "requested_by": requested_by},
    )
    _notify_location(
        db,
        tenant_id=tenant_id,
        location_id=transfer.source_location_id,
        transfer=transfer,
        event_type="transfer.requested",
        exclude_user_id=requested_by,
        provider=provider,
        clock=clock,
    )
    return transfer


def _run_transition(
    db: Session,
    *,
    tenant_id: str,
    transfer_id: str,
    user_id: str,
    action: TransferAction,
    to_state: models.TransferStatus,
    ctx: TransitionContext,
    clock: Optional[Clock],
    ids: Optional[IdSource],
    provider: Optional[notification_providers.NotificationProvider],
    notify_location: str,
) -> TransferTransitionResult:
    clock = resolve_clock(clock)
    transfer = get_transfer(db, tenant_id=tenant_id, transfer_id=transfer_id)
    user = account_services.get_user_context(db, user_id=user_id, tenant_id=tenant_id)
    _raise_access(ConstraintSolver(db).check_transfer_access(user, transfer, action))

    machine = TransferStateMachine(db, clock=clock, ids=ids, provider=provider)
    result = machine.execute_transition(transfer, to_state, ctx)

    location_id = getattr(transfer, notify_location)
    _notify_location(
        db,
        tenant_id=tenant_id,
        location_id=location_id,
        transfer=transfer,
        event_type=f"transfer.{to_state.value.lower()}",
        exclude_user_id=user_id,
        provider=provider,
        clock=clock,
    )
    return result


def approve_transfer(
    db: Session,
    *,
    tenant_id: str,
    transfer_id: str,
    user_id: str,
    notes: Optional[str] = None,
    clock: Optional[Clock] = None,
    ids: Optional[IdSource] = None,
    provider: Optional[notification_providers.NotificationProvider] = None,
) -> TransferTransitionResult:
    return _run_transition(
        db,
        tenant_id=tenant_id,
        transfer_id=transfer_id,
        user_id=user_id,
        action=TransferAction.APPROVE,
        to_state=models.TransferStatus.APPROVED,
        ctx=TransitionContext(tenant_id=tenant_id, user_id=user_id, notes=notes),
        clock=clock,
        ids=ids,
        provider=provider,
        notify_location="destination_location_id",
    )


def ship_transfer(
    db: Session,
    *,
    tenant_id: str,
    transfer_id: str,
    user_id: str,
    quantity_shipped: Optional[int] = None,
    clock: Optional[Clock] = None,
    ids: Optional[IdSource] = None,
    provider: Optional[notification_providers.NotificationProvider] = None,
) -> TransferTransitionResult:
    return _run_transition(
        db,
        tenant_id=tenant_id,
        transfer_id=transfer_id,
        user_id=user_id,
        action=TransferAction.SHIP,
        to_state=models.TransferStatus.SHIPPED,
        ctx=TransitionContext(tenant_id=tenant_id, user_id=user_id, quantity_shipped=quantity_shipped),
        clock=clock,
        ids=ids,
        provider=provider,
        notify_location="destination_location_id",
    )


def receive_transfer(
    db: Session,
    *,
    tenant_id: str,
    transfer_id: str,
    user_id: str,
    receiving: schemas.ReceivingData,
    clock: Optional[Clock] = None,
    ids: Optional[IdSource] = None,
    provider: Optional[notification_providers.NotificationProvider] = None,
) -> TransferTransitionResult:
    return _run_transition(
        db,
        tenant_id=tenant_id,
        transfer_id=transfer_id,
        user_id=user_id,
        action=TransferAction.RECEIVE,
        to_state=models.TransferStatus.RECEIVED,
        ctx=TransitionContext(tenant_id=tenant_id, user_id=user_id, receiving=receiving),
        clock=clock,
        ids=ids,
        provider=provider,
        notify_location="source_location_id",
    )


def cancel_transfer(
    db: Session,
    *,
    tenant_id: str,
    transfer_id: str,
    user_id: str,
    reason: Optional[str],
    clock: Optional[Clock] = None,
    ids: Optional[IdSource] = None,
    provider: Optional[notification_providers.NotificationProvider] = None,
) -> TransferTransitionResult:
    return _run_transition(
        db,
        tenant_id=tenant_id,
        transfer_id=transfer_id,
        user_id=user_id,
        action=TransferAction.CANCEL,
        to_state=models.TransferStatus.CANCELLED,
        ctx=TransitionContext(tenant_id=tenant_id, user_id=user_id, reason=reason),
        clock=clock,
        ids=ids,
        provider=provider,
        notify_location="destination_location_id",
    )
