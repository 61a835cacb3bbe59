"""Transfer lifecycle: REQUESTED -> APPROVED -> SHIPPED -> RECEIVED.

REQUESTED and APPROVED transfers may be cancelled; shipped transfers may
not. Shipping claims stock at the source through a reservation; receiving
releases it, moves stock and raises a variance alert for any shortfall.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from typing import List, Optional

from sqlalchemy.orm import Session

from procuredb.errors import ConstraintViolationError, Violation, ViolationType
from procuredb.utils.clock import Clock, resolve_clock
from procuredb.utils.identifiers import IdSource, resolve_id_source
from procuredb.apps.audit.models import AuditLogEntry
from procuredb.apps.notifications.providers import NotificationProvider
from procuredb.apps.variance import services as variance_services
from procuredb.apps.variance.models import VarianceAlert
from procuredb.apps.workflow import engine, registry
from procuredb.apps.workflow.engine import TransitionContext, ValidationResult
from procuredb.apps.transfers import models, stock
from procuredb.apps.transfers.reservations import InventoryReservationManager

TransferStatus = models.TransferStatus


@dataclass
class TransferTransitionResult:
    transfer: models.Transfer
    audit_entry: AuditLogEntry
    warnings: List[str] = field(default_factory=list)
    reservation: Optional[models.InventoryReservation] = None
    released_reservations: int = 0
    variance_alert: Optional[VarianceAlert] = None


class TransferStateMachine:
    entity_type = registry.TRANSFER

    def __init__(
        self,
        db: Session,
        *,
        clock: Optional[Clock] = None,
        ids: Optional[IdSource] = None,
        reservations: Optional[InventoryReservationManager] = None,
        provider: Optional[NotificationProvider] = None,
        reservation_ttl: Optional[timedelta] = None,
    ):
        self.db = db
        self.clock = resolve_clock(clock)
        self.ids = resolve_id_source(ids)
        self.reservations = reservations or InventoryReservationManager(db, clock=self.clock, ids=self.ids)
        self.provider = provider
        self.reservation_ttl = reservation_ttl

    def can_transition(self, from_state, to_state) -> bool:
        return engine.can_transition(self.entity_type, from_state, to_state)

    def get_valid_transitions(self, status) -> List[TransferStatus]:
        return engine.allowed_transitions(self.entity_type, status)

    def validate_transition(
        self,
        transfer: models.Transfer,
        to_state,
        ctx: TransitionContext,
    ) -> ValidationResult:
        result = engine.check_transition(
            self.db, entity_type=self.entity_type, entity=transfer, to_state=to_state, ctx=ctx
        )
        if result.valid and TransferStatus(to_state) == TransferStatus.RECEIVED:
            variance = (transfer.quantity_shipped or 0) - ctx.receiving.quantity_received
            if variance > 0 and not (ctx.receiving.variance_reason or "").strip():
                result.warnings.append(
                    f"Shrinkage detected: {variance} units. "
                    "Consider providing a variance reason for tracking purposes."
                )
        return result

    def execute_transition(
        self,
        transfer: models.Transfer,
        to_state,
        ctx: TransitionContext,
    ) -> TransferTransitionResult:
        validation = self.validate_transition(transfer, to_state, ctx)
        engine.raise_for_result(validation, entity_type=self.entity_type, entity=transfer, to_state=to_state)
        to_state = TransferStatus(to_state)

        now = self.clock.now()
        from_state = transfer.status

        if to_state == TransferStatus.APPROVED:
            values = {"approved_by": ctx.user_id, "approved_at": now}
            action = "APPROVED"
            notes = ctx.notes or f"Transfer approved by {ctx.user_id}"
        elif to_state == TransferStatus.SHIPPED:
            quantity = ctx.quantity_shipped if ctx.quantity_shipped is not None else transfer.quantity_requested
            self._ensure_stock_for_shipment(transfer, quantity)
            values = {"shipped_by": ctx.user_id, "shipped_at": now, "quantity_shipped": quantity}
            action = "SHIPPED"
            notes = f"Shipped {quantity} of {transfer.quantity_requested} units"
        elif to_state == TransferStatus.RECEIVED:
            received = ctx.receiving.quantity_received
            variance = transfer.quantity_shipped - received
            reason = variance_services.normalise_code(ctx.receiving.variance_reason) or None
            values = {
                "received_by": ctx.user_id,
                "received_at": now,
                "quantity_received": received,
                "variance_reason": reason if variance > 0 else None,
            }
            action = "RECEIVED"
            notes = f"Received {received} of {transfer.quantity_shipped} units"
            if variance > 0:
                notes += f" (variance: {variance} units, reason: {reason or 'not provided'})"
            if ctx.receiving.notes:
                notes += f". {ctx.receiving.notes}"
        else:
            reason = ctx.reason.strip()
            values = {"cancelled_by": ctx.user_id, "cancelled_at": now, "cancellation_reason": reason}
            if from_state == TransferStatus.REQUESTED:
                action = "REJECTED"
                notes = f"Transfer rejected: {reason}"
            else:
                action = "CANCELLED"
                notes = f"Transfer cancelled: {reason}"

        entry = engine.apply_transition(
            self.db,
            entity_type=self.entity_type,
            entity=transfer,
            to_state=to_state,
            ctx=ctx,
            values=values,
            action=action,
            notes=notes,
            performed_at=now,
            ids=self.ids,
        )
        result = TransferTransitionResult(transfer=transfer, audit_entry=entry, warnings=list(validation.warnings))

        if to_state == TransferStatus.SHIPPED:
            result.reservation = self.reservations.reserve(
                tenant_id=transfer.tenant_id,
                transfer_id=transfer.id,
                product_id=transfer.product_id,
                location_id=transfer.source_location_id,
                quantity=transfer.quantity_shipped,
                reserved_by=ctx.user_id,
                ttl=self.reservation_ttl,
            )
        elif to_state == TransferStatus.RECEIVED:
            result.released_reservations = self.reservations.release_for_transfer(
                transfer.id, tenant_id=transfer.tenant_id
            )
            self._move_stock(transfer)
            if transfer.variance > 0:
                result.variance_alert = variance_services.evaluate_receipt(
                    self.db, transfer=transfer, clock=self.clock, ids=self.ids, provider=self.provider
                )
        elif to_state == TransferStatus.CANCELLED:
            result.released_reservations = self.reservations.release_for_transfer(
                transfer.id, tenant_id=transfer.tenant_id
            )
        return result

    def _ensure_stock_for_shipment(self, transfer: models.Transfer, quantity: int) -> None:
        availability = self.reservations.check_availability(
            tenant_id=transfer.tenant_id,
            product_id=transfer.product_id,
            location_id=transfer.source_location_id,
            exclude_transfer_id=transfer.id,
        )
        if not availability.covers(quantity):
            raise ConstraintViolationError(
                "Insufficient stock at source location",
                violations=[
                    Violation(
                        type=ViolationType.QUANTITY_EXCEEDED,
                        field="quantity_shipped",
                        message=(
                            f"Available at source is {availability.available}; "
                            f"cannot ship {quantity}"
                        ),
                        amount=quantity - availability.available,
                    )
                ],
            )

    def _move_stock(self, transfer: models.Transfer) -> None:
        stock.adjust_on_hand(
            self.db,
            tenant_id=transfer.tenant_id,
            product_id=transfer.product_id,
            location_id=transfer.source_location_id,
            delta=-transfer.quantity_shipped,
        )
        if transfer.quantity_received:
            stock.adjust_on_hand(
                self.db,
                tenant_id=transfer.tenant_id,
                product_id=transfer.product_id,
                location_id=transfer.destination_location_id,
                delta=transfer.quantity_received,
            )
