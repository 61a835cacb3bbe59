"""Purchase order lifecycle: DRAFT -> APPROVED -> RECEIVED, with cancellation.

Approval assigns the PO number and records the price paid for every line.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from procuredb.errors import ConcurrencyError
from procuredb.utils.clock import Clock, resolve_clock
from procuredb.utils.identifiers import IdSource, resolve_id_source
from procuredb.apps.audit.models import AuditLogEntry
from procuredb.apps.workflow import engine, registry
from procuredb.apps.workflow.engine import TransitionContext, ValidationResult
from procuredb.apps.purchasing import models, pricing
from procuredb.apps.purchasing.po_numbers import PONumberGenerator

PurchaseOrderStatus = models.PurchaseOrderStatus


@dataclass
class POTransitionResult:
    purchase_order: models.PurchaseOrder
    audit_entry: AuditLogEntry
    warnings: List[str] = field(default_factory=list)
    price_history: List[models.PriceHistory] = field(default_factory=list)


class PurchaseOrderStateMachine:
    entity_type = registry.PURCHASE_ORDER

    def __init__(
        self,
        db: Session,
        *,
        clock: Optional[Clock] = None,
        ids: Optional[IdSource] = None,
        number_generator: Optional[PONumberGenerator] = None,
    ):
        self.db = db
        self.clock = resolve_clock(clock)
        self.ids = resolve_id_source(ids)
        self.number_generator = number_generator or PONumberGenerator(db, clock=self.clock)

    def can_transition(self, from_state, to_state) -> bool:
        return engine.can_transition(self.entity_type, from_state, to_state)

    def get_valid_transitions(self, status) -> List[PurchaseOrderStatus]:
        return engine.allowed_transitions(self.entity_type, status)

    def validate_transition(
        self,
        po: models.PurchaseOrder,
        to_state,
        ctx: TransitionContext,
    ) -> ValidationResult:
        return engine.check_transition(
            self.db, entity_type=self.entity_type, entity=po, to_state=to_state, ctx=ctx
        )

    def execute_transition(
        self,
        po: models.PurchaseOrder,
        to_state,
        ctx: TransitionContext,
    ) -> POTransitionResult:
        validation = self.validate_transition(po, to_state, ctx)
        engine.raise_for_result(validation, entity_type=self.entity_type, entity=po, to_state=to_state)
        to_state = PurchaseOrderStatus(to_state)

        now = self.clock.now()
        if to_state == PurchaseOrderStatus.APPROVED:
            po_number = po.po_number or self.number_generator.generate(po.tenant_id)
            values = {"po_number": po_number, "approved_by": ctx.user_id, "approved_at": now}
            notes = ctx.notes or f"Purchase order approved as {po_number}"
        elif to_state == PurchaseOrderStatus.RECEIVED:
            values = {"received_by": ctx.user_id, "received_at": now}
            notes = ctx.notes or "Purchase order received"
        else:
            reason = (ctx.reason or "").strip() or None
            values = {"cancelled_by": ctx.user_id, "cancelled_at": now, "cancellation_reason": reason}
            notes = f"Purchase order cancelled: {reason}" if reason else "Purchase order cancelled"

        entry = self._apply(po, to_state, ctx, values=values, notes=notes, performed_at=now)
        result = POTransitionResult(purchase_order=po, audit_entry=entry, warnings=list(validation.warnings))
        if to_state == PurchaseOrderStatus.APPROVED:
            result.price_history = pricing.record_price_history(
                self.db, purchase_order=po, clock=self.clock, ids=self.ids
            )
        return result

    def _apply(self, po, to_state, ctx, *, values, notes, performed_at) -> AuditLogEntry:
        def apply() -> AuditLogEntry:
            return engine.apply_transition(
                self.db,
                entity_type=self.entity_type,
                entity=po,
                to_state=to_state,
                ctx=ctx,
                values=values,
                notes=notes,
                performed_at=performed_at,
                ids=self.ids,
            )

        if "po_number" not in values:
            return apply()
        # Another approval can claim the same number between generate() and the update.
        try:
            with self.db.begin_nested():
                return apply()
        except IntegrityError as exc:
            raise ConcurrencyError(
                f"PO number {values['po_number']} was taken by a concurrent approval",
                detail=[{"field": "po_number", "reason": "Reload and retry"}],
            ) from exc
