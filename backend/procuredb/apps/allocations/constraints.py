"""Rule checks shared by the allocation and transfer paths.

Every check returns all of its violations; callers decide whether to raise
``ConstraintViolationError`` with the whole list.
"""

from __future__ import annotations

import enum
import os
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List, Optional, Sequence

from sqlalchemy.orm import Session

from procuredb.errors import ConstraintViolationError, Violation, ViolationType
from procuredb.apps.accounts.models import UserRole
from procuredb.apps.accounts.services import UserContext
from procuredb.apps.purchasing import models as purchasing_models
from procuredb.apps.transfers import models as transfer_models
from procuredb.apps.workflow import registry
from procuredb.apps.workflow.engine import allowed_transitions, initial_state
from procuredb.apps.allocations import models
from procuredb.apps.allocations.engine import AllocationEngine

LARGE_QUANTITY_THRESHOLD = int(os.getenv("LARGE_QUANTITY_THRESHOLD", "10000"))


class AllocationOperation(str, enum.Enum):
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    STATUS_CHANGE = "STATUS_CHANGE"


class TransferAction(str, enum.Enum):
    REQUEST = "REQUEST"
    APPROVE = "APPROVE"
    SHIP = "SHIP"
    RECEIVE = "RECEIVE"
    CANCEL = "CANCEL"


@dataclass(frozen=True)
class ConstraintWarning:
    type: str
    field: str
    message: str


@dataclass
class ConstraintResult:
    violations: List[Violation] = field(default_factory=list)
    warnings: List[ConstraintWarning] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.violations

    def extend(self, other: "ConstraintResult") -> None:
        self.violations.extend(other.violations)
        self.warnings.extend(other.warnings)


@dataclass
class AllocationInput:
    po_item_id: str
    target_location_id: str
    quantity_allocated: int


def get_allowed_operations(status: Any) -> FrozenSet[AllocationOperation]:
    """Derived from the allocation transition table.

    Terminal states allow nothing. Quantities may change while the
    allocation can still be cancelled; only the initial state allows delete.
    """
    targets = allowed_transitions(registry.ALLOCATION, status)
    if not targets:
        return frozenset()
    operations = {AllocationOperation.STATUS_CHANGE}
    if models.AllocationStatus.CANCELLED in targets:
        operations.add(AllocationOperation.UPDATE)
    if models.AllocationStatus(status) == initial_state(registry.ALLOCATION):
        operations.add(AllocationOperation.DELETE)
    return frozenset(operations)


def check_location_access(user: UserContext, location_id: Optional[str]) -> bool:
    if user.is_privileged:
        return True
    if user.role == UserRole.STAFF:
        return bool(location_id) and user.location_id == location_id
    return False


class ConstraintSolver:
    def __init__(self, db: Optional[Session] = None, *, large_quantity_threshold: Optional[int] = None):
        self.db = db
        self.large_quantity_threshold = large_quantity_threshold or LARGE_QUANTITY_THRESHOLD
        self.engine = AllocationEngine(db)

    get_allowed_operations = staticmethod(get_allowed_operations)
    check_location_access = staticmethod(check_location_access)

    def check_quantity_rules(self, quantity: Optional[int], *, field: str = "quantity") -> ConstraintResult:
        result = ConstraintResult()
        if quantity is None or quantity <= 0:
            result.violations.append(
                Violation(
                    type=ViolationType.BUSINESS_RULE,
                    field=field,
                    message=f"{field} must be greater than 0",
                )
            )
        elif quantity > self.large_quantity_threshold:
            result.warnings.append(
                ConstraintWarning(
                    type="PERFORMANCE",
                    field=field,
                    message=f"Large quantity ({quantity}) above {self.large_quantity_threshold} may need review",
                )
            )
        return result

    def enforce_status_constraints(self, allocation: models.Allocation, operation: AllocationOperation) -> None:
        if operation not in get_allowed_operations(allocation.status):
            status = allocation.status.value if hasattr(allocation.status, "value") else allocation.status
            raise ConstraintViolationError(
                f"Operation {operation.value} is not allowed for allocation in status {status}",
                violations=[
                    Violation(
                        type=ViolationType.STATUS_INVALID,
                        field="status",
                        message=f"Operation {operation.value} is not allowed in status {status}",
                    )
                ],
            )

    def check_transfer_access(
        self,
        user: UserContext,
        transfer: Any,
        action: TransferAction,
    ) -> List[Violation]:
        if user.is_privileged:
            return []

        source = transfer.source_location_id
        destination = transfer.destination_location_id
        if action == TransferAction.REQUEST:
            allowed = check_location_access(user, source) or check_location_access(user, destination)
        elif action == TransferAction.RECEIVE:
            allowed = check_location_access(user, destination)
        elif action == TransferAction.CANCEL and transfer.status == transfer_models.TransferStatus.REQUESTED:
            allowed = user.user_id == transfer.requested_by
        else:
            allowed = check_location_access(user, source)

        if allowed:
            return []
        return [
            Violation(
                type=ViolationType.LOCATION_ACCESS,
                field="location_id",
                message=f"User {user.user_id} may not {action.value.lower()} this transfer",
            )
        ]

    def _load_items(self, tenant_id: str, item_ids: Sequence[str]) -> Dict[str, purchasing_models.POItem]:
        rows = (
            self.db.query(purchasing_models.POItem)
            .filter(
                purchasing_models.POItem.tenant_id == tenant_id,
                purchasing_models.POItem.id.in_(list(item_ids)),
            )
            .all()
        )
        return {row.id: row for row in rows}

    def _existing_allocations(
        self,
        tenant_id: str,
        po_item_id: str,
        exclude_allocation_id: Optional[str],
    ) -> List[models.Allocation]:
        query = self.db.query(models.Allocation).filter(
            models.Allocation.tenant_id == tenant_id,
            models.Allocation.po_item_id == po_item_id,
            models.Allocation.status != models.AllocationStatus.CANCELLED,
        )
        if exclude_allocation_id:
            query = query.filter(models.Allocation.id != exclude_allocation_id)
        return query.all()

    def check_quantity_constraints(
        self,
        allocations: Sequence[AllocationInput],
        *,
        tenant_id: str,
        exclude_allocation_id: Optional[str] = None,
    ) -> ConstraintResult:
        result = ConstraintResult()
        grouped: Dict[str, List[AllocationInput]] = defaultdict(list)
        for entry in allocations:
            result.extend(self.check_quantity_rules(entry.quantity_allocated, field="quantity_allocated"))
            grouped[entry.po_item_id].append(entry)

        items = self._load_items(tenant_id, list(grouped))
        for po_item_id, entries in grouped.items():
            item = items.get(po_item_id)
            if item is None:
                result.violations.append(
                    Violation(
                        type=ViolationType.BUSINESS_RULE,
                        field="po_item_id",
                        message=f"PO item {po_item_id} not found",
                    )
                )
                continue

            existing = self._existing_allocations(tenant_id, po_item_id, exclude_allocation_id)
            taken = {a.target_location_id for a in existing}
            seen = set()
            accepted: List[Any] = list(existing)
            for entry in entries:
                location_id = entry.target_location_id
                if location_id in seen:
                    result.violations.append(
                        Violation(
                            type=ViolationType.BUSINESS_RULE,
                            field="target_location_id",
                            message=f"Duplicate allocation to location {location_id} for PO item {po_item_id}",
                        )
                    )
                elif location_id in taken:
                    result.violations.append(
                        Violation(
                            type=ViolationType.BUSINESS_RULE,
                            field="target_location_id",
                            message=f"Location {location_id} already has an allocation for PO item {po_item_id}",
                        )
                    )
                seen.add(location_id)

                if (entry.quantity_allocated or 0) <= 0:
                    continue
                math_result = self.engine.validate_allocation_math(
                    po_item_id, accepted, entry, tenant_id=tenant_id
                )
                if math_result.over_allocation:
                    result.violations.append(
                        Violation(
                            type=ViolationType.QUANTITY_EXCEEDED,
                            field="quantity_allocated",
                            message=(
                                f"PO item {po_item_id}: allocation exceeds ordered quantity "
                                f"({item.quantity_ordered}) by {math_result.over_allocation} units"
                            ),
                            amount=math_result.over_allocation,
                        )
                    )
                accepted.append(entry)
        return result

    def validate_constraints(
        self,
        allocations: Sequence[AllocationInput],
        *,
        tenant_id: str,
        user: UserContext,
        exclude_allocation_id: Optional[str] = None,
    ) -> ConstraintResult:
        """Quantity, over-allocation, PO status and location access, all at once."""
        result = self.check_quantity_constraints(
            allocations, tenant_id=tenant_id, exclude_allocation_id=exclude_allocation_id
        )

        items = self._load_items(tenant_id, list({entry.po_item_id for entry in allocations}))
        flagged_pos = set()
        for item in items.values():
            po = item.purchase_order
            if po.status != purchasing_models.PurchaseOrderStatus.APPROVED and po.id not in flagged_pos:
                flagged_pos.add(po.id)
                result.violations.append(
                    Violation(
                        type=ViolationType.STATUS_INVALID,
                        field="po_status",
                        message=f"Purchase order {po.po_number or po.id} must be APPROVED to allocate (is {po.status.value})",
                    )
                )

        for location_id in dict.fromkeys(entry.target_location_id for entry in allocations):
            if not check_location_access(user, location_id):
                result.violations.append(
                    Violation(
                        type=ViolationType.LOCATION_ACCESS,
                        field="target_location_id",
                        message=f"User {user.user_id} has no access to location {location_id}",
                    )
                )
        return result
