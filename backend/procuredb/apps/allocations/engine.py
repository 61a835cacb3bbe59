"""Allocation arithmetic.

Splits an ordered quantity across destination locations and checks running
totals against the ordered quantity. Shares are always floored; whatever is
left over is reported as ``remaining_quantity`` and never auto-assigned, so
a plan can under-allocate but never over-allocate.
"""

from __future__ import annotations

import enum
import math
from dataclasses import dataclass, field
from decimal import ROUND_DOWN, Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from sqlalchemy import func
from sqlalchemy.orm import Session

from procuredb.errors import NotFoundError, ValidationError
from procuredb.apps.purchasing import models as purchasing_models
from procuredb.apps.allocations import models


class AllocationStrategyType(str, enum.Enum):
    EQUAL = "EQUAL"
    PERCENTAGE = "PERCENTAGE"
    FIXED_AMOUNT = "FIXED_AMOUNT"
    TEMPLATE = "TEMPLATE"
    MANUAL = "MANUAL"


@dataclass
class LocationPercentage:
    location_id: str
    percentage: float


@dataclass
class LocationShare:
    location_id: str
    requested_percentage: float
    quantity: int


@dataclass
class DistributionResult:
    allocations: List[LocationShare] = field(default_factory=list)
    total_distributed: int = 0
    remaining_quantity: int = 0
    distribution_accuracy: float = 0.0


@dataclass
class AllocationStrategy:
    type: AllocationStrategyType
    parameters: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PlannedAllocation:
    po_item_id: str
    location_id: str
    quantity: int


@dataclass
class AllocationPlan:
    allocations: List[PlannedAllocation] = field(default_factory=list)
    total_allocated: int = 0
    total_unallocated: int = 0
    feasible: bool = True
    optimization_score: float = 0.0
    errors: List[str] = field(default_factory=list)


@dataclass
class MathValidationResult:
    valid: bool
    total_allocated: int
    remaining_quantity: int
    over_allocation: int
    errors: List[str] = field(default_factory=list)


@dataclass
class DistributionAccuracy:
    accuracy: float
    max_deviation: float
    within_tolerance: bool
    deviations: Dict[str, float] = field(default_factory=dict)


def _get(obj: Any, key: str, default: Any = None) -> Any:
    if isinstance(obj, Mapping):
        return obj.get(key, default)
    return getattr(obj, key, default)


def _accuracy(total: int, shares: Sequence[LocationShare]) -> float:
    if not shares or total <= 0:
        return 0.0
    scores = []
    for share in shares:
        actual = share.quantity / total * 100
        scores.append(max(0.0, 100 - abs(share.requested_percentage - actual)))
    return sum(scores) / len(scores)


class AllocationEngine:
    def __init__(self, db: Optional[Session] = None):
        self.db = db

    def distribute_by_percentage(
        self,
        total_quantity: int,
        location_percentages: Iterable[LocationPercentage],
    ) -> DistributionResult:
        entries = [
            entry if isinstance(entry, LocationPercentage)
            else LocationPercentage(location_id=_get(entry, "location_id"), percentage=_get(entry, "percentage"))
            for entry in location_percentages
        ]
        if total_quantity <= 0:
            return DistributionResult()

        failures = [
            {"field": f"location_percentages[{e.location_id}]", "reason": "Percentage cannot be negative"}
            for e in entries
            if e.percentage < 0
        ]
        if failures:
            raise ValidationError("Percentages cannot be negative", detail=failures)
        requested_total = sum(e.percentage for e in entries)
        if requested_total > 100:
            message = f"Total percentage ({requested_total:g}%) exceeds 100%"
            raise ValidationError(message, detail=[{"field": "location_percentages", "reason": message}])

        shares = [
            LocationShare(
                location_id=e.location_id,
                requested_percentage=e.percentage,
                quantity=math.floor(Decimal(str(e.percentage)) * total_quantity / 100),
            )
            for e in entries
        ]
        distributed = sum(share.quantity for share in shares)
        return DistributionResult(
            allocations=shares,
            total_distributed=distributed,
            remaining_quantity=total_quantity - distributed,
            distribution_accuracy=_accuracy(total_quantity, shares),
        )

    def calculate_optimal_allocation(
        self,
        po_items: Sequence[Any],
        locations: Sequence[str],
        strategy: AllocationStrategy,
    ) -> AllocationPlan:
        if not po_items or not locations:
            return AllocationPlan(
                feasible=False,
                errors=["At least one PO item and one location are required"],
            )

        plan = AllocationPlan()
        scores: List[float] = []
        for item in po_items:
            item_plan, score = self._plan_item(item, locations, strategy)
            plan.allocations.extend(item_plan.allocations)
            plan.total_allocated += item_plan.total_allocated
            plan.total_unallocated += item_plan.total_unallocated
            plan.errors.extend(item_plan.errors)
            if not item_plan.feasible:
                plan.feasible = False
            scores.append(score)

        # Cross-check the combined plan: no item may be over-committed.
        per_item: Dict[str, int] = {}
        for planned in plan.allocations:
            per_item[planned.po_item_id] = per_item.get(planned.po_item_id, 0) + planned.quantity
        for item in po_items:
            allocated = per_item.get(_get(item, "id"), 0)
            ordered = _get(item, "quantity_ordered", 0)
            if allocated > ordered:
                plan.feasible = False

        plan.optimization_score = sum(scores) / len(scores) if scores else 0.0
        return plan

    def _plan_item(self, item: Any, locations: Sequence[str], strategy: AllocationStrategy):
        item_id = _get(item, "id")
        ordered = _get(item, "quantity_ordered", 0)
        params = strategy.parameters or {}

        if strategy.type == AllocationStrategyType.MANUAL:
            return AllocationPlan(total_unallocated=ordered), 0.0

        if strategy.type == AllocationStrategyType.FIXED_AMOUNT:
            amounts = params.get("location_amounts") or {}
            planned = [
                PlannedAllocation(po_item_id=item_id, location_id=loc, quantity=int(amounts[loc]))
                for loc in locations
                if amounts.get(loc, 0) > 0
            ]
            total = sum(p.quantity for p in planned)
            if total > ordered:
                return (
                    AllocationPlan(
                        allocations=planned,
                        total_allocated=total,
                        total_unallocated=0,
                        feasible=False,
                        errors=[f"Item {item_id}: fixed amounts ({total}) exceed ordered quantity ({ordered})"],
                    ),
                    0.0,
                )
            return AllocationPlan(allocations=planned, total_allocated=total, total_unallocated=ordered - total), 100.0

        if strategy.type == AllocationStrategyType.EQUAL:
            share = float((Decimal(100) / len(locations)).quantize(Decimal("0.01"), rounding=ROUND_DOWN))
            percentages = [LocationPercentage(location_id=loc, percentage=share) for loc in locations]
        elif strategy.type == AllocationStrategyType.TEMPLATE:
            template = params.get("template") or []
            if not template:
                return AllocationPlan(total_unallocated=ordered), 0.0
            percentages = [
                LocationPercentage(location_id=_get(entry, "location_id"), percentage=_get(entry, "percentage"))
                for entry in template
                if _get(entry, "location_id") in locations
            ]
        else:
            mapping = params.get("location_percentages") or {}
            percentages = [
                LocationPercentage(location_id=loc, percentage=mapping[loc])
                for loc in locations
                if mapping.get(loc, 0) > 0
            ]

        result = self.distribute_by_percentage(ordered, percentages)
        planned = [
            PlannedAllocation(po_item_id=item_id, location_id=share.location_id, quantity=share.quantity)
            for share in result.allocations
            if share.quantity > 0
        ]
        return (
            AllocationPlan(
                allocations=planned,
                total_allocated=result.total_distributed,
                total_unallocated=result.remaining_quantity if ordered > 0 else 0,
            ),
            result.distribution_accuracy,
        )

    def _get_po_item(self, po_item_id: str, tenant_id: str) -> purchasing_models.POItem:
        if self.db is None:
            raise RuntimeError("AllocationEngine needs a session for persisted lookups")
        item = (
            self.db.query(purchasing_models.POItem)
            .filter(
                purchasing_models.POItem.id == po_item_id,
                purchasing_models.POItem.tenant_id == tenant_id,
            )
            .first()
        )
        if item is None:
            raise NotFoundError("PO item", po_item_id)
        return item

    def validate_allocation_math(
        self,
        po_item_id: str,
        existing_allocations: Iterable[Any],
        new_allocation: Any,
        *,
        tenant_id: str,
    ) -> MathValidationResult:
        """Single authoritative over-allocation check for one PO item.

        Cancelled allocations and allocations of other items are ignored.
        """
        ordered = self._get_po_item(po_item_id, tenant_id).quantity_ordered
        current = sum(
            _get(a, "quantity_allocated", 0) or 0
            for a in existing_allocations
            if _get(a, "po_item_id") == po_item_id
            and _get(a, "status") != models.AllocationStatus.CANCELLED
        )
        quantity = _get(new_allocation, "quantity_allocated", 0) or 0
        errors: List[str] = []
        if quantity <= 0:
            errors.append("Allocation quantity must be greater than 0")

        total = current + quantity
        over = max(0, total - ordered)
        if over:
            errors.append(
                f"Allocation would exceed ordered quantity by {over} units "
                f"(ordered {ordered}, allocated {total})"
            )
        return MathValidationResult(
            valid=not errors,
            total_allocated=total,
            remaining_quantity=max(0, ordered - total),
            over_allocation=over,
            errors=errors,
        )

    def calculate_unallocated_quantity(self, po_item_id: str, tenant_id: str) -> int:
        """Live query; callers size the next allocation from it."""
        item = self._get_po_item(po_item_id, tenant_id)
        allocated = (
            self.db.query(func.coalesce(func.sum(models.Allocation.quantity_allocated), 0))
            .filter(
                models.Allocation.tenant_id == tenant_id,
                models.Allocation.po_item_id == po_item_id,
                models.Allocation.status != models.AllocationStatus.CANCELLED,
            )
            .scalar()
        )
        return max(0, item.quantity_ordered - int(allocated or 0))

    @staticmethod
    def validate_distribution_accuracy(
        requested: Mapping[str, float],
        actual: Mapping[str, int],
        *,
        tolerance: float = 1.0,
    ) -> DistributionAccuracy:
        """Compare requested percentages with the quantities actually allocated."""
        total = sum(actual.values())
        deviations: Dict[str, float] = {}
        for location_id, pct in requested.items():
            actual_pct = (actual.get(location_id, 0) / total * 100) if total else 0.0
            deviations[location_id] = abs(pct - actual_pct)
        max_deviation = max(deviations.values(), default=0.0)
        scores = [max(0.0, 100 - deviation) for deviation in deviations.values()]
        return DistributionAccuracy(
            accuracy=sum(scores) / len(scores) if scores else 0.0,
            max_deviation=max_deviation,
            within_tolerance=max_deviation <= tolerance,
            deviations=deviations,
        )
