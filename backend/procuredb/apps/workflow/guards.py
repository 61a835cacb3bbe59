from __future__ import annotations

from typing import Any, Dict, List

from sqlalchemy.orm import Session

from procuredb.apps.variance import services as variance_services

GuardResult = List[Dict[str, str]]


def _get_value(obj: Any, key: str) -> Any:
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(key)
    return getattr(obj, key, None)


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    return False


def guard_po_line_items(db: Session, *, entity: Any, ctx: Any, from_state: Any, to_state: Any) -> GuardResult:
    items = list(_get_value(entity, "items") or [])
    if not items:
        return [{"field": "items", "reason": "Purchase order must have at least one line item"}]

    failures: GuardResult = []
    for index, item in enumerate(items, start=1):
        quantity = _get_value(item, "quantity_ordered")
        price = _get_value(item, "unit_price_cents")
        if quantity is None or quantity <= 0:
            failures.append(
                {"field": f"items[{index}].quantity_ordered", "reason": f"Line {index}: quantity must be greater than 0"}
            )
        if price is None or price < 0:
            failures.append(
                {"field": f"items[{index}].unit_price_cents", "reason": f"Line {index}: unit price cannot be negative"}
            )
    return failures


def guard_po_number(db: Session, *, entity: Any, ctx: Any, from_state: Any, to_state: Any) -> GuardResult:
    if _is_blank(_get_value(entity, "po_number")):
        return [{"field": "po_number", "reason": "Purchase order must have a PO number before it can be received"}]
    return []


def guard_cancellation_reason(db: Session, *, entity: Any, ctx: Any, from_state: Any, to_state: Any) -> GuardResult:
    if _is_blank(_get_value(ctx, "reason")):
        return [{"field": "reason", "reason": "A cancellation reason is required"}]
    return []


def guard_ship_quantity(db: Session, *, entity: Any, ctx: Any, from_state: Any, to_state: Any) -> GuardResult:
    requested = _get_value(entity, "quantity_requested") or 0
    shipped = _get_value(ctx, "quantity_shipped")
    if shipped is None:
        shipped = requested
    if shipped <= 0:
        return [{"field": "quantity_shipped", "reason": "Quantity shipped must be greater than 0"}]
    if shipped > requested:
        return [
            {
                "field": "quantity_shipped",
                "reason": f"Quantity shipped ({shipped}) cannot exceed quantity requested ({requested})",
            }
        ]
    return []


def guard_receiving_data(db: Session, *, entity: Any, ctx: Any, from_state: Any, to_state: Any) -> GuardResult:
    receiving = _get_value(ctx, "receiving")
    if receiving is None:
        return [{"field": "receiving", "reason": "Receiving data is required"}]

    failures: GuardResult = []
    received = _get_value(receiving, "quantity_received")
    shipped = _get_value(entity, "quantity_shipped") or 0
    if received is None or received < 0:
        failures.append({"field": "quantity_received", "reason": "Quantity received cannot be negative"})
    elif received > shipped:
        failures.append(
            {
                "field": "quantity_received",
                "reason": f"Quantity received ({received}) cannot exceed quantity shipped ({shipped})",
            }
        )

    reason_code = _get_value(receiving, "variance_reason")
    if not _is_blank(reason_code) and not variance_services.is_valid_reason_code(
        db, tenant_id=_get_value(entity, "tenant_id"), code=reason_code
    ):
        failures.append({"field": "variance_reason", "reason": f"Unknown variance reason code: {reason_code}"})
    return failures
