from __future__ import annotations

from typing import Optional

from sqlalchemy.orm import Session

from procuredb.errors import ConstraintViolationError, ValidationError, Violation, ViolationType
from procuredb.apps.transfers import models


def get_stock_level(
    db: Session,
    *,
    tenant_id: str,
    product_id: str,
    location_id: str,
) -> Optional[models.StockLevel]:
    return (
        db.query(models.StockLevel)
        .filter(
            models.StockLevel.tenant_id == tenant_id,
            models.StockLevel.product_id == product_id,
            models.StockLevel.location_id == location_id,
        )
        .first()
    )


def get_on_hand(db: Session, *, tenant_id: str, product_id: str, location_id: str) -> int:
    level = get_stock_level(db, tenant_id=tenant_id, product_id=product_id, location_id=location_id)
    return level.quantity_on_hand if level else 0


def set_on_hand(
    db: Session,
    *,
    tenant_id: str,
    product_id: str,
    location_id: str,
    quantity: int,
) -> models.StockLevel:
    if quantity < 0:
        raise ValidationError(
            "On-hand quantity cannot be negative",
            detail=[{"field": "quantity", "reason": "On-hand quantity cannot be negative"}],
        )
    level = get_stock_level(db, tenant_id=tenant_id, product_id=product_id, location_id=location_id)
    if level is None:
        level = models.StockLevel(tenant_id=tenant_id, product_id=product_id, location_id=location_id)
        db.add(level)
    level.quantity_on_hand = quantity
    db.flush()
    return level


def adjust_on_hand(
    db: Session,
    *,
    tenant_id: str,
    product_id: str,
    location_id: str,
    delta: int,
) -> models.StockLevel:
    level = get_stock_level(db, tenant_id=tenant_id, product_id=product_id, location_id=location_id)
    current = level.quantity_on_hand if level else 0
    if current + delta < 0:
        raise ConstraintViolationError(
            "Insufficient on-hand stock",
            violations=[
                Violation(
                    type=ViolationType.QUANTITY_EXCEEDED,
                    field="quantity_on_hand",
                    message=f"On-hand at {location_id} is {current}; cannot remove {-delta}",
                    amount=-(current + delta),
                )
            ],
        )
    if level is None:
        level = models.StockLevel(tenant_id=tenant_id, product_id=product_id, location_id=location_id)
        db.add(level)
    level.quantity_on_hand = current + delta
    db.flush()
    return level
