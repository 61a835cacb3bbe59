from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from procuredb.utils.clock import Clock, resolve_clock
from procuredb.utils.identifiers import IdSource, resolve_id_source
from procuredb.apps.purchasing import models

SUGGESTION_WINDOW = 10
DEFAULT_HISTORY_LIMIT = 20
MAX_HISTORY_LIMIT = 100


@dataclass
class PriceSuggestion:
    suggested_price_cents: int
    last_purchase_at: datetime
    confidence: str
    data_points: int
    price_variance: Optional[float] = None


def record_price_history(
    db: Session,
    *,
    purchase_order: models.PurchaseOrder,
    clock: Optional[Clock] = None,
    ids: Optional[IdSource] = None,
) -> List[models.PriceHistory]:
    """One row per line of an approved purchase order."""
    now = resolve_clock(clock).now()
    ids = resolve_id_source(ids)
    rows = []
    for item in purchase_order.items:
        row = models.PriceHistory(
            id=ids.new_id(),
            tenant_id=purchase_order.tenant_id,
            supplier_id=purchase_order.supplier_id,
            product_id=item.product_id,
            po_id=purchase_order.id,
            unit_price_cents=item.unit_price_cents,
            recorded_at=now,
        )
        db.add(row)
        rows.append(row)
    if rows:
        db.flush()
    return rows


def get_price_history(
    db: Session,
    *,
    tenant_id: str,
    supplier_id: str,
    product_id: str,
    limit: int = DEFAULT_HISTORY_LIMIT,
) -> List[models.PriceHistory]:
    if limit <= 0 or limit > MAX_HISTORY_LIMIT:
        limit = DEFAULT_HISTORY_LIMIT
    return (
        db.query(models.PriceHistory)
        .filter(
            models.PriceHistory.tenant_id == tenant_id,
            models.PriceHistory.supplier_id == supplier_id,
            models.PriceHistory.product_id == product_id,
        )
        .order_by(models.PriceHistory.recorded_at.desc(), models.PriceHistory.id.desc())
        .limit(limit)
        .all()
    )


def get_suggested_price(
    db: Session,
    *,
    tenant_id: str,
    supplier_id: str,
    product_id: str,
) -> Optional[PriceSuggestion]:
    """Latest price paid, with a confidence from how consistent recent prices are.

    HIGH needs at least three points within 10% of each other (coefficient
    of variation); MEDIUM needs two; anything else is LOW.
    """
    history = get_price_history(
        db, tenant_id=tenant_id, supplier_id=supplier_id, product_id=product_id, limit=SUGGESTION_WINDOW
    )
    if not history:
        return None

    latest = history[0]
    suggestion = PriceSuggestion(
        suggested_price_cents=latest.unit_price_cents,
        last_purchase_at=latest.recorded_at,
        confidence="LOW",
        data_points=len(history),
    )
    if len(history) < 2:
        return suggestion

    prices = [row.unit_price_cents for row in history]
    average = sum(prices) / len(prices)
    if average <= 0:
        suggestion.confidence = "MEDIUM"
        return suggestion

    spread = math.sqrt(sum((p - average) ** 2 for p in prices) / len(prices)) / average
    suggestion.confidence = "HIGH" if len(prices) >= 3 and spread < 0.1 else "MEDIUM"
    suggestion.price_variance = round((latest.unit_price_cents - average) / average * 100, 2)
    return suggestion
