from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from procuredb.apps.purchasing import models


class POItemCreate(BaseModel):
    product_id: str
    quantity_ordered: int
    unit_price_cents: int
    notes: Optional[str] = None


class PurchaseOrderCreate(BaseModel):
    supplier_id: str
    items: List[POItemCreate] = Field(default_factory=list)
    notes: Optional[str] = None


class POReceipt(BaseModel):
    po_item_id: str
    quantity_received: int


class POItemRead(BaseModel):
    id: str
    po_id: str
    line_number: int
    product_id: str
    quantity_ordered: int
    unit_price_cents: int
    line_total_cents: int
    quantity_received: int
    notes: Optional[str] = None

    class Config:
        from_attributes = True


class PurchaseOrderRead(BaseModel):
    id: str
    tenant_id: str
    supplier_id: str
    po_number: Optional[str] = None
    status: models.PurchaseOrderStatus
    total_cost_cents: int
    notes: Optional[str] = None
    created_by: str
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    received_by: Optional[str] = None
    received_at: Optional[datetime] = None
    cancelled_by: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    version: int
    items: List[POItemRead] = Field(default_factory=list)

    class Config:
        from_attributes = True
