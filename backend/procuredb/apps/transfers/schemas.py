from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from procuredb.apps.transfers import models


class TransferCreate(BaseModel):
    product_id: str
    source_location_id: str
    destination_location_id: str
    quantity_requested: int
    priority: models.TransferPriority = models.TransferPriority.NORMAL
    notes: Optional[str] = None


class ReceivingData(BaseModel):
    quantity_received: int
    variance_reason: Optional[str] = None
    notes: Optional[str] = None


class TransferRead(BaseModel):
    id: str
    tenant_id: str
    product_id: str
    source_location_id: str
    destination_location_id: str
    quantity_requested: int
    quantity_shipped: int
    quantity_received: int
    status: models.TransferStatus
    priority: models.TransferPriority
    requested_by: str
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    shipped_by: Optional[str] = None
    shipped_at: Optional[datetime] = None
    received_by: Optional[str] = None
    received_at: Optional[datetime] = None
    cancelled_by: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    variance_reason: Optional[str] = None
    version: int

    class Config:
        from_attributes = True


class ReservationRead(BaseModel):
    id: str
    tenant_id: str
    transfer_id: str
    product_id: str
    location_id: str
    quantity_reserved: int
    reserved_at: datetime
    expires_at: datetime
    released_at: Optional[datetime] = None

    class Config:
        from_attributes = True
