from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from procuredb.apps.allocations import models


class AllocationCreate(BaseModel):
    po_item_id: str
    target_location_id: str
    quantity_allocated: int
    notes: Optional[str] = None


class AllocationRead(BaseModel):
    id: str
    tenant_id: str
    po_item_id: str
    target_location_id: str
    quantity_allocated: int
    quantity_received: int
    status: models.AllocationStatus
    notes: Optional[str] = None
    created_by: str
    version: int
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True
