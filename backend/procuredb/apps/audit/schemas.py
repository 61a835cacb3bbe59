from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from procuredb.apps.audit.models import AuditEntityType


class AuditEntryCreate(BaseModel):
    entity_type: AuditEntityType
    subject_id: str
    action: str
    performed_by: Optional[str] = None
    performed_at: Optional[datetime] = None
    old_status: Optional[str] = None
    new_status: Optional[str] = None
    old_values: Optional[dict] = None
    new_values: Optional[dict] = None
    notes: Optional[str] = None


class AuditEntryRead(BaseModel):
    id: str
    tenant_id: str
    entity_type: AuditEntityType
    subject_id: str
    action: str
    old_status: Optional[str] = None
    new_status: Optional[str] = None
    old_values: Optional[dict] = None
    new_values: Optional[dict] = None
    performed_by: Optional[str] = None
    performed_at: datetime
    notes: Optional[str] = None

    class Config:
        from_attributes = True
