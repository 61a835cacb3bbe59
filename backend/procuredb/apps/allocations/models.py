from __future__ import annotations

import enum
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Enum as SAEnum, ForeignKey, Index, Integer, String, Text

from procuredb.database import Base
from procuredb.utils.identifiers import generate_uuid7


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AllocationStatus(str, enum.Enum):
    PENDING = "PENDING"
    ALLOCATED = "ALLOCATED"
    PARTIALLY_RECEIVED = "PARTIALLY_RECEIVED"
    RECEIVED = "RECEIVED"
    CANCELLED = "CANCELLED"


class Allocation(Base):
    """A committed share of one PO line, destined for one location."""

    __tablename__ = "allocations"
    __table_args__ = (
        Index("ix_allocations_tenant_item", "tenant_id", "po_item_id"),
        Index("ix_allocations_tenant_location", "tenant_id", "target_location_id"),
        Index("ix_allocations_tenant_status", "tenant_id", "status"),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid7)
    tenant_id = Column(String(36), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    po_item_id = Column(String(36), ForeignKey("po_items.id", ondelete="CASCADE"), nullable=False)
    target_location_id = Column(String(36), ForeignKey("locations.id", ondelete="RESTRICT"), nullable=False)
    quantity_allocated = Column(Integer, nullable=False)
    quantity_received = Column(Integer, nullable=False, default=0)
    status = Column(
        SAEnum(AllocationStatus, name="allocation_status_enum", native_enum=False),
        nullable=False,
        default=AllocationStatus.PENDING,
    )
    notes = Column(Text, nullable=True)
    created_by = Column(String(36), nullable=False)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    def __repr__(self) -> str:
        return f"<Allocation id={self.id} item={self.po_item_id} qty={self.quantity_allocated} status={self.status}>"
