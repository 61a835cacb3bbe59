from __future__ import annotations

import enum
from datetime import datetime, timezone

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from procuredb.database import Base
from procuredb.utils.identifiers import generate_uuid7


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TransferStatus(str, enum.Enum):
    REQUESTED = "REQUESTED"
    APPROVED = "APPROVED"
    SHIPPED = "SHIPPED"
    RECEIVED = "RECEIVED"
    CANCELLED = "CANCELLED"


class TransferPriority(str, enum.Enum):
    NORMAL = "NORMAL"
    HIGH = "HIGH"
    EMERGENCY = "EMERGENCY"


class Transfer(Base):
    __tablename__ = "transfers"
    __table_args__ = (
        CheckConstraint("source_location_id <> destination_location_id", name="ck_transfers_distinct_locations"),
        CheckConstraint("quantity_requested > 0", name="ck_transfers_requested_positive"),
        Index("ix_transfers_tenant_status", "tenant_id", "status"),
        Index("ix_transfers_tenant_source", "tenant_id", "source_location_id", "product_id"),
        Index("ix_transfers_tenant_destination", "tenant_id", "destination_location_id", "product_id"),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid7)
    tenant_id = Column(String(36), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    product_id = Column(String(36), nullable=False)
    source_location_id = Column(String(36), ForeignKey("locations.id", ondelete="RESTRICT"), nullable=False)
    destination_location_id = Column(String(36), ForeignKey("locations.id", ondelete="RESTRICT"), nullable=False)
    quantity_requested = Column(Integer, nullable=False)
    quantity_shipped = Column(Integer, nullable=False, default=0)
    quantity_received = Column(Integer, nullable=False, default=0)
    status = Column(
        SAEnum(TransferStatus, name="transfer_status_enum", native_enum=False),
        nullable=False,
        default=TransferStatus.REQUESTED,
    )
    priority = Column(
        SAEnum(TransferPriority, name="transfer_priority_enum", native_enum=False),
        nullable=False,
        default=TransferPriority.NORMAL,
    )
    notes = Column(Text, nullable=True)

    requested_by = Column(String(36), nullable=False)
    approved_by = Column(String(36), nullable=True)
    approved_at = Column(DateTime(timezone=True), nullable=True)
    shipped_by = Column(String(36), nullable=True)
    shipped_at = Column(DateTime(timezone=True), nullable=True)
    received_by = Column(String(36), nullable=True)
    received_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_by = Column(String(36), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancellation_reason = Column(Text, nullable=True)
    variance_reason = Column(String(64), nullable=True)

    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    @property
    def variance(self) -> int:
        if self.status != TransferStatus.RECEIVED:
            return 0
        return max(0, (self.quantity_shipped or 0) - (self.quantity_received or 0))

    def __repr__(self) -> str:
        return f"<Transfer id={self.id} {self.source_location_id}->{self.destination_location_id} status={self.status}>"


class InventoryReservation(Base):
    """Soft claim on on-hand stock at a location, held for one transfer."""

    __tablename__ = "inventory_reservations"
    __table_args__ = (
        UniqueConstraint("product_id", "location_id", "transfer_id", name="uq_reservation_product_location_transfer"),
        CheckConstraint("quantity_reserved > 0", name="ck_reservations_quantity_positive"),
        Index("ix_reservations_tenant_location_product", "tenant_id", "location_id", "product_id"),
        Index("ix_reservations_expires", "expires_at"),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid7)
    tenant_id = Column(String(36), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    transfer_id = Column(String(36), ForeignKey("transfers.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(String(36), nullable=False)
    location_id = Column(String(36), ForeignKey("locations.id", ondelete="RESTRICT"), nullable=False)
    quantity_reserved = Column(Integer, nullable=False)
    reserved_by = Column(String(36), nullable=True)
    reserved_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    released_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<InventoryReservation id={self.id} transfer={self.transfer_id} qty={self.quantity_reserved}>"


class StockLevel(Base):
    """Base on-hand quantity per product and location."""

    __tablename__ = "stock_levels"
    __table_args__ = (
        UniqueConstraint("tenant_id", "product_id", "location_id", name="uq_stock_levels_product_location"),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid7)
    tenant_id = Column(String(36), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(String(36), nullable=False)
    location_id = Column(String(36), ForeignKey("locations.id", ondelete="CASCADE"), nullable=False)
    quantity_on_hand = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)
