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
from sqlalchemy.orm import relationship

from procuredb.database import Base
from procuredb.utils.identifiers import generate_uuid7


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PurchaseOrderStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    APPROVED = "APPROVED"
    RECEIVED = "RECEIVED"
    CANCELLED = "CANCELLED"


class PurchaseOrder(Base):
    __tablename__ = "purchase_orders"
    __table_args__ = (
        UniqueConstraint("tenant_id", "po_number", name="uq_purchase_orders_tenant_number"),
        Index("ix_purchase_orders_tenant_status", "tenant_id", "status"),
        Index("ix_purchase_orders_tenant_supplier", "tenant_id", "supplier_id"),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid7)
    tenant_id = Column(String(36), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    supplier_id = Column(String(36), nullable=False)
    po_number = Column(String(64), nullable=True)
    status = Column(
        SAEnum(PurchaseOrderStatus, name="purchase_order_status_enum", native_enum=False),
        nullable=False,
        default=PurchaseOrderStatus.DRAFT,
    )
    total_cost_cents = Column(Integer, nullable=False, default=0)
    notes = Column(Text, nullable=True)

    created_by = Column(String(36), nullable=False)
    approved_by = Column(String(36), nullable=True)
    approved_at = Column(DateTime(timezone=True), nullable=True)
    received_by = Column(String(36), nullable=True)
    received_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_by = Column(String(36), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancellation_reason = Column(Text, nullable=True)

    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    items = relationship(
        "POItem",
        back_populates="purchase_order",
        cascade="all, delete-orphan",
        order_by="POItem.line_number",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<PurchaseOrder id={self.id} number={self.po_number} status={self.status}>"


class POItem(Base):
    __tablename__ = "po_items"
    __table_args__ = (
        CheckConstraint("quantity_received >= 0", name="ck_po_items_received_non_negative"),
        Index("ix_po_items_po", "po_id"),
        Index("ix_po_items_tenant_product", "tenant_id", "product_id"),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid7)
    po_id = Column(String(36), ForeignKey("purchase_orders.id", ondelete="CASCADE"), nullable=False)
    tenant_id = Column(String(36), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    line_number = Column(Integer, nullable=False, default=1)
    product_id = Column(String(36), nullable=False)
    quantity_ordered = Column(Integer, nullable=False)
    unit_price_cents = Column(Integer, nullable=False)
    line_total_cents = Column(Integer, nullable=False, default=0)
    quantity_received = Column(Integer, nullable=False, default=0)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    purchase_order = relationship("PurchaseOrder", back_populates="items")


class PriceHistory(Base):
    """Unit price paid per supplier/product, one row per approved PO line."""

    __tablename__ = "price_history"
    __table_args__ = (
        Index("ix_price_history_lookup", "tenant_id", "product_id", "supplier_id", "recorded_at"),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid7)
    tenant_id = Column(String(36), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    supplier_id = Column(String(36), nullable=False)
    product_id = Column(String(36), nullable=False)
    po_id = Column(String(36), ForeignKey("purchase_orders.id", ondelete="SET NULL"), nullable=True)
    unit_price_cents = Column(Integer, nullable=False)
    recorded_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
