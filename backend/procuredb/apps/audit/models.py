from __future__ import annotations

import enum
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Enum as SAEnum, ForeignKey, Index, JSON, String, Text, desc

from procuredb.database import Base
from procuredb.utils.identifiers import generate_uuid7


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuditEntityType(str, enum.Enum):
    PURCHASE_ORDER = "purchase_order"
    ALLOCATION = "allocation"
    TRANSFER = "transfer"


class AuditLogEntry(Base):
    """
    Append-only record of who did what to which entity, old -> new state.
    Rows are never updated or deleted.
    """

    __tablename__ = "audit_log_entries"
    __table_args__ = (
        Index("ix_audit_log_tenant_subject", "tenant_id", "entity_type", "subject_id"),
        Index("ix_audit_log_tenant_action", "tenant_id", "action"),
        Index("ix_audit_log_tenant_time_desc", "tenant_id", desc("performed_at")),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid7)
    tenant_id = Column(String(36), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    entity_type = Column(
        SAEnum(AuditEntityType, name="audit_entity_type_enum", native_enum=False),
        nullable=False,
    )
    subject_id = Column(String(36), nullable=False, index=True)
    action = Column(String(64), nullable=False)
    old_status = Column(String(32), nullable=True)
    new_status = Column(String(32), nullable=True)
    old_values = Column(JSON, nullable=True)
    new_values = Column(JSON, nullable=True)
    performed_by = Column(String(36), nullable=True, index=True)
    performed_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    notes = Column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<AuditLogEntry id={self.id} subject={self.entity_type}:{self.subject_id} action={self.action}>"
