from __future__ import annotations

from datetime import datetime, timezone
import enum

from sqlalchemy import Column, DateTime, Enum as SAEnum, ForeignKey, Index, JSON, String, Text

from procuredb.database import Base
from procuredb.utils.identifiers import generate_uuid7


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class NotificationStatus(str, enum.Enum):
    QUEUED = "QUEUED"
    SENT = "SENT"
    FAILED = "FAILED"
    SKIPPED_NO_PROVIDER = "SKIPPED_NO_PROVIDER"


class NotificationLog(Base):
    __tablename__ = "notification_logs"
    __table_args__ = (
        Index("ix_notification_logs_tenant_created", "tenant_id", "created_at"),
        Index("ix_notification_logs_tenant_status", "tenant_id", "status"),
        Index("ix_notification_logs_tenant_recipient", "tenant_id", "recipient"),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid7)
    tenant_id = Column(String(36), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    sent_at = Column(DateTime(timezone=True), nullable=True)

    recipient = Column(String(255), nullable=False)
    event_type = Column(String(128), nullable=False, index=True)
    status = Column(
        SAEnum(NotificationStatus, name="notification_status_enum", native_enum=False),
        nullable=False,
        index=True,
    )
    error = Column(Text, nullable=True)
    payload_json = Column(JSON, nullable=True)

    def __repr__(self) -> str:
        return f"<NotificationLog id={self.id} recipient={self.recipient} status={self.status}>"
