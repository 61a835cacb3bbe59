from __future__ import annotations

import enum
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum as SAEnum,
    Float,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
)

from procuredb.database import Base
from procuredb.utils.identifiers import generate_uuid7


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class VarianceSeverity(str, enum.Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class VarianceAlertType(str, enum.Enum):
    HIGH_VARIANCE = "HIGH_VARIANCE"
    REPEATED_VARIANCE = "REPEATED_VARIANCE"


class VarianceCategory(str, enum.Enum):
    DAMAGE = "DAMAGE"
    SPOILAGE = "SPOILAGE"
    THEFT = "THEFT"
    MEASUREMENT_ERROR = "MEASUREMENT_ERROR"
    PACKAGING = "PACKAGING"
    OTHER = "OTHER"


class VarianceAlert(Base):
    __tablename__ = "variance_alerts"
    __table_args__ = (
        Index("ix_variance_alerts_tenant_created", "tenant_id", "created_at"),
        Index("ix_variance_alerts_tenant_ack", "tenant_id", "acknowledged"),
        Index("ix_variance_alerts_tenant_location", "tenant_id", "location_id"),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid7)
    tenant_id = Column(String(36), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    transfer_id = Column(String(36), ForeignKey("transfers.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(String(36), nullable=False)
    location_id = Column(String(36), nullable=False)
    alert_type = Column(
        SAEnum(VarianceAlertType, name="variance_alert_type_enum", native_enum=False),
        nullable=False,
    )
    severity = Column(
        SAEnum(VarianceSeverity, name="variance_severity_enum", native_enum=False),
        nullable=False,
    )
    message = Column(Text, nullable=False)
    variance_quantity = Column(Integer, nullable=False)
    variance_percentage = Column(Float, nullable=False)
    threshold = Column(Float, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    acknowledged = Column(Boolean, nullable=False, default=False)
    acknowledged_by = Column(String(36), nullable=True)
    acknowledged_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<VarianceAlert id={self.id} transfer={self.transfer_id} severity={self.severity}>"


class VarianceReasonCode(Base):
    __tablename__ = "variance_reason_codes"
    __table_args__ = (
        UniqueConstraint("tenant_id", "code", name="uq_variance_reason_codes_tenant_code"),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid7)
    tenant_id = Column(String(36), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    code = Column(String(64), nullable=False)
    description = Column(String(255), nullable=False)
    category = Column(
        SAEnum(VarianceCategory, name="variance_category_enum", native_enum=False),
        nullable=False,
    )
    is_active = Column(Boolean, nullable=False, default=True)
    is_system = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)


class NotificationPreference(Base):
    __tablename__ = "notification_preferences"
    __table_args__ = (
        UniqueConstraint("tenant_id", "user_id", name="uq_notification_preferences_user"),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid7)
    tenant_id = Column(String(36), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    location_id = Column(String(36), nullable=True)
    enable_variance_alerts = Column(Boolean, nullable=False, default=True)
    variance_threshold_percentage = Column(Float, nullable=False, default=5.0)
    variance_threshold_quantity = Column(Integer, nullable=False, default=10)
    enable_daily_reports = Column(Boolean, nullable=False, default=False)
    enable_weekly_reports = Column(Boolean, nullable=False, default=True)
    notification_methods = Column(JSON, nullable=False, default=lambda: ["IN_APP"])
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)
