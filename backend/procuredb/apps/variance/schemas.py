from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel

from procuredb.apps.variance import models


class VarianceAlertRead(BaseModel):
    id: str
    tenant_id: str
    transfer_id: str
    product_id: str
    location_id: str
    alert_type: models.VarianceAlertType
    severity: models.VarianceSeverity
    message: str
    variance_quantity: int
    variance_percentage: float
    threshold: float
    created_at: datetime
    acknowledged: bool
    acknowledged_by: Optional[str] = None
    acknowledged_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ReasonCodeCreate(BaseModel):
    code: str
    description: str
    category: models.VarianceCategory = models.VarianceCategory.OTHER


class ReasonCodeUpdate(BaseModel):
    description: Optional[str] = None
    category: Optional[models.VarianceCategory] = None
    is_active: Optional[bool] = None


class NotificationPreferenceUpdate(BaseModel):
    location_id: Optional[str] = None
    enable_variance_alerts: Optional[bool] = None
    variance_threshold_percentage: Optional[float] = None
    variance_threshold_quantity: Optional[int] = None
    enable_daily_reports: Optional[bool] = None
    enable_weekly_reports: Optional[bool] = None
    notification_methods: Optional[List[str]] = None


class VarianceReportFilters(BaseModel):
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    location_id: Optional[str] = None
    product_id: Optional[str] = None
    min_variance_percentage: Optional[float] = None


class VarianceReportRow(BaseModel):
    transfer_id: str
    product_id: str
    source_location_id: str
    destination_location_id: str
    quantity_shipped: int
    quantity_received: int
    variance_quantity: int
    variance_percentage: float
    variance_reason: Optional[str] = None
    severity: models.VarianceSeverity
    received_at: Optional[datetime] = None
    received_by: Optional[str] = None
