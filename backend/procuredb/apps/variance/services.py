"""Variance alerts, reason codes and alert preferences.

A variance is the shortfall between what a transfer shipped and what the
destination received. Every receipt with a shortfall produces one alert;
alerts are immutable apart from acknowledgement.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import List, Optional

from sqlalchemy.orm import Session

from procuredb.errors import NotFoundError, ValidationError
from procuredb.utils.clock import Clock, resolve_clock
from procuredb.utils.identifiers import IdSource, resolve_id_source
from procuredb.apps.notifications import providers as notification_providers
from procuredb.apps.notifications import service as notification_service
from procuredb.apps.transfers import models as transfer_models
from procuredb.apps.variance import models, schemas

logger = logging.getLogger(__name__)

PATTERN_WINDOW_DAYS = 30
PATTERN_MIN_OCCURRENCES = 3

CRITICAL_PERCENTAGE = 25.0
HIGH_PERCENTAGE = 10.0
HIGH_QUANTITY = 50
MEDIUM_PERCENTAGE = 5.0

DEFAULT_REASON_CODES = (
    ("DAMAGE", "Product damaged during transfer", models.VarianceCategory.DAMAGE),
    ("SPOILAGE", "Product spoiled or expired", models.VarianceCategory.SPOILAGE),
    ("THEFT", "Product stolen or missing", models.VarianceCategory.THEFT),
    ("MEASUREMENT_ERROR", "Counting or measurement discrepancy", models.VarianceCategory.MEASUREMENT_ERROR),
    ("PACKAGING_LOSS", "Loss due to packaging issues", models.VarianceCategory.PACKAGING),
    ("OTHER", "Other reason, see notes", models.VarianceCategory.OTHER),
)
SYSTEM_REASON_CODES = frozenset(code for code, _, _ in DEFAULT_REASON_CODES)

NOTIFICATION_METHODS = frozenset({"IN_APP", "EMAIL", "SMS"})

DEFAULT_PREFERENCES = {
    "enable_variance_alerts": True,
    "variance_threshold_percentage": 5.0,
    "variance_threshold_quantity": 10,
    "enable_daily_reports": False,
    "enable_weekly_reports": True,
    "notification_methods": ["IN_APP"],
}

_SEVERITY_ORDER = [
    models.VarianceSeverity.LOW,
    models.VarianceSeverity.MEDIUM,
    models.VarianceSeverity.HIGH,
    models.VarianceSeverity.CRITICAL,
]


def classify_severity(variance_quantity: int, variance_percentage: float) -> models.VarianceSeverity:
    if variance_percentage >= CRITICAL_PERCENTAGE:
        return models.VarianceSeverity.CRITICAL
    if variance_percentage >= HIGH_PERCENTAGE or variance_quantity >= HIGH_QUANTITY:
        return models.VarianceSeverity.HIGH
    if variance_percentage >= MEDIUM_PERCENTAGE:
        return models.VarianceSeverity.MEDIUM
    return models.VarianceSeverity.LOW


def escalate_severity(severity: models.VarianceSeverity) -> models.VarianceSeverity:
    index = _SEVERITY_ORDER.index(severity)
    return _SEVERITY_ORDER[min(index + 1, len(_SEVERITY_ORDER) - 1)]


def variance_percentage(quantity_shipped: int, quantity_received: int) -> float:
    if not quantity_shipped:
        return 0.0
    return (quantity_shipped - quantity_received) / quantity_shipped * 100


def count_recent_variances(
    db: Session,
    *,
    tenant_id: str,
    product_id: str,
    location_id: str,
    since,
    exclude_transfer_id: Optional[str] = None,
) -> int:
    """Shrinkage receipts for one product at one destination since ``since``."""
    Transfer = transfer_models.Transfer
    query = db.query(Transfer).filter(
        Transfer.tenant_id == tenant_id,
        Transfer.product_id == product_id,
        Transfer.destination_location_id == location_id,
        Transfer.status == transfer_models.TransferStatus.RECEIVED,
        Transfer.received_at >= since,
        Transfer.quantity_received < Transfer.quantity_shipped,
    )
    if exclude_transfer_id:
        query = query.filter(Transfer.id != exclude_transfer_id)
    return query.count()


def evaluate_receipt(
    db: Session,
    *,
    transfer: transfer_models.Transfer,
    clock: Optional[Clock] = None,
    ids: Optional[IdSource] = None,
    provider: Optional[notification_providers.NotificationProvider] = None,
) -> Optional[models.VarianceAlert]:
    """Raise an alert for a received transfer with shrinkage.

    Returns None when nothing is missing.
    """
    shipped = transfer.quantity_shipped or 0
    received = transfer.quantity_received or 0
    variance = shipped - received
    if variance <= 0 or shipped <= 0:
        return None

    clock = resolve_clock(clock)
    now = clock.now()
    percentage = variance_percentage(shipped, received)
    severity = classify_severity(variance, percentage)
    alert_type = models.VarianceAlertType.HIGH_VARIANCE
    message = (
        f"Variance of {variance} units ({percentage:.1f}%) on transfer {transfer.id}: "
        f"shipped {shipped}, received {received}"
    )

    recent = count_recent_variances(
        db,
        tenant_id=transfer.tenant_id,
        product_id=transfer.product_id,
        location_id=transfer.destination_location_id,
        since=now - timedelta(days=PATTERN_WINDOW_DAYS),
        exclude_transfer_id=transfer.id,
    )
    if recent >= PATTERN_MIN_OCCURRENCES:
        severity = escalate_severity(severity)
        alert_type = models.VarianceAlertType.REPEATED_VARIANCE
        message += f". Pattern detected: {recent} recent variances for this product/location combination."

    alert = models.VarianceAlert(
        id=resolve_id_source(ids).new_id(),
        tenant_id=transfer.tenant_id,
        transfer_id=transfer.id,
        product_id=transfer.product_id,
        location_id=transfer.destination_location_id,
        alert_type=alert_type,
        severity=severity,
        message=message,
        variance_quantity=variance,
        variance_percentage=round(percentage, 2),
        threshold=HIGH_PERCENTAGE if percentage >= HIGH_PERCENTAGE else MEDIUM_PERCENTAGE,
        created_at=now,
        acknowledged=False,
    )
    db.add(alert)
    db.flush()
    logger.warning(
        "Variance alert raised",
        extra={
            "tenant_id": transfer.tenant_id,
            "transfer_id": transfer.id,
            "severity": severity.value,
            "variance_quantity": variance,
        },
    )
    _notify_subscribers(db, alert=alert, clock=clock, provider=provider)
    return alert


def _notify_subscribers(
    db: Session,
    *,
    alert: models.VarianceAlert,
    clock: Clock,
    provider: Optional[notification_providers.NotificationProvider],
) -> None:
    Preference = models.NotificationPreference
    preferences = (
        db.query(Preference)
        .filter(
            Preference.tenant_id == alert.tenant_id,
            Preference.enable_variance_alerts.is_(True),
            (Preference.location_id.is_(None)) | (Preference.location_id == alert.location_id),
        )
        .all()
    )
    recipients = [
        pref.user_id
        for pref in preferences
        if alert.variance_percentage >= pref.variance_threshold_percentage
        or alert.variance_quantity >= pref.variance_threshold_quantity
    ]
    notification_service.notify_many(
        db,
        tenant_id=alert.tenant_id,
        recipients=recipients,
        event_type="variance.alert",
        payload={
            "alert_id": alert.id,
            "transfer_id": alert.transfer_id,
            "severity": alert.severity.value,
            "message": alert.message,
        },
        provider=provider,
        clock=clock,
    )


def get_alert(db: Session, *, tenant_id: str, alert_id: str) -> models.VarianceAlert:
    alert = (
        db.query(models.VarianceAlert)
        .filter(models.VarianceAlert.id == alert_id, models.VarianceAlert.tenant_id == tenant_id)
        .first()
    )
    if alert is None:
        raise NotFoundError("Variance alert", alert_id)
    return alert


def acknowledge_alert(
    db: Session,
    *,
    tenant_id: str,
    alert_id: str,
    acknowledged_by: str,
    clock: Optional[Clock] = None,
) -> models.VarianceAlert:
    """The only mutation an alert allows. Acknowledging twice keeps the first."""
    alert = get_alert(db, tenant_id=tenant_id, alert_id=alert_id)
    if alert.acknowledged:
        return alert
    if not acknowledged_by:
        raise ValidationError(
            "Acknowledging user is required",
            detail=[{"field": "acknowledged_by", "reason": "Acknowledging user is required"}],
        )
    alert.acknowledged = True
    alert.acknowledged_by = acknowledged_by
    alert.acknowledged_at = resolve_clock(clock).now()
    db.flush()
    return alert


def list_alerts(
    db: Session,
    *,
    tenant_id: str,
    acknowledged: Optional[bool] = None,
    severity: Optional[models.VarianceSeverity] = None,
    location_id: Optional[str] = None,
) -> List[models.VarianceAlert]:
    query = db.query(models.VarianceAlert).filter(models.VarianceAlert.tenant_id == tenant_id)
    if acknowledged is not None:
        query = query.filter(models.VarianceAlert.acknowledged.is_(acknowledged))
    if severity is not None:
        query = query.filter(models.VarianceAlert.severity == severity)
    if location_id:
        query = query.filter(models.VarianceAlert.location_id == location_id)
    return query.order_by(models.VarianceAlert.created_at.desc(), models.VarianceAlert.id.desc()).all()


# ---------------------------------------------------------------------------
# Reason codes
# ---------------------------------------------------------------------------


def normalise_code(code: Optional[str]) -> str:
    return "_".join((code or "").strip().upper().split())


def ensure_default_reason_codes(db: Session, *, tenant_id: str) -> None:
    existing = {
        row.code
        for row in db.query(models.VarianceReasonCode.code)
        .filter(models.VarianceReasonCode.tenant_id == tenant_id)
        .all()
    }
    added = False
    for code, description, category in DEFAULT_REASON_CODES:
        if code in existing:
            continue
        db.add(
            models.VarianceReasonCode(
                tenant_id=tenant_id,
                code=code,
                description=description,
                category=category,
                is_active=True,
                is_system=True,
            )
        )
        added = True
    if added:
        db.flush()


def list_reason_codes(
    db: Session,
    *,
    tenant_id: str,
    include_inactive: bool = False,
) -> List[models.VarianceReasonCode]:
    ensure_default_reason_codes(db, tenant_id=tenant_id)
    query = db.query(models.VarianceReasonCode).filter(models.VarianceReasonCode.tenant_id == tenant_id)
    if not include_inactive:
        query = query.filter(models.VarianceReasonCode.is_active.is_(True))
    return query.order_by(models.VarianceReasonCode.code.asc()).all()


def _get_reason_code(db: Session, *, tenant_id: str, code: str) -> Optional[models.VarianceReasonCode]:
    return (
        db.query(models.VarianceReasonCode)
        .filter(
            models.VarianceReasonCode.tenant_id == tenant_id,
            models.VarianceReasonCode.code == normalise_code(code),
        )
        .first()
    )


def add_reason_code(
    db: Session,
    *,
    tenant_id: str,
    data: schemas.ReasonCodeCreate,
) -> models.VarianceReasonCode:
    code = normalise_code(data.code)
    failures = []
    if not code:
        failures.append({"field": "code", "reason": "Reason code is required"})
    if not (data.description or "").strip():
        failures.append({"field": "description", "reason": "Description is required"})
    if failures:
        raise ValidationError("Invalid reason code", detail=failures)

    ensure_default_reason_codes(db, tenant_id=tenant_id)
    if _get_reason_code(db, tenant_id=tenant_id, code=code) is not None:
        raise ValidationError(
            f"Reason code {code} already exists",
            detail=[{"field": "code", "reason": f"Reason code {code} already exists"}],
        )

    row = models.VarianceReasonCode(
        tenant_id=tenant_id,
        code=code,
        description=data.description.strip(),
        category=data.category,
        is_active=True,
        is_system=False,
    )
    db.add(row)
    db.flush()
    return row


def update_reason_code(
    db: Session,
    *,
    tenant_id: str,
    code: str,
    data: schemas.ReasonCodeUpdate,
) -> models.VarianceReasonCode:
    ensure_default_reason_codes(db, tenant_id=tenant_id)
    row = _get_reason_code(db, tenant_id=tenant_id, code=code)
    if row is None:
        raise NotFoundError("Variance reason code", normalise_code(code))
    if row.is_system and data.is_active is False:
        raise ValidationError(
            f"System reason code {row.code} cannot be deactivated",
            detail=[{"field": "is_active", "reason": "System reason codes cannot be deactivated"}],
        )
    if data.description is not None:
        if not data.description.strip():
            raise ValidationError(
                "Description is required",
                detail=[{"field": "description", "reason": "Description is required"}],
            )
        row.description = data.description.strip()
    if data.category is not None:
        row.category = data.category
    if data.is_active is not None:
        row.is_active = data.is_active
    db.flush()
    return row


def is_valid_reason_code(db: Session, *, tenant_id: str, code: Optional[str]) -> bool:
    normalised = normalise_code(code)
    if not normalised:
        return False
    if normalised in SYSTEM_REASON_CODES:
        return True
    row = _get_reason_code(db, tenant_id=tenant_id, code=normalised)
    return bool(row and row.is_active)


# ---------------------------------------------------------------------------
# Notification preferences
# ---------------------------------------------------------------------------


def get_notification_preferences(
    db: Session,
    *,
    tenant_id: str,
    user_id: str,
) -> models.NotificationPreference:
    """Stored preferences, or an unsaved row holding the defaults."""
    pref = (
        db.query(models.NotificationPreference)
        .filter(
            models.NotificationPreference.tenant_id == tenant_id,
            models.NotificationPreference.user_id == user_id,
        )
        .first()
    )
    if pref is not None:
        return pref
    return models.NotificationPreference(
        tenant_id=tenant_id,
        user_id=user_id,
        **{key: (list(value) if isinstance(value, list) else value) for key, value in DEFAULT_PREFERENCES.items()},
    )


def update_notification_preferences(
    db: Session,
    *,
    tenant_id: str,
    user_id: str,
    data: schemas.NotificationPreferenceUpdate,
) -> models.NotificationPreference:
    changes = data.model_dump(exclude_unset=True)
    failures = []
    pct = changes.get("variance_threshold_percentage")
    if pct is not None and not 0 <= pct <= 100:
        failures.append({"field": "variance_threshold_percentage", "reason": "Must be between 0 and 100"})
    qty = changes.get("variance_threshold_quantity")
    if qty is not None and qty < 0:
        failures.append({"field": "variance_threshold_quantity", "reason": "Cannot be negative"})
    methods = changes.get("notification_methods")
    if methods is not None:
        unknown = sorted(set(methods) - NOTIFICATION_METHODS)
        if unknown or not methods:
            failures.append(
                {"field": "notification_methods", "reason": f"Unsupported methods: {', '.join(unknown) or 'none given'}"}
            )
    if failures:
        raise ValidationError("Invalid notification preferences", detail=failures)

    pref = get_notification_preferences(db, tenant_id=tenant_id, user_id=user_id)
    for key, value in changes.items():
        setattr(pref, key, value)
    if pref.id is None:
        db.add(pref)
    db.flush()
    return pref
