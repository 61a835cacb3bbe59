from __future__ import annotations

import enum
import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any, List, Optional

from sqlalchemy.orm import Session

from procuredb.utils.identifiers import IdSource
from procuredb.apps.audit import models, schemas

logger = logging.getLogger(__name__)


def _json_value(value: Any) -> Any:
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    return value


def snapshot(entity: Any) -> dict:
    """Full column snapshot of an ORM row, JSON-safe."""
    if entity is None:
        return {}
    return {
        column.key: _json_value(getattr(entity, column.key, None))
        for column in entity.__table__.columns
    }


def create_audit_entry(
    db: Session,
    *,
    tenant_id: str,
    data: schemas.AuditEntryCreate,
    ids: Optional[IdSource] = None,
) -> models.AuditLogEntry:
    entry = models.AuditLogEntry(
        tenant_id=tenant_id,
        entity_type=data.entity_type,
        subject_id=data.subject_id,
        action=data.action,
        old_status=data.old_status,
        new_status=data.new_status,
        old_values=data.old_values,
        new_values=data.new_values,
        performed_by=data.performed_by,
        notes=data.notes,
    )
    if ids is not None:
        entry.id = ids.new_id()
    if data.performed_at is not None:
        entry.performed_at = data.performed_at
    db.add(entry)
    db.flush()
    return entry


def log_event(
    db: Session,
    *,
    tenant_id: str,
    entity_type: models.AuditEntityType,
    subject_id: str,
    action: str,
    performed_by: Optional[str],
    old_status: Optional[str] = None,
    new_status: Optional[str] = None,
    old_values: Optional[dict] = None,
    new_values: Optional[dict] = None,
    notes: Optional[str] = None,
    performed_at: Optional[datetime] = None,
    ids: Optional[IdSource] = None,
    critical: bool = False,
) -> Optional[models.AuditLogEntry]:
    """
    Audit entry logger.
    - Critical entries (state transitions) raise on failure so the
      surrounding unit of work is rolled back with them.
    - Non-critical entries are written in a savepoint; a failure rolls
      back only that savepoint, logs a warning and continues.
    """
    try:
        data = schemas.AuditEntryCreate(
            entity_type=entity_type,
            subject_id=subject_id,
            action=action,
            performed_by=performed_by,
            performed_at=performed_at,
            old_status=old_status,
            new_status=new_status,
            old_values=old_values,
            new_values=new_values,
            notes=notes,
        )
        if critical:
            return create_audit_entry(db, tenant_id=tenant_id, ids=ids, data=data)
        with db.begin_nested():
            return create_audit_entry(db, tenant_id=tenant_id, ids=ids, data=data)
    except Exception:
        logger.warning(
            "Failed to write audit entry",
            extra={
                "tenant_id": tenant_id,
                "entity_type": getattr(entity_type, "value", entity_type),
                "subject_id": subject_id,
                "action": action,
                "critical": critical,
            },
        )
        if critical:
            raise
        return None


def list_audit_entries(
    db: Session,
    *,
    tenant_id: str,
    entity_type: Optional[models.AuditEntityType] = None,
    subject_id: Optional[str] = None,
    action: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> List[models.AuditLogEntry]:
    query = db.query(models.AuditLogEntry).filter(models.AuditLogEntry.tenant_id == tenant_id)
    if entity_type:
        query = query.filter(models.AuditLogEntry.entity_type == entity_type)
    if subject_id:
        query = query.filter(models.AuditLogEntry.subject_id == subject_id)
    if action:
        query = query.filter(models.AuditLogEntry.action == action)
    if start:
        query = query.filter(models.AuditLogEntry.performed_at >= start)
    if end:
        query = query.filter(models.AuditLogEntry.performed_at <= end)
    return query.order_by(models.AuditLogEntry.performed_at.desc(), models.AuditLogEntry.id.desc()).all()
