from __future__ import annotations

import logging
from typing import Iterable, List, Optional

from sqlalchemy.orm import Session

from procuredb.utils.clock import Clock, resolve_clock
from procuredb.apps.notifications import models, providers

logger = logging.getLogger(__name__)


def notify(
    db: Session,
    *,
    tenant_id: str,
    recipient: str,
    event_type: str,
    payload: Optional[dict] = None,
    provider: Optional[providers.NotificationProvider] = None,
    clock: Optional[Clock] = None,
) -> Optional[models.NotificationLog]:
    """
    Fire-and-forget notification.

    The log row lives in its own savepoint: if it cannot be written, only
    that savepoint rolls back and the caller's unit of work is untouched.
    Delivery problems are recorded on the row; nothing propagates.
    """
    clock = resolve_clock(clock)
    try:
        with db.begin_nested():
            log = models.NotificationLog(
                tenant_id=tenant_id,
                recipient=recipient,
                event_type=event_type,
                status=models.NotificationStatus.QUEUED,
                payload_json=payload or {},
                created_at=clock.now(),
            )
            db.add(log)
            db.flush()

            configured = True
            if provider is None:
                provider, configured = providers.get_notification_provider()
            if not configured:
                log.status = models.NotificationStatus.SKIPPED_NO_PROVIDER
                log.error = "No provider configured"
                db.flush()
                return log

            try:
                provider.send(recipient=recipient, event_type=event_type, payload=payload or {})
                log.status = models.NotificationStatus.SENT
                log.sent_at = clock.now()
            except Exception as exc:
                log.status = models.NotificationStatus.FAILED
                log.error = str(exc)
                logger.warning(
                    "Notification delivery failed",
                    extra={"tenant_id": tenant_id, "recipient": recipient, "event_type": event_type},
                )
            db.flush()
            return log
    except Exception:
        logger.warning(
            "Failed to record notification",
            exc_info=True,
            extra={"tenant_id": tenant_id, "recipient": recipient, "event_type": event_type},
        )
        return None


def notify_many(
    db: Session,
    *,
    tenant_id: str,
    recipients: Iterable[str],
    event_type: str,
    payload: Optional[dict] = None,
    provider: Optional[providers.NotificationProvider] = None,
    clock: Optional[Clock] = None,
) -> List[models.NotificationLog]:
    logs = []
    for recipient in dict.fromkeys(recipients):
        log = notify(
            db,
            tenant_id=tenant_id,
            recipient=recipient,
            event_type=event_type,
            payload=payload,
            provider=provider,
            clock=clock,
        )
        if log is not None:
            logs.append(log)
    return logs


def list_notifications(
    db: Session,
    *,
    tenant_id: str,
    recipient: Optional[str] = None,
    event_type: Optional[str] = None,
) -> List[models.NotificationLog]:
    query = db.query(models.NotificationLog).filter(models.NotificationLog.tenant_id == tenant_id)
    if recipient:
        query = query.filter(models.NotificationLog.recipient == recipient)
    if event_type:
        query = query.filter(models.NotificationLog.event_type == event_type)
    return query.order_by(models.NotificationLog.created_at.asc(), models.NotificationLog.id.asc()).all()
