from __future__ import annotations

from typing import List, Optional

from sqlalchemy.orm import Session

from procuredb.utils.clock import ensure_utc
from procuredb.apps.transfers import models as transfer_models
from procuredb.apps.variance import schemas, services


def _received_transfers(
    db: Session,
    *,
    tenant_id: str,
    filters: schemas.VarianceReportFilters,
) -> List[transfer_models.Transfer]:
    Transfer = transfer_models.Transfer
    query = db.query(Transfer).filter(
        Transfer.tenant_id == tenant_id,
        Transfer.status == transfer_models.TransferStatus.RECEIVED,
    )
    if filters.start:
        query = query.filter(Transfer.received_at >= filters.start)
    if filters.end:
        query = query.filter(Transfer.received_at <= filters.end)
    if filters.product_id:
        query = query.filter(Transfer.product_id == filters.product_id)
    if filters.location_id:
        query = query.filter(
            (Transfer.source_location_id == filters.location_id)
            | (Transfer.destination_location_id == filters.location_id)
        )
    return query.order_by(Transfer.received_at.asc(), Transfer.id.asc()).all()


def _shortfall(transfer: transfer_models.Transfer) -> int:
    return max(0, (transfer.quantity_shipped or 0) - (transfer.quantity_received or 0))


def generate_variance_report(
    db: Session,
    *,
    tenant_id: str,
    filters: Optional[schemas.VarianceReportFilters] = None,
) -> List[schemas.VarianceReportRow]:
    """One row per received transfer with shrinkage, worst first."""
    filters = filters or schemas.VarianceReportFilters()
    rows = []
    for transfer in _received_transfers(db, tenant_id=tenant_id, filters=filters):
        variance = _shortfall(transfer)
        if variance <= 0:
            continue
        percentage = round(services.variance_percentage(transfer.quantity_shipped, transfer.quantity_received), 2)
        if filters.min_variance_percentage is not None and percentage < filters.min_variance_percentage:
            continue
        rows.append(
            schemas.VarianceReportRow(
                transfer_id=transfer.id,
                product_id=transfer.product_id,
                source_location_id=transfer.source_location_id,
                destination_location_id=transfer.destination_location_id,
                quantity_shipped=transfer.quantity_shipped,
                quantity_received=transfer.quantity_received,
                variance_quantity=variance,
                variance_percentage=percentage,
                variance_reason=transfer.variance_reason,
                severity=services.classify_severity(variance, percentage),
                received_at=ensure_utc(transfer.received_at),
                received_by=transfer.received_by,
            )
        )
    rows.sort(key=lambda row: (-row.variance_percentage, row.transfer_id))
    return rows
