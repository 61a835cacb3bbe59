# backend/procuredb/models.py
"""
Model registry.

Importing this module registers every procuredb table on ``Base.metadata``.
Domain models live in procuredb.apps.<app>.models.
"""

from procuredb.database import Base
from procuredb.apps.accounts import models as account_models
from procuredb.apps.allocations import models as allocation_models
from procuredb.apps.audit import models as audit_models
from procuredb.apps.notifications import models as notification_models
from procuredb.apps.purchasing import models as purchasing_models
from procuredb.apps.transfers import models as transfer_models
from procuredb.apps.variance import models as variance_models

TABLES = [
    account_models.Tenant.__table__,
    account_models.Location.__table__,
    account_models.User.__table__,
    purchasing_models.PurchaseOrder.__table__,
    purchasing_models.POItem.__table__,
    purchasing_models.PriceHistory.__table__,
    allocation_models.Allocation.__table__,
    transfer_models.Transfer.__table__,
    transfer_models.InventoryReservation.__table__,
    transfer_models.StockLevel.__table__,
    audit_models.AuditLogEntry.__table__,
    notification_models.NotificationLog.__table__,
    variance_models.VarianceAlert.__table__,
    variance_models.VarianceReasonCode.__table__,
    variance_models.NotificationPreference.__table__,
]


def create_schema(bind) -> None:
    """Create every procuredb table on ``bind``. Migrations are the host's concern."""
    Base.metadata.create_all(bind=bind, tables=TABLES)
