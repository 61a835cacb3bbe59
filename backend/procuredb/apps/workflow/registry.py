from __future__ import annotations

from procuredb.apps.allocations.models import AllocationStatus
from procuredb.apps.purchasing.models import PurchaseOrderStatus
from procuredb.apps.transfers.models import TransferStatus
from procuredb.apps.workflow.guards import (
    guard_cancellation_reason,
    guard_po_line_items,
    guard_po_number,
    guard_receiving_data,
    guard_ship_quantity,
)

PURCHASE_ORDER = "purchase_order"
ALLOCATION = "allocation"
TRANSFER = "transfer"

WORKFLOWS = {
    PURCHASE_ORDER: {
        "label": "Purchase order",
        "states": PurchaseOrderStatus,
        "initial": PurchaseOrderStatus.DRAFT,
        "transitions": {
            PurchaseOrderStatus.DRAFT: {
                PurchaseOrderStatus.APPROVED: [guard_po_line_items],
                PurchaseOrderStatus.CANCELLED: [],
            },
            PurchaseOrderStatus.APPROVED: {
                PurchaseOrderStatus.RECEIVED: [guard_po_number],
                PurchaseOrderStatus.CANCELLED: [guard_cancellation_reason],
            },
            PurchaseOrderStatus.RECEIVED: {},
            PurchaseOrderStatus.CANCELLED: {},
        },
    },
    ALLOCATION: {
        "label": "Allocation",
        "states": AllocationStatus,
        "initial": AllocationStatus.PENDING,
        "transitions": {
            AllocationStatus.PENDING: {
                AllocationStatus.ALLOCATED: [],
                AllocationStatus.CANCELLED: [guard_cancellation_reason],
            },
            AllocationStatus.ALLOCATED: {
                AllocationStatus.PARTIALLY_RECEIVED: [],
                AllocationStatus.RECEIVED: [],
                AllocationStatus.CANCELLED: [guard_cancellation_reason],
            },
            AllocationStatus.PARTIALLY_RECEIVED: {
                AllocationStatus.PARTIALLY_RECEIVED: [],
                AllocationStatus.RECEIVED: [],
            },
            AllocationStatus.RECEIVED: {},
            AllocationStatus.CANCELLED: {},
        },
    },
    TRANSFER: {
        "label": "Transfer",
        "states": TransferStatus,
        "initial": TransferStatus.REQUESTED,
        "transitions": {
            TransferStatus.REQUESTED: {
                TransferStatus.APPROVED: [],
                TransferStatus.CANCELLED: [guard_cancellation_reason],
            },
            TransferStatus.APPROVED: {
                TransferStatus.SHIPPED: [guard_ship_quantity],
                TransferStatus.CANCELLED: [guard_cancellation_reason],
            },
            # Shrinkage after shipping is handled by receiving with a variance.
            TransferStatus.SHIPPED: {
                TransferStatus.RECEIVED: [guard_receiving_data],
            },
            TransferStatus.RECEIVED: {},
            TransferStatus.CANCELLED: {},
        },
    },
}
