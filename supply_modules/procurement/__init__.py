"""
Procurement Module (``supply_modules.procurement``).

Responsibility
--------------
The purchase request -> purchase order -> receipt workflow: status machines,
the three orchestrators that drive them, and the persistence models.

Architecture position
---------------------
**Modules layer** -- the orchestrators compose the budget control engine,
the budget ledger client, the contract pricing cache and the inventory
effect applier under ``TransactionCoordinator`` units of work.

Audit relevance
---------------
Every transition records its actor and timestamp; every ledger side effect
is persisted as a saga record.
"""

from supply_modules.procurement.models import (
    POStatus,
    PRStatus,
    PurchaseOrder,
    PurchaseOrderLine,
    PurchaseRequest,
    PurchaseRequestLine,
    Receipt,
    ReceiptLine,
    ReceiptStatus,
    ReservationState,
    ValidationIssue,
)
from supply_modules.procurement.workflows import (
    PURCHASE_ORDER_WORKFLOW,
    PURCHASE_REQUEST_WORKFLOW,
    RECEIPT_WORKFLOW,
)

__all__ = [
    "PRStatus",
    "POStatus",
    "ReceiptStatus",
    "ReservationState",
    "PurchaseRequest",
    "PurchaseRequestLine",
    "PurchaseOrder",
    "PurchaseOrderLine",
    "Receipt",
    "ReceiptLine",
    "ValidationIssue",
    "PURCHASE_REQUEST_WORKFLOW",
    "PURCHASE_ORDER_WORKFLOW",
    "RECEIPT_WORKFLOW",
]
