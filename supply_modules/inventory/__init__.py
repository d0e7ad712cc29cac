"""
Inventory Module (``supply_modules.inventory``).

Lots, on-hand records and the append-only stock transaction log.  Receipt
posting is the only writer in this package; dispensing and adjustments live
outside the workflow core.
"""

from supply_modules.inventory.models import (
    InventoryLot,
    InventoryRecord,
    InventoryTransaction,
    TransactionType,
)

__all__ = [
    "InventoryLot",
    "InventoryRecord",
    "InventoryTransaction",
    "TransactionType",
]
