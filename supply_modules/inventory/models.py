"""
Inventory Domain Models.

The nouns of stock keeping: lots, on-hand records, stock transactions.
"""

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID


class TransactionType(Enum):
    """Kinds of stock movement recorded in the transaction log."""
    RECEIVE = "RECEIVE"
    DISPENSE = "DISPENSE"
    ADJUST = "ADJUST"
    TRANSFER = "TRANSFER"


@dataclass(frozen=True)
class InventoryLot:
    """A traceable batch of one item received into one location."""
    id: UUID
    item_id: UUID
    location_id: UUID
    lot_number: str | None
    expiry_date: date | None
    unit_cost: Decimal
    quantity_received: Decimal
    quantity_remaining: Decimal
    receipt_id: UUID | None = None
    receipt_line_id: UUID | None = None
    received_at: datetime | None = None


@dataclass(frozen=True)
class InventoryRecord:
    """On-hand balance of one item at one location."""
    id: UUID
    item_id: UUID
    location_id: UUID
    quantity_on_hand: Decimal = Decimal("0")
    last_received_at: datetime | None = None


@dataclass(frozen=True)
class InventoryTransaction:
    """One entry of the append-only stock movement log."""
    id: UUID
    transaction_type: TransactionType
    item_id: UUID
    location_id: UUID
    quantity: Decimal
    unit_cost: Decimal
    occurred_at: datetime
    lot_id: UUID | None = None
    reference_type: str | None = None
    reference_id: UUID | None = None
