"""
Module: supply_modules.inventory.orm
Responsibility: SQLAlchemy ORM persistence models for the Inventory module:
    lots, per-location on-hand records and the stock transaction log.

Architecture position: Modules > Inventory > ORM.  Inherits from TrackedBase
    (supply_kernel.db.base).  Items and locations are owned by the wider
    inventory platform and referenced by UUID with NO foreign key.

Invariants enforced:
    - All quantities and costs use Decimal (Numeric(38,9)) -- NEVER float.
    - One InventoryRecord per (item_id, location_id).
    - InventoryLot rows are immutable except quantity_remaining.
    - InventoryTransaction rows are never updated or deleted.
    The last two are enforced by ORM listeners registered at import time
    (supply_kernel.db.immutability).

Failure modes:
    - IntegrityError on a second record for the same (item, location).
    - ImmutabilityViolationError on forbidden UPDATE/DELETE at flush.
"""

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import Date, ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from supply_kernel.db.base import TrackedBase
from supply_kernel.db.immutability import register_immutable


# =============================================================================
# InventoryLotModel
# =============================================================================

class InventoryLotModel(TrackedBase):
    """
    A received batch of one item at one location.

    Maps to: supply_modules.inventory.models.InventoryLot.

    Guarantees:
        - Every column except quantity_remaining is fixed at creation.
        - 0 <= quantity_remaining <= quantity_received at creation.
    """

    __tablename__ = "inventory_lots"

    __table_args__ = (
        Index("idx_inv_lot_item_location", "item_id", "location_id"),
        Index("idx_inv_lot_expiry", "expiry_date"),
        Index("idx_inv_lot_receipt", "receipt_id"),
    )

    item_id: Mapped[UUID]
    location_id: Mapped[UUID]
    lot_number: Mapped[str | None] = mapped_column(String(50), nullable=True)
    expiry_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    unit_cost: Mapped[Decimal] = mapped_column(default=Decimal("0"))
    quantity_received: Mapped[Decimal]
    quantity_remaining: Mapped[Decimal]
    receipt_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("receipts.id"), nullable=True,
    )
    receipt_line_id: Mapped[UUID | None]
    received_at: Mapped[datetime | None]

    def to_dto(self):
        from supply_modules.inventory.models import InventoryLot

        return InventoryLot(
            id=self.id,
            item_id=self.item_id,
            location_id=self.location_id,
            lot_number=self.lot_number,
            expiry_date=self.expiry_date,
            unit_cost=self.unit_cost,
            quantity_received=self.quantity_received,
            quantity_remaining=self.quantity_remaining,
            receipt_id=self.receipt_id,
            receipt_line_id=self.receipt_line_id,
            received_at=self.received_at,
        )

    def __repr__(self) -> str:
        return f"<InventoryLotModel {self.lot_number} remaining={self.quantity_remaining}>"


# =============================================================================
# InventoryRecordModel
# =============================================================================

class InventoryRecordModel(TrackedBase):
    """
    On-hand balance per (item, location).

    Guarantees:
        - Exactly one row per (item_id, location_id).
        - quantity_on_hand is only incremented by receipt posting here.
    """

    __tablename__ = "inventory_records"

    __table_args__ = (
        UniqueConstraint("item_id", "location_id", name="uq_inventory_record_item_location"),
    )

    item_id: Mapped[UUID]
    location_id: Mapped[UUID]
    quantity_on_hand: Mapped[Decimal] = mapped_column(default=Decimal("0"))
    last_received_at: Mapped[datetime | None]

    def to_dto(self):
        from supply_modules.inventory.models import InventoryRecord

        return InventoryRecord(
            id=self.id,
            item_id=self.item_id,
            location_id=self.location_id,
            quantity_on_hand=self.quantity_on_hand,
            last_received_at=self.last_received_at,
        )

    def __repr__(self) -> str:
        return f"<InventoryRecordModel {self.item_id}@{self.location_id} on_hand={self.quantity_on_hand}>"


# =============================================================================
# InventoryTransactionModel
# =============================================================================

class InventoryTransactionModel(TrackedBase):
    """
    Append-only stock movement log entry.

    Guarantees:
        - Never updated, never deleted.
        - reference_type/reference_id point at the originating document.
    """

    __tablename__ = "inventory_transactions"

    __table_args__ = (
        Index("idx_inv_txn_item_location", "item_id", "location_id"),
        Index("idx_inv_txn_reference", "reference_type", "reference_id"),
        Index("idx_inv_txn_lot", "lot_id"),
    )

    transaction_type: Mapped[str] = mapped_column(String(20), nullable=False)
    item_id: Mapped[UUID]
    location_id: Mapped[UUID]
    lot_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("inventory_lots.id"), nullable=True,
    )
    quantity: Mapped[Decimal]
    unit_cost: Mapped[Decimal] = mapped_column(default=Decimal("0"))
    reference_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    reference_id: Mapped[UUID | None]
    occurred_at: Mapped[datetime]

    def to_dto(self):
        from supply_modules.inventory.models import (
            InventoryTransaction,
            TransactionType,
        )

        return InventoryTransaction(
            id=self.id,
            transaction_type=TransactionType(self.transaction_type),
            item_id=self.item_id,
            location_id=self.location_id,
            quantity=self.quantity,
            unit_cost=self.unit_cost,
            occurred_at=self.occurred_at,
            lot_id=self.lot_id,
            reference_type=self.reference_type,
            reference_id=self.reference_id,
        )

    def __repr__(self) -> str:
        return f"<InventoryTransactionModel {self.transaction_type} qty={self.quantity}>"


register_immutable(InventoryLotModel, mutable_columns=("quantity_remaining",))
register_immutable(InventoryTransactionModel)
