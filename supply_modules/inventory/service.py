"""
Inventory Effect Applier (``supply_modules.inventory.service``).

Responsibility
--------------
Applies the inventory side of a posted receipt line: create the lot,
increment the (item, location) on-hand record, append a RECEIVE
transaction.

Architecture position
---------------------
**Modules layer** -- participates in the caller's transaction.  It never
commits or rolls back; ``ReceiptService.post`` owns the boundary so that
lots, records, transactions, PO lines and budget quantities land together
or not at all.

Invariants enforced
-------------------
* One InventoryRecord per (item, location): the increment is a single
  ``UPDATE ... SET quantity_on_hand = quantity_on_hand + :qty``; the row
  is inserted inside a SAVEPOINT only when absent, and a concurrent insert
  that wins the unique constraint is absorbed by retrying the increment.
* Lots and transactions are insert-only (ORM immutability listeners).

Failure modes
-------------
* ValueError for a non-positive quantity.
* Any database error propagates; the caller rolls back.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from supply_kernel.domain.clock import Clock, SystemClock
from supply_kernel.logging_config import get_logger
from supply_modules.inventory.models import TransactionType
from supply_modules.inventory.orm import (
    InventoryLotModel,
    InventoryRecordModel,
    InventoryTransactionModel,
)

logger = get_logger("modules.inventory.service")


class InventoryEffectApplier:
    """
    Writes the inventory effects of receipt posting into the caller's session.

    Contract:
        Every method flushes but never commits.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        self._session = session
        self._clock = clock or SystemClock()

    def create_lot(
        self,
        *,
        item_id: UUID,
        location_id: UUID,
        quantity: Decimal,
        unit_cost: Decimal,
        lot_number: str | None,
        expiry_date: date | None,
        receipt_id: UUID | None,
        receipt_line_id: UUID | None,
        actor_id: UUID,
    ) -> InventoryLotModel:
        """Create a new lot holding ``quantity`` units."""
        if quantity <= 0:
            raise ValueError(f"Lot quantity must be positive, got {quantity}")

        lot = InventoryLotModel(
            id=uuid4(),
            item_id=item_id,
            location_id=location_id,
            lot_number=lot_number,
            expiry_date=expiry_date,
            unit_cost=unit_cost,
            quantity_received=quantity,
            quantity_remaining=quantity,
            receipt_id=receipt_id,
            receipt_line_id=receipt_line_id,
            received_at=self._clock.now(),
            created_by_id=actor_id,
        )
        self._session.add(lot)
        self._session.flush()
        logger.info(
            "inventory_lot_created",
            extra={
                "lot_id": str(lot.id),
                "item_id": str(item_id),
                "location_id": str(location_id),
                "lot_number": lot_number,
                "quantity": str(quantity),
            },
        )
        return lot

    def upsert_record(
        self,
        *,
        item_id: UUID,
        location_id: UUID,
        quantity: Decimal,
        actor_id: UUID,
    ) -> None:
        """Add ``quantity`` to the on-hand record, creating it if needed."""
        if quantity <= 0:
            raise ValueError(f"On-hand increment must be positive, got {quantity}")

        now = self._clock.now()
        if self._increment(item_id, location_id, quantity, now, actor_id):
            return

        try:
            with self._session.begin_nested():
                self._session.add(
                    InventoryRecordModel(
                        id=uuid4(),
                        item_id=item_id,
                        location_id=location_id,
                        quantity_on_hand=quantity,
                        last_received_at=now,
                        created_by_id=actor_id,
                    )
                )
            logger.info(
                "inventory_record_created",
                extra={
                    "item_id": str(item_id),
                    "location_id": str(location_id),
                    "quantity_on_hand": str(quantity),
                },
            )
        except IntegrityError:
            # Another transaction created the row first.
            logger.info(
                "inventory_record_insert_raced",
                extra={"item_id": str(item_id), "location_id": str(location_id)},
            )
            if not self._increment(item_id, location_id, quantity, now, actor_id):
                raise

    def _increment(
        self,
        item_id: UUID,
        location_id: UUID,
        quantity: Decimal,
        now: datetime,
        actor_id: UUID,
    ) -> bool:
        result = self._session.execute(
            update(InventoryRecordModel)
            .where(
                InventoryRecordModel.item_id == item_id,
                InventoryRecordModel.location_id == location_id,
            )
            .values(
                quantity_on_hand=InventoryRecordModel.quantity_on_hand + quantity,
                last_received_at=now,
                updated_by_id=actor_id,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            logger.info(
                "inventory_record_incremented",
                extra={
                    "item_id": str(item_id),
                    "location_id": str(location_id),
                    "quantity": str(quantity),
                },
            )
            return True
        return False

    def append_transaction(
        self,
        *,
        transaction_type: TransactionType,
        item_id: UUID,
        location_id: UUID,
        quantity: Decimal,
        unit_cost: Decimal,
        lot_id: UUID | None,
        reference_type: str,
        reference_id: UUID,
        actor_id: UUID,
    ) -> InventoryTransactionModel:
        txn = InventoryTransactionModel(
            id=uuid4(),
            transaction_type=transaction_type.value,
            item_id=item_id,
            location_id=location_id,
            lot_id=lot_id,
            quantity=quantity,
            unit_cost=unit_cost,
            reference_type=reference_type,
            reference_id=reference_id,
            occurred_at=self._clock.now(),
            created_by_id=actor_id,
        )
        self._session.add(txn)
        self._session.flush()
        return txn

    def apply_receipt_line(
        self,
        *,
        receipt_id: UUID,
        receipt_line_id: UUID,
        item_id: UUID,
        location_id: UUID,
        quantity: Decimal,
        unit_cost: Decimal,
        lot_number: str | None,
        expiry_date: date | None,
        actor_id: UUID,
    ) -> InventoryLotModel:
        """Lot, on-hand increment and RECEIVE transaction for one accepted line."""
        lot = self.create_lot(
            item_id=item_id,
            location_id=location_id,
            quantity=quantity,
            unit_cost=unit_cost,
            lot_number=lot_number,
            expiry_date=expiry_date,
            receipt_id=receipt_id,
            receipt_line_id=receipt_line_id,
            actor_id=actor_id,
        )
        self.upsert_record(
            item_id=item_id,
            location_id=location_id,
            quantity=quantity,
            actor_id=actor_id,
        )
        self.append_transaction(
            transaction_type=TransactionType.RECEIVE,
            item_id=item_id,
            location_id=location_id,
            quantity=quantity,
            unit_cost=unit_cost,
            lot_id=lot.id,
            reference_type="RECEIPT",
            reference_id=receipt_id,
            actor_id=actor_id,
        )
        return lot

    def get_on_hand(self, item_id: UUID, location_id: UUID) -> Decimal:
        """Current on-hand quantity (zero when no record exists)."""
        value = self._session.execute(
            select(InventoryRecordModel.quantity_on_hand).where(
                InventoryRecordModel.item_id == item_id,
                InventoryRecordModel.location_id == location_id,
            )
        ).scalar_one_or_none()
        return value if value is not None else Decimal("0")
