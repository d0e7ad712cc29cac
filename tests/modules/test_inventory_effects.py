"""
Tests for the Inventory Effect Applier and inventory immutability.

Covers:
- Lot creation, on-hand upsert, RECEIVE transaction
- Upsert absorbing a concurrent insert of the same (item, location)
- Flush-only contract (caller owns commit / rollback)
- Lots immutable except quantity_remaining; transactions append-only
"""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import func, select

from supply_kernel.exceptions import ImmutabilityViolationError
from supply_modules.inventory.models import TransactionType
from supply_modules.inventory.orm import (
    InventoryLotModel,
    InventoryRecordModel,
    InventoryTransactionModel,
)
from supply_modules.inventory.service import InventoryEffectApplier


@pytest.fixture
def applier(session, clock):
    return InventoryEffectApplier(session, clock)


def _apply(applier, actor_id, item_id, location_id, quantity="10", lot_number="LOT-1"):
    return applier.apply_receipt_line(
        receipt_id=uuid4(),
        receipt_line_id=uuid4(),
        item_id=item_id,
        location_id=location_id,
        quantity=Decimal(quantity),
        unit_cost=Decimal("2.50"),
        lot_number=lot_number,
        expiry_date=date(2026, 6, 30),
        actor_id=actor_id,
    )


class TestApplyReceiptLine:

    def test_creates_lot_record_and_transaction(self, applier, session, actor_id, clock):
        item, location = uuid4(), uuid4()

        lot = _apply(applier, actor_id, item, location, quantity="10")
        session.commit()

        assert lot.quantity_received == Decimal("10")
        assert lot.quantity_remaining == Decimal("10")
        assert lot.expiry_date == date(2026, 6, 30)
        assert applier.get_on_hand(item, location) == Decimal("10")
        txn = session.execute(select(InventoryTransactionModel)).scalar_one()
        assert txn.transaction_type == TransactionType.RECEIVE.value
        assert txn.lot_id == lot.id
        assert txn.quantity == Decimal("10")
        assert txn.reference_type == "RECEIPT"

    def test_second_receipt_increments_existing_record(self, applier, session, actor_id):
        item, location = uuid4(), uuid4()

        _apply(applier, actor_id, item, location, quantity="10", lot_number="A")
        _apply(applier, actor_id, item, location, quantity="5", lot_number="B")
        session.commit()

        assert applier.get_on_hand(item, location) == Decimal("15")
        assert session.execute(select(func.count(InventoryRecordModel.id))).scalar_one() == 1
        assert session.execute(select(func.count(InventoryLotModel.id))).scalar_one() == 2

    def test_locations_are_separate(self, applier, session, actor_id):
        item = uuid4()
        ward, pharmacy = uuid4(), uuid4()

        _apply(applier, actor_id, item, ward, quantity="3")
        _apply(applier, actor_id, item, pharmacy, quantity="4")
        session.commit()

        assert applier.get_on_hand(item, ward) == Decimal("3")
        assert applier.get_on_hand(item, pharmacy) == Decimal("4")
        assert applier.get_on_hand(uuid4(), ward) == Decimal("0")

    @pytest.mark.parametrize("quantity", ["0", "-1"])
    def test_non_positive_quantity_rejected(self, applier, actor_id, quantity):
        with pytest.raises(ValueError):
            _apply(applier, actor_id, uuid4(), uuid4(), quantity=quantity)

    def test_nothing_is_committed_by_the_applier(self, applier, session, actor_id):
        item, location = uuid4(), uuid4()

        _apply(applier, actor_id, item, location)
        session.rollback()

        assert applier.get_on_hand(item, location) == Decimal("0")
        assert session.execute(select(func.count(InventoryLotModel.id))).scalar_one() == 0

    def test_concurrent_insert_is_absorbed(self, applier, session, actor_id, monkeypatch):
        """The row appears between the failed increment and the insert."""
        item, location = uuid4(), uuid4()
        session.add(InventoryRecordModel(
            id=uuid4(), item_id=item, location_id=location,
            quantity_on_hand=Decimal("7"), created_by_id=actor_id,
        ))
        session.commit()

        real_increment = InventoryEffectApplier._increment
        attempts = []

        def increment_missing_first(self, *args):
            attempts.append(args)
            if len(attempts) == 1:
                return False
            return real_increment(self, *args)

        monkeypatch.setattr(InventoryEffectApplier, "_increment", increment_missing_first)

        _apply(applier, actor_id, item, location, quantity="3")
        session.commit()

        assert len(attempts) == 2
        assert applier.get_on_hand(item, location) == Decimal("10")
        assert session.execute(select(func.count(InventoryRecordModel.id))).scalar_one() == 1


class TestInventoryImmutability:

    def test_lot_quantity_remaining_is_mutable(self, applier, session, actor_id):
        lot = _apply(applier, actor_id, uuid4(), uuid4(), quantity="10")
        session.commit()

        lot.quantity_remaining = Decimal("4")
        session.commit()

        assert session.get(InventoryLotModel, lot.id, populate_existing=True).quantity_remaining == Decimal("4")

    def test_lot_cost_is_immutable(self, applier, session, actor_id):
        lot = _apply(applier, actor_id, uuid4(), uuid4())
        session.commit()

        lot.unit_cost = Decimal("99")
        with pytest.raises(ImmutabilityViolationError):
            session.flush()
        session.rollback()

    def test_lot_cannot_be_deleted(self, applier, session, actor_id):
        lot = _apply(applier, actor_id, uuid4(), uuid4())
        session.commit()

        session.delete(lot)
        with pytest.raises(ImmutabilityViolationError):
            session.flush()
        session.rollback()

    def test_transactions_are_append_only(self, applier, session, actor_id):
        _apply(applier, actor_id, uuid4(), uuid4())
        session.commit()
        txn = session.execute(select(InventoryTransactionModel)).scalar_one()

        txn.quantity = Decimal("1000")
        with pytest.raises(ImmutabilityViolationError):
            session.flush()
        session.rollback()

        session.delete(txn)
        with pytest.raises(ImmutabilityViolationError):
            session.flush()
        session.rollback()
