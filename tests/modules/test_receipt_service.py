"""
Tests for the Receipt Orchestrator.

Covers:
- Receipt creation against SENT / PARTIAL purchase orders
- Inspection committee roster and lifecycle
- validate_for_posting issues (inspectors, over-receipt summed per PO line)
- Posting effects: lots, on-hand, RECEIVE transactions, PO line quantities,
  budget purchased quantities, PO fulfilment status
- Atomicity when an inventory effect fails
"""

from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import func, select, update

from supply_kernel.exceptions import (
    InvalidTransitionError,
    TransactionRolledBackError,
    ValidationError,
)
from supply_modules.budget.orm import BudgetRequestItemModel
from supply_modules.inventory.orm import (
    InventoryLotModel,
    InventoryRecordModel,
    InventoryTransactionModel,
)
from supply_modules.inventory.service import InventoryEffectApplier
from supply_modules.procurement.models import POStatus, ReceiptStatus
from supply_modules.procurement.orm import PurchaseOrderLineModel
from supply_modules.procurement.receipt_service import (
    INSUFFICIENT_INSPECTORS,
    OVER_RECEIPT,
)


def _count(session, model) -> int:
    return session.execute(select(func.count(model.id))).scalar_one()


class TestCreateReceipt:

    def test_create_against_sent_po(self, services, make_sent_po, actor_id):
        po = make_sent_po(quantity="100")
        location = uuid4()

        receipt = services.receipts.create_receipt(
            po.id, location,
            [{
                "purchase_order_line_id": po.lines[0].id,
                "quantity_received": "60",
                "quantity_accepted": "55",
                "lot_number": "LOT-A",
            }],
            actor_id,
        )

        assert receipt.status == ReceiptStatus.DRAFT
        assert receipt.location_id == location
        assert receipt.receipt_number.startswith("RCV-20250115-")
        [line] = receipt.lines
        assert line.quantity_received == Decimal("60")
        assert line.quantity_accepted == Decimal("55")
        assert line.unit_cost == Decimal("50")

    def test_po_must_be_sent(self, services, make_submitted_pr, approver_id, actor_id):
        pr = make_submitted_pr()
        services.requisitions.approve(pr.id, approver_id)
        po = services.purchase_orders.create_from_requisition(pr.id, uuid4(), actor_id)

        with pytest.raises(ValidationError):
            services.receipts.create_receipt(
                po.id, uuid4(),
                [{"purchase_order_line_id": po.lines[0].id, "quantity_received": "1"}],
                actor_id,
            )

    def test_accepted_cannot_exceed_received(self, services, make_sent_po, actor_id):
        po = make_sent_po()

        with pytest.raises(ValidationError):
            services.receipts.create_receipt(
                po.id, uuid4(),
                [{
                    "purchase_order_line_id": po.lines[0].id,
                    "quantity_received": "5",
                    "quantity_accepted": "6",
                }],
                actor_id,
            )

    def test_line_must_belong_to_po(self, services, make_sent_po, actor_id):
        po = make_sent_po()

        with pytest.raises(ValidationError):
            services.receipts.create_receipt(
                po.id, uuid4(),
                [{"purchase_order_line_id": uuid4(), "quantity_received": "1"}],
                actor_id,
            )


class TestInspection:

    def test_roster_and_lifecycle(self, services, make_sent_po, actor_id):
        po = make_sent_po()
        receipt = services.receipts.create_receipt(
            po.id, uuid4(),
            [{"purchase_order_line_id": po.lines[0].id, "quantity_received": "10"}],
            actor_id,
        )
        inspector = uuid4()

        services.receipts.add_inspector(receipt.id, inspector, actor_id)
        inspecting = services.receipts.start_inspection(receipt.id, actor_id)
        accepted = services.receipts.accept(receipt.id, actor_id)

        assert inspecting.status == ReceiptStatus.INSPECTING
        assert accepted.status == ReceiptStatus.ACCEPTED
        assert accepted.inspector_ids == (inspector,)

    def test_duplicate_inspector(self, services, make_sent_po, actor_id):
        po = make_sent_po()
        receipt = services.receipts.create_receipt(
            po.id, uuid4(),
            [{"purchase_order_line_id": po.lines[0].id, "quantity_received": "10"}],
            actor_id,
        )
        inspector = uuid4()
        services.receipts.add_inspector(receipt.id, inspector, actor_id)

        with pytest.raises(ValidationError):
            services.receipts.add_inspector(receipt.id, inspector, actor_id)

    def test_accept_requires_inspection(self, services, make_sent_po, actor_id):
        po = make_sent_po()
        receipt = services.receipts.create_receipt(
            po.id, uuid4(),
            [{"purchase_order_line_id": po.lines[0].id, "quantity_received": "10"}],
            actor_id,
        )

        with pytest.raises(InvalidTransitionError):
            services.receipts.accept(receipt.id, actor_id)

    def test_reject(self, services, make_sent_po, make_accepted_receipt, actor_id, session):
        po = make_sent_po()
        receipt = make_accepted_receipt(po)

        rejected = services.receipts.reject(receipt.id, actor_id, "damaged in transit")

        assert rejected.status == ReceiptStatus.REJECTED
        assert rejected.rejection_reason == "damaged in transit"
        assert _count(session, InventoryLotModel) == 0
        with pytest.raises(InvalidTransitionError):
            services.receipts.post(receipt.id, actor_id)


class TestValidateForPosting:

    def test_clean_receipt_has_no_issues(self, services, make_sent_po, make_accepted_receipt):
        po = make_sent_po()
        receipt = make_accepted_receipt(po)

        assert services.receipts.validate_for_posting(receipt.id) == []

    def test_reports_every_issue(
        self, services, make_sent_po, make_accepted_receipt, actor_id,
    ):
        po = make_sent_po(quantity="100")
        first = make_accepted_receipt(po, quantities=["80"])
        services.receipts.post(first.id, actor_id)
        second = make_accepted_receipt(po, quantities=["30"], inspectors=2)

        issues = services.receipts.validate_for_posting(second.id)

        codes = [issue.code for issue in issues]
        assert codes == [INSUFFICIENT_INSPECTORS, OVER_RECEIPT]
        assert issues[0].message == "3 inspectors required, 2 present"
        assert "accepted 30" in issues[1].message
        assert "remaining 20" in issues[1].message

    def test_post_refuses_with_issues(
        self, services, make_sent_po, make_accepted_receipt, actor_id, session,
    ):
        po = make_sent_po()
        receipt = make_accepted_receipt(po, inspectors=1)

        with pytest.raises(ValidationError) as exc_info:
            services.receipts.post(receipt.id, actor_id)

        [issue] = exc_info.value.detail["issues"]
        assert issue["code"] == INSUFFICIENT_INSPECTORS
        assert services.receipts.get(receipt.id).status == ReceiptStatus.ACCEPTED
        assert _count(session, InventoryLotModel) == 0
    def _accepted_split_receipt(self, services, po, quantities, actor_id):
        po_line = po.lines[0]
        receipt = services.receipts.create_receipt(
            po.id,
            uuid4(),
            [
                {
                    "purchase_order_line_id": po_line.id,
                    "quantity_received": qty,
                    "lot_number": f"LOT-{n}",
                }
                for n, qty in enumerate(quantities, start=1)
            ],
            actor_id,
        )
        for _ in range(3):
            services.receipts.add_inspector(receipt.id, uuid4(), actor_id)
        services.receipts.start_inspection(receipt.id, actor_id)
        return services.receipts.accept(receipt.id, actor_id)

    def test_lines_on_same_po_line_are_summed(
        self, services, make_sent_po, actor_id, session,
    ):
        po = make_sent_po(quantity="100")
        receipt = self._accepted_split_receipt(services, po, ["60", "60"], actor_id)

        [issue] = services.receipts.validate_for_posting(receipt.id)

        assert issue.code == OVER_RECEIPT
        assert issue.message.startswith("Lines 1, 2: ")
        assert Decimal(issue.detail["accepted"]) == Decimal("120")
        assert Decimal(issue.detail["remaining"]) == Decimal("100")
        assert issue.detail["receipt_lines"] == [1, 2]

        with pytest.raises(ValidationError) as exc_info:
            services.receipts.post(receipt.id, actor_id)
        assert [i["code"] for i in exc_info.value.detail["issues"]] == [OVER_RECEIPT]
        assert _count(session, InventoryLotModel) == 0

    def test_split_lines_within_remaining_post(self, services, make_sent_po, actor_id):
        po = make_sent_po(quantity="100")
        receipt = self._accepted_split_receipt(services, po, ["40", "60"], actor_id)

        assert services.receipts.validate_for_posting(receipt.id) == []
        services.receipts.post(receipt.id, actor_id)

        after = services.purchase_orders.get(po.id)
        assert after.status == POStatus.COMPLETED
        assert after.lines[0].quantity_received == Decimal("100")




class TestPost:

    def test_full_receipt_completes_po(
        self, services, make_sent_po, make_accepted_receipt, actor_id, session, notifier,
    ):
        po = make_sent_po(quantity="100", unit_price="50")
        location = uuid4()
        receipt = make_accepted_receipt(po, location_id=location)

        posted = services.receipts.post(receipt.id, actor_id)

        assert posted.status == ReceiptStatus.POSTED
        assert posted.posted_by == actor_id
        after = services.purchase_orders.get(po.id)
        assert after.status == POStatus.COMPLETED
        assert after.lines[0].quantity_received == Decimal("100")

        item_id = po.lines[0].item_id
        lot = session.execute(select(InventoryLotModel)).scalar_one()
        assert lot.item_id == item_id
        assert lot.location_id == location
        assert lot.lot_number == "LOT-1"
        assert lot.quantity_received == Decimal("100")
        assert lot.quantity_remaining == Decimal("100")
        assert lot.receipt_id == receipt.id

        on_hand = InventoryEffectApplier(session).get_on_hand(item_id, location)
        assert on_hand == Decimal("100")
        txn = session.execute(select(InventoryTransactionModel)).scalar_one()
        assert txn.transaction_type == "RECEIVE"
        assert txn.reference_id == receipt.id

        budget_item = session.get(
            BudgetRequestItemModel, po.lines[0].budget_request_item_id, populate_existing=True,
        )
        assert budget_item.q2_purchased_qty == Decimal("100")
        assert budget_item.q1_purchased_qty == Decimal("0")
        assert notifier.events[-1] == (
            "receipt.posted",
            {"receipt_id": str(receipt.id), "purchase_order_id": str(po.id), "po_status": "COMPLETED"},
        )

    def test_partial_receipts(
        self, services, make_sent_po, make_accepted_receipt, actor_id, session,
    ):
        po = make_sent_po(quantity="100")
        location = uuid4()

        first = make_accepted_receipt(po, quantities=["40"], location_id=location)
        services.receipts.post(first.id, actor_id)
        assert services.purchase_orders.get(po.id).status == POStatus.PARTIAL

        second = make_accepted_receipt(po, quantities=["60"], location_id=location)
        services.receipts.post(second.id, actor_id)

        assert services.purchase_orders.get(po.id).status == POStatus.COMPLETED
        assert _count(session, InventoryLotModel) == 2
        assert _count(session, InventoryRecordModel) == 1
        on_hand = InventoryEffectApplier(session).get_on_hand(po.lines[0].item_id, location)
        assert on_hand == Decimal("100")

    def test_zero_accepted_line_has_no_effect(
        self, services, make_sent_po, actor_id, session,
    ):
        po = make_sent_po(quantity="100")
        receipt = services.receipts.create_receipt(
            po.id, uuid4(),
            [{
                "purchase_order_line_id": po.lines[0].id,
                "quantity_received": "10",
                "quantity_accepted": "0",
            }],
            actor_id,
        )
        for _ in range(3):
            services.receipts.add_inspector(receipt.id, uuid4(), actor_id)
        services.receipts.start_inspection(receipt.id, actor_id)
        services.receipts.accept(receipt.id, actor_id)

        services.receipts.post(receipt.id, actor_id)

        assert _count(session, InventoryLotModel) == 0
        assert services.purchase_orders.get(po.id).status == POStatus.PARTIAL

    def test_inventory_failure_rolls_back_everything(
        self, services, make_sent_po, make_accepted_receipt, actor_id, session, monkeypatch,
    ):
        po = make_sent_po(quantity="100")
        receipt = make_accepted_receipt(po)

        def failing_upsert(self, **kwargs):
            raise RuntimeError("disk full")

        monkeypatch.setattr(InventoryEffectApplier, "upsert_record", failing_upsert)

        with pytest.raises(TransactionRolledBackError) as exc_info:
            services.receipts.post(receipt.id, actor_id)

        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert _count(session, InventoryLotModel) == 0
        assert _count(session, InventoryTransactionModel) == 0
        assert services.receipts.get(receipt.id).status == ReceiptStatus.ACCEPTED
        after = services.purchase_orders.get(po.id)
        assert after.status == POStatus.SENT
        assert after.lines[0].quantity_received == Decimal("0")

        # Claims were released, so the post can be retried.
        monkeypatch.undo()
        assert services.receipts.post(receipt.id, actor_id).status == ReceiptStatus.POSTED

    def test_post_twice_is_invalid(
        self, services, make_sent_po, make_accepted_receipt, actor_id,
    ):
        po = make_sent_po()
        receipt = make_accepted_receipt(po)
        services.receipts.post(receipt.id, actor_id)

        with pytest.raises(InvalidTransitionError):
            services.receipts.post(receipt.id, actor_id)

    def test_concurrent_receipt_detected_at_increment(
        self, services, make_sent_po, make_accepted_receipt, actor_id, session, monkeypatch,
    ):
        po = make_sent_po(quantity="100")
        receipt = make_accepted_receipt(po)
        po_line_id = po.lines[0].id
        real_apply = InventoryEffectApplier.apply_receipt_line

        def apply_then_other_receipt_lands(self, **kwargs):
            result = real_apply(self, **kwargs)
            self._session.execute(
                update(PurchaseOrderLineModel)
                .where(PurchaseOrderLineModel.id == po_line_id)
                .values(quantity_received=PurchaseOrderLineModel.quantity_ordered)
                .execution_options(synchronize_session=False)
            )
            return result

        monkeypatch.setattr(
            InventoryEffectApplier, "apply_receipt_line", apply_then_other_receipt_lands,
        )

        with pytest.raises(ValidationError) as exc_info:
            services.receipts.post(receipt.id, actor_id)

        detail = exc_info.value.detail
        assert detail["code"] == OVER_RECEIPT
        assert detail["reason"] == "concurrent_receipt"
        assert detail["receipt_line_number"] == 1
        assert _count(session, InventoryLotModel) == 0
        assert services.receipts.get(receipt.id).status == ReceiptStatus.ACCEPTED
        assert services.purchase_orders.get(po.id).lines[0].quantity_received == Decimal("0")
