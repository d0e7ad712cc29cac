"""
Receipt Orchestrator (``supply_modules.procurement.receipt_service``).

Responsibility
--------------
Records goods received against a sent purchase order, runs the inspection
committee workflow, and posts accepted receipts: inventory lots, on-hand
records and RECEIVE transactions, PO line received quantities, budget
purchased quantities and the PO fulfilment status.

Architecture position
---------------------
**Modules layer** -- workflow glue.  Inventory writes are delegated to
``InventoryEffectApplier`` (flush-only); claims, commit and rollback belong
to ``TransactionCoordinator``.

Invariants enforced
-------------------
* A receipt is POSTED only with at least ``min_inspectors`` inspectors and
  no line accepting more than its PO line still expects.
* Posting is atomic: every effect of every line lands in one commit or
  none does; on failure the receipt stays ACCEPTED.
* Posting claims the receipt AND its PO, so postings against one PO run
  one at a time; the received-quantity update is additionally a
  compare-and-swap that refuses to exceed the ordered quantity.

Failure modes
-------------
* ``ValidationError`` -- wrong status, posting validation issues (listed in
  ``detail["issues"]``), duplicate inspector.
* ``TransactionRolledBackError`` -- any unexpected failure while applying
  effects (retryable; original exception as ``__cause__``).
* ``EntityBusyError`` -- another operation holds the receipt or its PO.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from datetime import date
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from supply_config.schema import ProcurementConfig
from supply_kernel.db.types import to_decimal
from supply_kernel.domain.clock import Clock, SystemClock
from supply_kernel.domain.workflow import require_transition
from supply_kernel.exceptions import EntityNotFoundError, ValidationError
from supply_kernel.logging_config import get_logger
from supply_modules.budget.orm import BudgetRequestItemModel
from supply_modules.inventory.service import InventoryEffectApplier
from supply_modules.procurement.models import (
    POStatus,
    Receipt,
    ReceiptStatus,
    ValidationIssue,
)
from supply_modules.procurement.orm import (
    PurchaseOrderLineModel,
    PurchaseOrderModel,
    ReceiptInspectorModel,
    ReceiptLineModel,
    ReceiptModel,
)
from supply_modules.procurement.workflows import PURCHASE_ORDER_WORKFLOW, RECEIPT_WORKFLOW
from supply_services.collaborators import Notifier, notify_safely
from supply_services.transaction_coordinator import TransactionCoordinator

logger = get_logger("modules.procurement.receipt_service")

ENTITY_TYPE = "receipt"

INSUFFICIENT_INSPECTORS = "INSUFFICIENT_INSPECTORS"
OVER_RECEIPT = "OVER_RECEIPT"

_RECEIVABLE_PO_STATUSES = (POStatus.SENT.value, POStatus.PARTIAL.value)
_ROSTER_OPEN_STATUSES = (
    ReceiptStatus.DRAFT.value,
    ReceiptStatus.INSPECTING.value,
    ReceiptStatus.ACCEPTED.value,
)


class ReceiptService:
    """
    Orchestrates goods receipts from DRAFT to POSTED.

    Contract
    --------
    * ``validate_for_posting`` is read-only and returns every issue, not
      just the first.
    * ``post`` re-validates under the claims before writing anything.
    """

    def __init__(
        self,
        session: Session,
        config: ProcurementConfig | None = None,
        notifier: Notifier | None = None,
        clock: Clock | None = None,
        inventory: InventoryEffectApplier | None = None,
        coordinator: TransactionCoordinator | None = None,
    ):
        self._session = session
        self._config = config or ProcurementConfig()
        self._notifier = notifier
        self._clock = clock or SystemClock()
        self._inventory = inventory or InventoryEffectApplier(session, self._clock)
        self._coordinator = coordinator or TransactionCoordinator(session, self._clock)

    def get(self, receipt_id: UUID) -> Receipt:
        """Current state of a receipt."""
        receipt = self._session.get(ReceiptModel, receipt_id, populate_existing=True)
        if receipt is None:
            raise EntityNotFoundError(ENTITY_TYPE, str(receipt_id))
        return receipt.to_dto()

    # =========================================================================
    # Creation and inspection roster
    # =========================================================================

    def create_receipt(
        self,
        po_id: UUID,
        location_id: UUID,
        lines: Sequence[Mapping[str, Any]],
        user_id: UUID,
        receipt_date: date | None = None,
        receipt_number: str | None = None,
    ) -> Receipt:
        """
        Create a DRAFT receipt against a SENT or PARTIAL purchase order.

        Each line mapping carries ``purchase_order_line_id`` and
        ``quantity_received``; ``quantity_accepted`` defaults to the received
        quantity and ``unit_cost`` to the PO line price.  The PO is claimed
        while the receipt is created, so a concurrent cancel cannot slip in.
        """
        if not lines:
            raise ValidationError("A receipt needs at least one line")

        receipt_id = uuid4()
        with self._coordinator.unit(PurchaseOrderModel, po_id, "create_receipt", user_id) as unit:
            po = unit.entity
            if po.status not in _RECEIVABLE_PO_STATUSES:
                raise ValidationError(
                    f"Cannot receive against purchase order {po.po_number} "
                    f"with status {po.status}",
                    detail={"status": po.status},
                )

            po_lines = {line.id: line for line in po.lines}
            receipt = ReceiptModel(
                id=receipt_id,
                receipt_number=receipt_number
                or f"RCV-{self._clock.today():%Y%m%d}-{receipt_id.hex[:8].upper()}",
                purchase_order_id=po.id,
                location_id=location_id,
                receipt_date=receipt_date or self._clock.today(),
                status=ReceiptStatus.DRAFT.value,
                created_by_id=user_id,
            )
            for number, raw in enumerate(lines, start=1):
                po_line = po_lines.get(raw.get("purchase_order_line_id"))
                if po_line is None:
                    raise ValidationError(
                        f"Line {number}: purchase order line "
                        f"{raw.get('purchase_order_line_id')} is not on {po.po_number}",
                        detail={"line_number": number},
                    )
                received = to_decimal(raw["quantity_received"])
                accepted = to_decimal(raw.get("quantity_accepted", received))
                if received <= 0 or accepted < 0 or accepted > received:
                    raise ValidationError(
                        f"Line {number}: need 0 <= accepted ({accepted}) <= "
                        f"received ({received}) and received > 0",
                        detail={"line_number": number},
                    )
                unit_cost = raw.get("unit_cost")
                receipt.lines.append(
                    ReceiptLineModel(
                        id=uuid4(),
                        line_number=number,
                        purchase_order_line_id=po_line.id,
                        quantity_received=received,
                        quantity_accepted=accepted,
                        lot_number=raw.get("lot_number"),
                        expiry_date=raw.get("expiry_date"),
                        unit_cost=to_decimal(unit_cost) if unit_cost is not None else po_line.unit_price,
                        created_by_id=user_id,
                    )
                )
            self._session.add(receipt)

        logger.info(
            "receipt_created",
            extra={"receipt_id": str(receipt_id), "po_id": str(po_id), "line_count": len(lines)},
        )
        return self.get(receipt_id)

    def add_inspector(self, receipt_id: UUID, inspector_id: UUID, user_id: UUID) -> Receipt:
        """Add a member to the receipt's inspection committee."""
        with self._coordinator.unit(ReceiptModel, receipt_id, "add_inspector", user_id) as unit:
            receipt = unit.entity
            if receipt.status not in _ROSTER_OPEN_STATUSES:
                raise ValidationError(
                    f"Cannot change inspectors of receipt {receipt.receipt_number} "
                    f"with status {receipt.status}",
                    detail={"status": receipt.status},
                )
            if any(i.inspector_id == inspector_id for i in receipt.inspectors):
                raise ValidationError(
                    f"Inspector {inspector_id} is already assigned to "
                    f"receipt {receipt.receipt_number}",
                    detail={"inspector_id": str(inspector_id)},
                )
            receipt.inspectors.append(
                ReceiptInspectorModel(
                    id=uuid4(),
                    inspector_id=inspector_id,
                    created_by_id=user_id,
                )
            )

        logger.info(
            "receipt_inspector_added",
            extra={"receipt_id": str(receipt_id), "inspector_id": str(inspector_id)},
        )
        return self.get(receipt_id)

    # =========================================================================
    # Inspection lifecycle
    # =========================================================================

    def start_inspection(self, receipt_id: UUID, user_id: UUID) -> Receipt:
        return self._simple_transition(receipt_id, "start_inspection", user_id)

    def accept(self, receipt_id: UUID, user_id: UUID) -> Receipt:
        return self._simple_transition(receipt_id, "accept", user_id)

    def reject(self, receipt_id: UUID, user_id: UUID, reason: str) -> Receipt:
        """Reject a receipt before posting; nothing is written to inventory."""
        if not reason or not reason.strip():
            raise ValidationError("A rejection reason is required")

        with self._coordinator.unit(ReceiptModel, receipt_id, "reject", user_id) as unit:
            receipt = unit.entity
            transition = require_transition(
                RECEIPT_WORKFLOW, receipt.status, "reject",
                entity_type=ENTITY_TYPE, entity_id=receipt.id,
            )
            receipt.status = transition.to_state
            receipt.rejected_at = self._clock.now()
            receipt.rejected_by = user_id
            receipt.rejection_reason = reason.strip()
            receipt.updated_by_id = user_id

        logger.info("receipt_rejected", extra={"receipt_id": str(receipt_id)})
        return self.get(receipt_id)

    def _simple_transition(self, receipt_id: UUID, action: str, user_id: UUID) -> Receipt:
        with self._coordinator.unit(ReceiptModel, receipt_id, action, user_id) as unit:
            receipt = unit.entity
            transition = require_transition(
                RECEIPT_WORKFLOW, receipt.status, action,
                entity_type=ENTITY_TYPE, entity_id=receipt.id,
            )
            receipt.status = transition.to_state
            receipt.updated_by_id = user_id

        logger.info(
            "receipt_transitioned",
            extra={"receipt_id": str(receipt_id), "action": action},
        )
        return self.get(receipt_id)

    # =========================================================================
    # Posting
    # =========================================================================

    def validate_for_posting(self, receipt_id: UUID) -> list[ValidationIssue]:
        """Every reason the receipt cannot be posted right now (empty when it can)."""
        receipt = self._session.get(ReceiptModel, receipt_id, populate_existing=True)
        if receipt is None:
            raise EntityNotFoundError(ENTITY_TYPE, str(receipt_id))
        return self._collect_issues(receipt)

    def _collect_issues(self, receipt: ReceiptModel) -> list[ValidationIssue]:
        issues: list[ValidationIssue] = []

        required = self._config.min_inspectors
        present = len(receipt.inspectors)
        if present < required:
            issues.append(
                ValidationIssue(
                    code=INSUFFICIENT_INSPECTORS,
                    message=f"{required} inspectors required, {present} present",
                    detail={"required": required, "present": present},
                )
            )

        by_po_line: dict[UUID, list[ReceiptLineModel]] = {}
        for line in receipt.lines:
            by_po_line.setdefault(line.purchase_order_line_id, []).append(line)

        for po_line_id, lines in by_po_line.items():
            po_line = self._session.get(
                PurchaseOrderLineModel, po_line_id, populate_existing=True,
            )
            remaining = po_line.quantity_remaining
            accepted = sum((line.quantity_accepted for line in lines), Decimal("0"))
            if accepted > remaining:
                numbers = ", ".join(str(line.line_number) for line in lines)
                label = f"Line {numbers}" if len(lines) == 1 else f"Lines {numbers}"
                issues.append(
                    ValidationIssue(
                        code=OVER_RECEIPT,
                        message=(
                            f"{label}: accepted {accepted} "
                            f"exceeds remaining {remaining} on PO line {po_line.line_number}"
                        ),
                        receipt_line_id=lines[-1].id,
                        detail={
                            "accepted": str(accepted),
                            "remaining": str(remaining),
                            "ordered": str(po_line.quantity_ordered),
                            "received": str(po_line.quantity_received),
                            "receipt_lines": [line.line_number for line in lines],
                        },
                    )
                )
        return issues

    def post(self, receipt_id: UUID, user_id: UUID) -> Receipt:
        """
        Post an ACCEPTED receipt.

        For every line with an accepted quantity: lot, on-hand increment,
        RECEIVE transaction, PO line received quantity, budget purchased
        quantity for the PO quarter.  Then the PO becomes PARTIAL or
        COMPLETED and the receipt POSTED, all in one commit.
        """
        logger.info("receipt_post_started", extra={"receipt_id": str(receipt_id)})

        with self._coordinator.unit(ReceiptModel, receipt_id, "post", user_id) as unit:
            receipt = unit.entity
            require_transition(
                RECEIPT_WORKFLOW, receipt.status, "post",
                entity_type=ENTITY_TYPE, entity_id=receipt.id,
            )
            unit.claim(PurchaseOrderModel, receipt.purchase_order_id)
            po = unit.load(PurchaseOrderModel, receipt.purchase_order_id)

            issues = self._collect_issues(receipt)
            if issues:
                logger.warning(
                    "receipt_post_validation_failed",
                    extra={
                        "receipt_id": str(receipt.id),
                        "issues": [issue.code for issue in issues],
                    },
                )
                raise ValidationError(
                    f"Receipt {receipt.receipt_number} cannot be posted: "
                    + "; ".join(issue.message for issue in issues),
                    detail={
                        "issues": [
                            {"code": i.code, "message": i.message, **i.detail}
                            for i in issues
                        ],
                    },
                )

            lots_created = 0
            for line in receipt.lines:
                if line.quantity_accepted <= 0:
                    continue
                po_line = self._session.get(PurchaseOrderLineModel, line.purchase_order_line_id)
                self._inventory.apply_receipt_line(
                    receipt_id=receipt.id,
                    receipt_line_id=line.id,
                    item_id=po_line.item_id,
                    location_id=receipt.location_id,
                    quantity=line.quantity_accepted,
                    unit_cost=line.unit_cost if line.unit_cost is not None else po_line.unit_price,
                    lot_number=line.lot_number,
                    expiry_date=line.expiry_date,
                    actor_id=user_id,
                )
                lots_created += 1
                self._increment_received(po_line, line, user_id)
                if po_line.budget_request_item_id is not None:
                    self._increment_purchased(
                        po_line.budget_request_item_id,
                        po.budget_quarter,
                        line.quantity_accepted,
                        user_id,
                    )

            open_lines = self._session.execute(
                select(func.count(PurchaseOrderLineModel.id)).where(
                    PurchaseOrderLineModel.purchase_order_id == po.id,
                    PurchaseOrderLineModel.quantity_received < PurchaseOrderLineModel.quantity_ordered,
                )
            ).scalar_one()
            po_transition = require_transition(
                PURCHASE_ORDER_WORKFLOW,
                po.status,
                "receive_complete" if open_lines == 0 else "receive_partial",
                entity_type="purchase_order",
                entity_id=po.id,
            )
            po.status = po_transition.to_state
            po.updated_by_id = user_id

            receipt.status = ReceiptStatus.POSTED.value
            receipt.posted_at = self._clock.now()
            receipt.posted_by = user_id
            receipt.updated_by_id = user_id

        # PO line and budget quantities were updated in SQL, not through the ORM.
        self._session.expire_all()
        logger.info(
            "receipt_posted",
            extra={
                "receipt_id": str(receipt_id),
                "lots_created": lots_created,
                "po_status": po_transition.to_state,
            },
        )
        notify_safely(self._notifier, "receipt.posted", {
            "receipt_id": str(receipt_id),
            "purchase_order_id": str(po.id),
            "po_status": po_transition.to_state,
        })
        return self.get(receipt_id)

    def _increment_received(
        self, po_line: PurchaseOrderLineModel, line: ReceiptLineModel, user_id: UUID,
    ) -> None:
        """Guarded increment; a refusal here means another receipt posted first."""
        quantity = line.quantity_accepted
        result = self._session.execute(
            update(PurchaseOrderLineModel)
            .where(
                PurchaseOrderLineModel.id == po_line.id,
                PurchaseOrderLineModel.quantity_received + quantity
                <= PurchaseOrderLineModel.quantity_ordered,
            )
            .values(
                quantity_received=PurchaseOrderLineModel.quantity_received + quantity,
                updated_by_id=user_id,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ValidationError(
                f"Receipt line {line.line_number}: receiving {quantity} on PO line "
                f"{po_line.line_number} would exceed the ordered quantity "
                f"{po_line.quantity_ordered}; a concurrent receipt was posted",
                detail={
                    "code": OVER_RECEIPT,
                    "reason": "concurrent_receipt",
                    "purchase_order_line_id": str(po_line.id),
                    "receipt_line_id": str(line.id),
                    "receipt_line_number": line.line_number,
                },
            )

    def _increment_purchased(
        self, budget_item_id: UUID, quarter: int, quantity: Decimal, user_id: UUID,
    ) -> None:
        name = BudgetRequestItemModel.purchased_column(quarter)
        column = getattr(BudgetRequestItemModel, name)
        self._session.execute(
            update(BudgetRequestItemModel)
            .where(BudgetRequestItemModel.id == budget_item_id)
            .values({name: column + quantity, "updated_by_id": user_id})
            .execution_options(synchronize_session=False)
        )
