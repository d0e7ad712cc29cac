"""
Purchase Order Orchestrator (``supply_modules.procurement.purchase_order_service``).

Responsibility
--------------
Creates purchase orders from approved requisitions and moves them through
DRAFT -> PENDING -> APPROVED -> SENT, or CANCELLED before any receipt.
Sending resolves contract prices and converts the PR reservation into a
PO commitment on the budget ledger; cancelling releases whichever of the
two is still held.

Architecture position
---------------------
**Modules layer** -- workflow glue over ``TransactionCoordinator``,
``BudgetLedgerClient`` and ``ContractPricingCache``.  The PR side of a
conversion is delegated to ``RequisitionService``.

Invariants enforced
-------------------
* A PO is SENT only after the ledger confirmed the commitment; a failed
  commit leaves it APPROVED.
* A PO with receipts can never be cancelled.
* High-value POs (total above ``high_value_threshold``) need an approval
  document before approval.
* ``send`` and ``cancel`` also claim the originating PR, whose reservation
  state they change.

Failure modes
-------------
* ``ValidationError`` / ``InvalidTransitionError`` -- wrong status,
  missing approval document, receipts exist, blank reason.
* ``ForbiddenError`` -- approver lacks ``purchase_order.approve``.
* ``BudgetError`` / ``BudgetAPIError`` / ``BudgetTimeoutError`` -- ledger
  outcome of commit or release; the PO status is unchanged.
* ``EntityBusyError`` -- another operation holds the PO or its PR.
"""

from __future__ import annotations

from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from supply_config.schema import ProcurementConfig
from supply_kernel.db.types import round_money
from supply_kernel.domain.clock import Clock, SystemClock
from supply_kernel.domain.workflow import require_transition
from supply_kernel.exceptions import EntityNotFoundError, ForbiddenError, ValidationError
from supply_kernel.logging_config import get_logger
from supply_modules.procurement.models import POStatus, PurchaseOrder, ReservationState
from supply_modules.procurement.orm import (
    PurchaseOrderLineModel,
    PurchaseOrderModel,
    PurchaseRequestModel,
    ReceiptModel,
)
from supply_modules.procurement.requisition_service import RequisitionService
from supply_modules.procurement.workflows import PURCHASE_ORDER_WORKFLOW
from supply_services.budget_ledger import BudgetLedgerClient
from supply_services.collaborators import (
    ApprovalDocumentProvider,
    AuthorizationProvider,
    Notifier,
    notify_safely,
)
from supply_services.contract_pricing import ContractPricingCache
from supply_services.transaction_coordinator import TransactionCoordinator

logger = get_logger("modules.procurement.purchase_order_service")

ENTITY_TYPE = "purchase_order"
APPROVE_PERMISSION = "purchase_order.approve"


class PurchaseOrderService:
    """
    Orchestrates the purchase order lifecycle.

    Contract
    --------
    * Every public mutating method returns the updated ``PurchaseOrder``
      DTO or raises a typed ``SupplyWorkflowError``.
    * Without a pricing cache, ``send`` keeps the prices copied from the PR.
    """

    def __init__(
        self,
        session: Session,
        ledger: BudgetLedgerClient,
        authorization: AuthorizationProvider,
        requisitions: RequisitionService,
        pricing: ContractPricingCache | None = None,
        documents: ApprovalDocumentProvider | None = None,
        config: ProcurementConfig | None = None,
        notifier: Notifier | None = None,
        clock: Clock | None = None,
        coordinator: TransactionCoordinator | None = None,
    ):
        self._session = session
        self._ledger = ledger
        self._authorization = authorization
        self._requisitions = requisitions
        self._pricing = pricing
        self._documents = documents
        self._config = config or ProcurementConfig()
        self._notifier = notifier
        self._clock = clock or SystemClock()
        self._coordinator = coordinator or TransactionCoordinator(session, self._clock)

    def get(self, po_id: UUID) -> PurchaseOrder:
        """Current state of a purchase order."""
        po = self._session.get(PurchaseOrderModel, po_id, populate_existing=True)
        if po is None:
            raise EntityNotFoundError(ENTITY_TYPE, str(po_id))
        return po.to_dto()

    # =========================================================================
    # Creation
    # =========================================================================

    def create_from_requisition(
        self,
        pr_id: UUID,
        vendor_id: UUID,
        user_id: UUID,
        contract_id: UUID | None = None,
        po_number: str | None = None,
    ) -> PurchaseOrder:
        """
        Create a DRAFT PO from an APPROVED purchase request.

        The PR lines are copied; the PR becomes CONVERTED in the same
        commit.
        """
        po_id = uuid4()
        with self._coordinator.unit(PurchaseRequestModel, pr_id, "convert_to_po", user_id) as unit:
            pr = unit.entity
            self._requisitions.convert_claimed(pr, po_id, user_id)

            po = PurchaseOrderModel(
                id=po_id,
                po_number=po_number or f"PO-{self._clock.today():%Y%m%d}-{po_id.hex[:8].upper()}",
                purchase_request_id=pr.id,
                vendor_id=vendor_id,
                contract_id=contract_id,
                budget_quarter=pr.budget_quarter,
                total_amount=pr.total_amount,
                status=POStatus.DRAFT.value,
                created_by_id=user_id,
            )
            for pr_line in pr.lines:
                po.lines.append(
                    PurchaseOrderLineModel(
                        id=uuid4(),
                        line_number=pr_line.line_number,
                        item_id=pr_line.item_id,
                        budget_request_item_id=pr_line.budget_request_item_id,
                        purchase_request_line_id=pr_line.id,
                        quantity_ordered=pr_line.quantity,
                        quantity_received=Decimal("0"),
                        unit_price=pr_line.unit_price,
                        line_total=pr_line.line_total,
                        created_by_id=user_id,
                    )
                )
            self._session.add(po)

        logger.info(
            "po_created",
            extra={
                "po_id": str(po_id),
                "pr_id": str(pr_id),
                "vendor_id": str(vendor_id),
            },
        )
        return self.get(po_id)

    # =========================================================================
    # Approval
    # =========================================================================

    def submit_for_approval(self, po_id: UUID, user_id: UUID) -> PurchaseOrder:
        """DRAFT -> PENDING."""
        with self._coordinator.unit(PurchaseOrderModel, po_id, "submit", user_id) as unit:
            po = unit.entity
            require_transition(
                PURCHASE_ORDER_WORKFLOW, po.status, "submit",
                entity_type=ENTITY_TYPE, entity_id=po.id,
            )
            po.status = POStatus.PENDING.value
            po.updated_by_id = user_id

        logger.info("po_submitted_for_approval", extra={"po_id": str(po_id)})
        return self.get(po_id)

    def approve(self, po_id: UUID, approver_id: UUID) -> PurchaseOrder:
        """
        Approve a PENDING purchase order.

        Totals above the configured high-value threshold require an approval
        document from the ``ApprovalDocumentProvider``.
        """
        with self._coordinator.unit(PurchaseOrderModel, po_id, "approve", approver_id) as unit:
            po = unit.entity
            require_transition(
                PURCHASE_ORDER_WORKFLOW, po.status, "approve",
                entity_type=ENTITY_TYPE, entity_id=po.id,
            )
            if not self._authorization.has_permission(approver_id, APPROVE_PERMISSION):
                logger.warning(
                    "po_approve_forbidden",
                    extra={"po_id": str(po.id), "approver_id": str(approver_id)},
                )
                raise ForbiddenError(str(approver_id), APPROVE_PERMISSION)

            threshold = self._config.high_value_threshold
            if po.total_amount > threshold and not self._has_approval_document(po.id):
                raise ValidationError(
                    f"Purchase order {po.po_number} totals {po.total_amount}, above "
                    f"{threshold}; an approval document is required",
                    detail={
                        "total_amount": str(po.total_amount),
                        "high_value_threshold": str(threshold),
                    },
                )

            po.status = POStatus.APPROVED.value
            po.approved_at = self._clock.now()
            po.approved_by = approver_id
            po.updated_by_id = approver_id

        logger.info("po_approved", extra={"po_id": str(po_id)})
        return self.get(po_id)

    def _has_approval_document(self, po_id: UUID) -> bool:
        if self._documents is None:
            return False
        return self._documents.has_approval_document(po_id)

    # =========================================================================
    # Send
    # =========================================================================

    def send(self, po_id: UUID, user_id: UUID) -> PurchaseOrder:
        """
        Send an APPROVED purchase order to the vendor.

        Line prices are resolved through the contract pricing cache (the
        copied PR price is the fallback); the ledger then commits the new
        total against the PR reservation.  The PO becomes SENT only after
        that commitment succeeded.
        """
        logger.info("po_send_started", extra={"po_id": str(po_id)})

        with self._coordinator.unit(PurchaseOrderModel, po_id, "send", user_id) as unit:
            po = unit.entity
            require_transition(
                PURCHASE_ORDER_WORKFLOW, po.status, "send",
                entity_type=ENTITY_TYPE, entity_id=po.id,
            )
            unit.claim(PurchaseRequestModel, po.purchase_request_id)
            pr = unit.load(PurchaseRequestModel, po.purchase_request_id)
            if pr.reservation_state != ReservationState.HELD.value:
                raise ValidationError(
                    f"Purchase request {pr.pr_number} has no budget reservation held "
                    f"(reservation {pr.reservation_state})",
                    detail={"reservation_state": pr.reservation_state},
                )

            prices = {line.id: self._resolve_price(po, line) for line in po.lines}
            total = sum(
                (round_money(line.quantity_ordered * prices[line.id]) for line in po.lines),
                Decimal("0"),
            )

            commitment = unit.external(
                "commit",
                lambda: self._ledger.commit(
                    purchase_request_id=pr.id,
                    purchase_order_id=po.id,
                    amount=total,
                ),
                compensation="release_commitment",
                compensate=lambda: self._ledger.release_commitment(purchase_order_id=po.id),
                payload={
                    "purchase_order_id": po.id,
                    "purchase_request_id": pr.id,
                    "amount": total,
                },
            )

            for line in po.lines:
                line.unit_price = prices[line.id]
                line.line_total = round_money(line.quantity_ordered * prices[line.id])
                line.updated_by_id = user_id

            po.total_amount = total
            po.committed_amount = commitment.amount
            po.commitment_id = commitment.commitment_id
            po.status = POStatus.SENT.value
            po.sent_date = self._clock.now()
            po.sent_by = user_id
            po.updated_by_id = user_id

            pr.reservation_state = ReservationState.COMMITTED.value
            pr.updated_by_id = user_id

        dto = self.get(po_id)
        logger.info(
            "po_sent",
            extra={
                "po_id": str(dto.id),
                "po_number": dto.po_number,
                "committed_amount": str(dto.committed_amount),
                "commitment_id": dto.commitment_id,
            },
        )
        notify_safely(self._notifier, "po.sent", {
            "purchase_order_id": str(dto.id),
            "po_number": dto.po_number,
            "vendor_id": str(dto.vendor_id),
            "total_amount": str(dto.total_amount),
        })
        return dto

    def _resolve_price(self, po: PurchaseOrderModel, line: PurchaseOrderLineModel) -> Decimal:
        if self._pricing is None:
            return line.unit_price
        price = self._pricing.get_price(po.vendor_id, line.item_id)
        if price is None:
            return line.unit_price
        if price != line.unit_price:
            logger.info(
                "po_line_contract_price_applied",
                extra={
                    "po_id": str(po.id),
                    "line_number": line.line_number,
                    "requested_price": str(line.unit_price),
                    "contract_price": str(price),
                },
            )
        return price

    # =========================================================================
    # Cancel
    # =========================================================================

    def cancel(self, po_id: UUID, user_id: UUID, reason: str) -> PurchaseOrder:
        """
        Cancel a purchase order that has no receipts.

        A SENT PO releases its commitment; a PO that was never sent releases
        the PR reservation instead.
        """
        if not reason or not reason.strip():
            raise ValidationError("A cancellation reason is required")

        with self._coordinator.unit(PurchaseOrderModel, po_id, "cancel", user_id) as unit:
            po = unit.entity
            receipt_count = self._session.execute(
                select(func.count(ReceiptModel.id)).where(
                    ReceiptModel.purchase_order_id == po.id,
                )
            ).scalar_one()
            if receipt_count:
                raise ValidationError(
                    f"Purchase order {po.po_number} cannot be cancelled: "
                    f"{receipt_count} receipt(s) reference it",
                    detail={"receipt_count": receipt_count},
                )
            require_transition(
                PURCHASE_ORDER_WORKFLOW, po.status, "cancel",
                entity_type=ENTITY_TYPE, entity_id=po.id,
            )

            unit.claim(PurchaseRequestModel, po.purchase_request_id)
            pr = unit.load(PurchaseRequestModel, po.purchase_request_id)

            if po.status == POStatus.SENT.value:
                release = unit.external(
                    "release_commitment",
                    lambda: self._ledger.release_commitment(purchase_order_id=po.id),
                    payload={"purchase_order_id": po.id},
                )
            elif pr.reservation_state == ReservationState.HELD.value:
                release = unit.external(
                    "release_reservation",
                    lambda: self._ledger.release_reservation(purchase_request_id=pr.id),
                    payload={"purchase_request_id": pr.id},
                )
            else:
                release = None

            if release is not None:
                logger.info(
                    "po_cancel_budget_released",
                    extra={
                        "po_id": str(po.id),
                        "released_amount": str(release.released_amount),
                        "already_released": release.already_released,
                    },
                )
                pr.reservation_state = ReservationState.RELEASED.value
                pr.updated_by_id = user_id

            po.status = POStatus.CANCELLED.value
            po.cancelled_at = self._clock.now()
            po.cancelled_by = user_id
            po.cancel_reason = reason.strip()
            po.updated_by_id = user_id

        logger.info("po_cancelled", extra={"po_id": str(po_id)})
        notify_safely(self._notifier, "po.cancelled", {
            "purchase_order_id": str(po_id),
            "reason": reason.strip(),
        })
        return self.get(po_id)
