"""
Purchase Request Orchestrator (``supply_modules.procurement.requisition_service``).

Responsibility
--------------
Moves purchase requests through DRAFT -> SUBMITTED -> APPROVED | REJECTED
-> CONVERTED.  Submission runs item-level budget control and reserves the
PR total on the external budget ledger; rejection and expiry release that
reservation.

Architecture position
---------------------
**Modules layer** -- workflow glue.  Pure computation is delegated to
``BudgetControlEvaluator``; every ledger call goes through
``BudgetLedgerClient``; claims, saga records, commit and rollback belong to
``TransactionCoordinator``.

Invariants enforced
-------------------
* Status changes only along ``PURCHASE_REQUEST_WORKFLOW``.
* A PR is SUBMITTED only after the ledger confirmed the reservation, and
  REJECTED only after the ledger confirmed its release.
* One mutating operation per PR at a time (coordinator claim); expiry uses
  the same claim, so it never races approve or reject.

Failure modes
-------------
* ``ValidationError`` / ``InvalidTransitionError`` -- wrong status, no
  lines, blank rejection reason.
* ``BudgetError`` -- a line is BLOCKED by budget control (``shortages``
  lists every failing line) or the ledger reports insufficient funds.
* ``BudgetAPIError`` / ``BudgetTimeoutError`` -- ledger failure; nothing
  local changed.
* ``ForbiddenError`` -- approver lacks ``purchase_request.approve``.
* ``EntityBusyError`` -- another operation holds the PR.

Audit relevance
---------------
Each line keeps the budget control status and detail computed at
submission; actors and timestamps are stored for every transition.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from datetime import timedelta
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.orm import Session

from supply_config.schema import ProcurementConfig
from supply_engines.budget_control import BudgetControlEvaluator, BudgetControlResult
from supply_kernel.db.types import as_utc, round_money, to_decimal
from supply_kernel.domain.clock import Clock, SystemClock
from supply_kernel.domain.workflow import require_transition
from supply_kernel.exceptions import (
    BudgetError,
    EntityNotFoundError,
    ForbiddenError,
    ItemNotFoundError,
    ValidationError,
)
from supply_kernel.logging_config import get_logger
from supply_modules.budget.models import fiscal_quarter, fiscal_year_of
from supply_modules.budget.orm import BudgetRequestItemModel
from supply_modules.procurement.models import (
    PRStatus,
    PurchaseRequest,
    ReservationState,
)
from supply_modules.procurement.orm import (
    PurchaseRequestLineModel,
    PurchaseRequestModel,
)
from supply_modules.procurement.workflows import PURCHASE_REQUEST_WORKFLOW
from supply_services.budget_ledger import BudgetLedgerClient
from supply_services.collaborators import AuthorizationProvider, Notifier, notify_safely
from supply_services.transaction_coordinator import TransactionCoordinator

logger = get_logger("modules.procurement.requisition_service")

ENTITY_TYPE = "purchase_request"
APPROVE_PERMISSION = "purchase_request.approve"


class RequisitionService:
    """
    Orchestrates the purchase request lifecycle.

    Contract
    --------
    * Every public mutating method returns the updated ``PurchaseRequest``
      DTO or raises a typed ``SupplyWorkflowError``.
    * Validation errors are raised before any ledger call.

    Guarantees
    ----------
    * The session is committed only by the coordinator (or, for
      ``create_requisition``, by this service) and rolled back on failure.
    * Clock is injectable for deterministic testing.
    """

    def __init__(
        self,
        session: Session,
        ledger: BudgetLedgerClient,
        authorization: AuthorizationProvider,
        config: ProcurementConfig | None = None,
        notifier: Notifier | None = None,
        clock: Clock | None = None,
        evaluator: BudgetControlEvaluator | None = None,
        coordinator: TransactionCoordinator | None = None,
    ):
        self._session = session
        self._ledger = ledger
        self._authorization = authorization
        self._config = config or ProcurementConfig()
        self._notifier = notifier
        self._clock = clock or SystemClock()
        self._evaluator = evaluator or BudgetControlEvaluator()
        self._coordinator = coordinator or TransactionCoordinator(session, self._clock)

    # =========================================================================
    # Creation
    # =========================================================================

    def create_requisition(
        self,
        requester_id: UUID,
        lines: Sequence[Mapping[str, Any]],
        *,
        department_id: UUID | None = None,
        budget_type_id: UUID | None = None,
        fiscal_year: int | None = None,
        budget_quarter: int | None = None,
        pr_number: str | None = None,
    ) -> PurchaseRequest:
        """
        Create a DRAFT purchase request.

        Each line mapping carries ``budget_request_item_id`` and
        ``quantity``; ``unit_price`` defaults to the planned price of the
        budget item.  Department, budget type and fiscal year default to the
        first line's budget item; the quarter defaults to the fiscal quarter
        of today.
        """
        if not lines:
            raise ValidationError("A purchase request needs at least one line")

        today = self._clock.today()
        quarter = budget_quarter or fiscal_quarter(today, self._config.fiscal_year_start_month)
        if quarter not in (1, 2, 3, 4):
            raise ValidationError(f"Quarter must be 1-4, got {quarter}")

        logger.info(
            "pr_create_started",
            extra={"requester_id": str(requester_id), "line_count": len(lines)},
        )

        try:
            pr = PurchaseRequestModel(
                id=uuid4(),
                pr_number=pr_number or f"PR-{today:%Y%m%d}-{uuid4().hex[:8].upper()}",
                requester_id=requester_id,
                department_id=department_id,
                budget_type_id=budget_type_id,
                fiscal_year=fiscal_year or 0,
                budget_quarter=quarter,
                status=PRStatus.DRAFT.value,
                reservation_state=ReservationState.NONE.value,
                created_by_id=requester_id,
            )

            total = Decimal("0")
            for number, raw in enumerate(lines, start=1):
                item_ref = raw.get("budget_request_item_id")
                item = self._session.get(BudgetRequestItemModel, item_ref) if item_ref else None
                if item is None:
                    raise ItemNotFoundError(str(item_ref) if item_ref else None)

                quantity = to_decimal(raw["quantity"])
                unit_price = to_decimal(raw.get("unit_price", item.unit_price))
                if quantity <= 0:
                    raise ValidationError(
                        f"Line {number}: quantity must be positive, got {quantity}",
                        detail={"line_number": number},
                    )
                if unit_price < 0:
                    raise ValidationError(
                        f"Line {number}: unit price must not be negative, got {unit_price}",
                        detail={"line_number": number},
                    )

                if number == 1:
                    pr.department_id = pr.department_id or item.department_id
                    pr.budget_type_id = pr.budget_type_id or item.budget_type_id
                    pr.fiscal_year = pr.fiscal_year or item.fiscal_year

                line_total = round_money(quantity * unit_price)
                total += line_total
                pr.lines.append(
                    PurchaseRequestLineModel(
                        id=uuid4(),
                        line_number=number,
                        budget_request_item_id=item.id,
                        item_id=item.item_id,
                        quantity=quantity,
                        unit_price=unit_price,
                        line_total=line_total,
                        created_by_id=requester_id,
                    )
                )

            if not pr.fiscal_year:
                pr.fiscal_year = fiscal_year_of(today, self._config.fiscal_year_start_month)
            pr.total_amount = total

            self._session.add(pr)
            self._session.commit()
        except Exception:
            self._session.rollback()
            raise

        logger.info(
            "pr_created",
            extra={
                "pr_id": str(pr.id),
                "pr_number": pr.pr_number,
                "total_amount": str(pr.total_amount),
                "budget_quarter": pr.budget_quarter,
            },
        )
        return self.get(pr.id)

    def get(self, pr_id: UUID) -> PurchaseRequest:
        """Current state of a purchase request."""
        pr = self._session.get(PurchaseRequestModel, pr_id, populate_existing=True)
        if pr is None:
            raise EntityNotFoundError(ENTITY_TYPE, str(pr_id))
        return pr.to_dto()

    # =========================================================================
    # Submit
    # =========================================================================

    def submit(self, pr_id: UUID, user_id: UUID) -> PurchaseRequest:
        """
        Submit a DRAFT purchase request and reserve its total.

        Steps: budget control per line (any BLOCKED line aborts with the
        per-line shortages), ledger availability check, ledger reservation,
        then the local transition with the control results stored on the
        lines.
        """
        logger.info("pr_submit_started", extra={"pr_id": str(pr_id)})

        with self._coordinator.unit(PurchaseRequestModel, pr_id, "submit", user_id) as unit:
            pr = unit.entity
            require_transition(
                PURCHASE_REQUEST_WORKFLOW, pr.status, "submit",
                entity_type=ENTITY_TYPE, entity_id=pr.id,
            )
            if not pr.lines:
                raise ValidationError(f"Purchase request {pr.pr_number} has no lines")

            results = self._evaluate_lines(pr)
            blocked = [(line, result) for line, result in results if result.is_blocked]
            if blocked:
                raise self._blocked_error(pr, blocked)

            availability = self._ledger.check_availability(
                department_id=pr.department_id,
                budget_type_id=pr.budget_type_id,
                fiscal_year=pr.fiscal_year,
                quarter=pr.budget_quarter,
                amount=pr.total_amount,
            )
            if not availability.available:
                logger.warning(
                    "pr_submit_budget_unavailable",
                    extra={
                        "pr_id": str(pr.id),
                        "available": str(availability.available_amount),
                        "requested": str(availability.requested_amount),
                    },
                )
                raise BudgetError(
                    f"Insufficient budget for {pr.pr_number}: available "
                    f"{availability.available_amount}, requested "
                    f"{availability.requested_amount}, shortage {availability.shortage}",
                    available=availability.available_amount,
                    requested=availability.requested_amount,
                    shortage=availability.shortage,
                )

            now = self._clock.now()
            expires_at = now + timedelta(days=self._config.reservation_expiry_days)
            reservation = unit.external(
                "reserve",
                lambda: self._ledger.reserve(
                    purchase_request_id=pr.id,
                    amount=pr.total_amount,
                    department_id=pr.department_id,
                    budget_type_id=pr.budget_type_id,
                    fiscal_year=pr.fiscal_year,
                    quarter=pr.budget_quarter,
                    expires_at=expires_at,
                ),
                compensation="release_reservation",
                compensate=lambda: self._ledger.release_reservation(purchase_request_id=pr.id),
                payload={"purchase_request_id": pr.id, "amount": pr.total_amount},
            )

            for line, result in results:
                line.budget_control_status = self._line_status(result)
                line.budget_control_detail = result.detail_for_storage()
                line.updated_by_id = user_id

            pr.status = PRStatus.SUBMITTED.value
            pr.submitted_at = now
            pr.submitted_by = user_id
            pr.reservation_state = ReservationState.HELD.value
            pr.reservation_id = reservation.reservation_id
            pr.reservation_expires_at = expires_at
            pr.updated_by_id = user_id

        dto = self.get(pr_id)
        logger.info(
            "pr_submitted",
            extra={
                "pr_id": str(dto.id),
                "pr_number": dto.pr_number,
                "total_amount": str(dto.total_amount),
                "reservation_id": dto.reservation_id,
                "warnings": sum(1 for _, r in results if r.has_warning),
            },
        )
        notify_safely(self._notifier, "pr.submitted", {
            "purchase_request_id": str(dto.id),
            "pr_number": dto.pr_number,
            "requester_id": str(dto.requester_id),
            "total_amount": str(dto.total_amount),
        })
        return dto

    def _evaluate_lines(
        self, pr: PurchaseRequestModel,
    ) -> list[tuple[PurchaseRequestLineModel, BudgetControlResult]]:
        results = []
        for line in pr.lines:
            item = self._session.get(
                BudgetRequestItemModel, line.budget_request_item_id, populate_existing=True,
            )
            if item is None:
                raise ItemNotFoundError(str(line.budget_request_item_id))
            result = self._evaluator.evaluate(
                item.to_snapshot(),
                requested_qty=line.quantity,
                requested_price=line.unit_price,
                quarter=pr.budget_quarter,
            )
            results.append((line, result))
        return results

    @staticmethod
    def _line_status(result: BudgetControlResult) -> str:
        if result.is_blocked:
            return "BLOCKED"
        if result.has_warning:
            return "WARNING"
        return "OK"

    def _blocked_error(
        self,
        pr: PurchaseRequestModel,
        blocked: list[tuple[PurchaseRequestLineModel, BudgetControlResult]],
    ) -> BudgetError:
        shortages = []
        for line, result in blocked:
            quantity = result.detail.get("quantity", {})
            shortages.append({
                "line_number": line.line_number,
                "budget_request_item_id": str(line.budget_request_item_id),
                "item_id": str(line.item_id),
                "requested": str(line.quantity),
                "remaining": str(quantity.get("remaining", "")),
                "shortage": str(result.shortage),
                "quantity_status": result.quantity_status.value,
                "price_status": result.price_status.value,
            })
        logger.warning(
            "pr_submit_blocked_by_budget_control",
            extra={"pr_id": str(pr.id), "blocked_lines": [s["line_number"] for s in shortages]},
        )
        lines_text = ", ".join(
            f"line {s['line_number']} shortage {s['shortage']}" for s in shortages
        )
        return BudgetError(
            f"Budget control blocked {pr.pr_number}: {lines_text}",
            shortages=shortages,
        )

    # =========================================================================
    # Approve / Reject
    # =========================================================================

    def approve(self, pr_id: UUID, approver_id: UUID) -> PurchaseRequest:
        """Approve a SUBMITTED purchase request; the reservation is untouched."""
        with self._coordinator.unit(PurchaseRequestModel, pr_id, "approve", approver_id) as unit:
            pr = unit.entity
            require_transition(
                PURCHASE_REQUEST_WORKFLOW, pr.status, "approve",
                entity_type=ENTITY_TYPE, entity_id=pr.id,
            )
            if not self._authorization.has_permission(approver_id, APPROVE_PERMISSION):
                logger.warning(
                    "pr_approve_forbidden",
                    extra={"pr_id": str(pr.id), "approver_id": str(approver_id)},
                )
                raise ForbiddenError(str(approver_id), APPROVE_PERMISSION)

            pr.status = PRStatus.APPROVED.value
            pr.approved_at = self._clock.now()
            pr.approved_by = approver_id
            pr.updated_by_id = approver_id

        logger.info("pr_approved", extra={"pr_id": str(pr_id)})
        return self.get(pr_id)

    def reject(self, pr_id: UUID, rejecter_id: UUID, reason: str) -> PurchaseRequest:
        """
        Reject a SUBMITTED purchase request.

        The reservation is released first; the status changes only after
        the ledger confirmed the release.
        """
        if not reason or not reason.strip():
            raise ValidationError("A rejection reason is required")

        with self._coordinator.unit(PurchaseRequestModel, pr_id, "reject", rejecter_id) as unit:
            pr = unit.entity
            require_transition(
                PURCHASE_REQUEST_WORKFLOW, pr.status, "reject",
                entity_type=ENTITY_TYPE, entity_id=pr.id,
            )

            if pr.reservation_state == ReservationState.HELD.value:
                release = unit.external(
                    "release_reservation",
                    lambda: self._ledger.release_reservation(purchase_request_id=pr.id),
                    payload={"purchase_request_id": pr.id},
                )
                logger.info(
                    "pr_reservation_released",
                    extra={
                        "pr_id": str(pr.id),
                        "released_amount": str(release.released_amount),
                        "already_released": release.already_released,
                    },
                )
                pr.reservation_state = ReservationState.RELEASED.value

            pr.status = PRStatus.REJECTED.value
            pr.rejected_at = self._clock.now()
            pr.rejected_by = rejecter_id
            pr.rejection_reason = reason.strip()
            pr.updated_by_id = rejecter_id

        logger.info("pr_rejected", extra={"pr_id": str(pr_id)})
        notify_safely(self._notifier, "pr.rejected", {
            "purchase_request_id": str(pr_id),
            "reason": reason.strip(),
        })
        return self.get(pr_id)

    # =========================================================================
    # Conversion
    # =========================================================================

    def convert_claimed(
        self, pr: PurchaseRequestModel, po_id: UUID, user_id: UUID,
    ) -> None:
        """
        Apply the conversion to a PR the caller has already claimed.

        Used by ``PurchaseOrderService.create_from_requisition`` so the PO
        and the PR transition commit together.
        """
        require_transition(
            PURCHASE_REQUEST_WORKFLOW, pr.status, "convert_to_po",
            entity_type=ENTITY_TYPE, entity_id=pr.id,
        )
        if pr.reservation_state != ReservationState.HELD.value:
            raise ValidationError(
                f"Purchase request {pr.pr_number} has no budget reservation held "
                f"(reservation {pr.reservation_state})",
                detail={"reservation_state": pr.reservation_state},
            )
        pr.status = PRStatus.CONVERTED.value
        pr.converted_po_id = po_id
        pr.updated_by_id = user_id
        logger.info(
            "pr_converted",
            extra={"pr_id": str(pr.id), "po_id": str(po_id)},
        )

    # =========================================================================
    # Reservation expiry
    # =========================================================================

    def find_expired_reservations(self) -> list[UUID]:
        """Ids of PRs whose HELD reservation is past its expiry."""
        return list(
            self._session.execute(
                select(PurchaseRequestModel.id)
                .where(
                    PurchaseRequestModel.reservation_state == ReservationState.HELD.value,
                    PurchaseRequestModel.reservation_expires_at <= self._clock.now(),
                )
                .order_by(PurchaseRequestModel.reservation_expires_at)
            ).scalars()
        )

    def release_expired_reservation(self, pr_id: UUID, actor_id: UUID) -> PurchaseRequest:
        """
        Release a HELD reservation whose expiry has passed.

        A no-op when the reservation is not HELD or not yet expired.  The
        PR status is left unchanged; only the reservation becomes EXPIRED.
        """
        with self._coordinator.unit(
            PurchaseRequestModel, pr_id, "expire_reservation", actor_id,
        ) as unit:
            pr = unit.entity
            expires_at = as_utc(pr.reservation_expires_at)
            if (
                pr.reservation_state != ReservationState.HELD.value
                or expires_at is None
                or expires_at > self._clock.now()
            ):
                logger.info(
                    "pr_reservation_expiry_skipped",
                    extra={
                        "pr_id": str(pr.id),
                        "reservation_state": pr.reservation_state,
                    },
                )
                return pr.to_dto()

            unit.external(
                "release_reservation",
                lambda: self._ledger.release_reservation(purchase_request_id=pr.id),
                payload={"purchase_request_id": pr.id},
            )
            pr.reservation_state = ReservationState.EXPIRED.value
            pr.updated_by_id = actor_id

        logger.info("pr_reservation_expired", extra={"pr_id": str(pr_id)})
        return self.get(pr_id)
