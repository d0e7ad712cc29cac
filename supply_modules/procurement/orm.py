"""
SQLAlchemy ORM persistence models for the Procurement module.

Responsibility
--------------
Provide database-backed persistence for purchase requests, purchase orders
and goods receipts, including the receipt inspector roster.

Architecture position
---------------------
**Modules layer** -- ORM models consumed by ``RequisitionService``,
``PurchaseOrderService`` and ``ReceiptService``.  Inherits from
``TrackedBase`` (kernel db layer).  The three document headers also carry
``ClaimableMixin`` so the ``TransactionCoordinator`` can serialize
operations per document.

Invariants enforced
-------------------
* All monetary fields use ``Decimal`` (Numeric(38,9)) -- NEVER float.
* Enum fields stored as String(50) for readability and portability.
* A line belongs to exactly one header; (header, line_number) is unique.
* ``purchase_order_lines.quantity_received`` never exceeds
  ``quantity_ordered`` (check constraint plus compare-and-swap updates).
* A user appears at most once per receipt inspector roster.

Audit relevance
---------------
* Submission, approval, rejection, sending and posting carry actor and
  timestamp columns.
* Each PR line keeps the budget control status and detail computed at
  submission.
"""

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Date,
    ForeignKey,
    Index,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from supply_kernel.db.base import ClaimableMixin, TrackedBase

# ---------------------------------------------------------------------------
# PurchaseRequestModel
# ---------------------------------------------------------------------------


class PurchaseRequestModel(ClaimableMixin, TrackedBase):
    """
    A purchase request (internal request to procure budgeted items).

    Maps to the ``PurchaseRequest`` DTO in ``supply_modules.procurement.models``.

    Guarantees:
        - ``pr_number`` is unique.
        - ``status`` follows DRAFT -> SUBMITTED -> APPROVED|REJECTED -> CONVERTED.
        - ``reservation_state`` tracks the external budget hold.
    """

    __tablename__ = "purchase_requests"

    __table_args__ = (
        UniqueConstraint("pr_number", name="uq_purchase_request_number"),
        Index("idx_pr_requester", "requester_id"),
        Index("idx_pr_status", "status"),
        Index("idx_pr_reservation", "reservation_state", "reservation_expires_at"),
    )

    pr_number: Mapped[str] = mapped_column(String(50), nullable=False)
    requester_id: Mapped[UUID]
    department_id: Mapped[UUID | None]
    budget_type_id: Mapped[UUID | None]
    fiscal_year: Mapped[int]
    budget_quarter: Mapped[int]
    total_amount: Mapped[Decimal] = mapped_column(default=Decimal("0"))
    status: Mapped[str] = mapped_column(String(50), nullable=False, default="DRAFT")

    submitted_at: Mapped[datetime | None]
    submitted_by: Mapped[UUID | None]
    approved_at: Mapped[datetime | None]
    approved_by: Mapped[UUID | None]
    rejected_at: Mapped[datetime | None]
    rejected_by: Mapped[UUID | None]
    rejection_reason: Mapped[str | None] = mapped_column(String(1000), nullable=True)

    reservation_state: Mapped[str] = mapped_column(
        String(20), nullable=False, default="NONE",
    )
    reservation_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    reservation_expires_at: Mapped[datetime | None]
    converted_po_id: Mapped[UUID | None]

    lines: Mapped[list["PurchaseRequestLineModel"]] = relationship(
        "PurchaseRequestLineModel",
        back_populates="purchase_request",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="PurchaseRequestLineModel.line_number",
    )

    def to_dto(self):
        from supply_modules.procurement.models import (
            PRStatus,
            PurchaseRequest,
            ReservationState,
        )

        return PurchaseRequest(
            id=self.id,
            pr_number=self.pr_number,
            requester_id=self.requester_id,
            fiscal_year=self.fiscal_year,
            budget_quarter=self.budget_quarter,
            total_amount=self.total_amount,
            status=PRStatus(self.status),
            department_id=self.department_id,
            budget_type_id=self.budget_type_id,
            submitted_at=self.submitted_at,
            submitted_by=self.submitted_by,
            approved_at=self.approved_at,
            approved_by=self.approved_by,
            rejected_at=self.rejected_at,
            rejected_by=self.rejected_by,
            rejection_reason=self.rejection_reason,
            reservation_state=ReservationState(self.reservation_state),
            reservation_id=self.reservation_id,
            reservation_expires_at=self.reservation_expires_at,
            converted_po_id=self.converted_po_id,
            version=self.version,
            lines=tuple(line.to_dto() for line in self.lines),
        )

    def __repr__(self) -> str:
        return f"<PurchaseRequestModel {self.pr_number} [{self.status}]>"


class PurchaseRequestLineModel(TrackedBase):
    """
    A line item on a purchase request, tied to one budget request item.

    Guarantees:
        - Belongs to exactly one ``PurchaseRequestModel``.
        - (purchase_request_id, line_number) is unique.
    """

    __tablename__ = "purchase_request_lines"

    __table_args__ = (
        UniqueConstraint(
            "purchase_request_id", "line_number",
            name="uq_pr_line_number",
        ),
        Index("idx_pr_line_pr", "purchase_request_id"),
    )

    purchase_request_id: Mapped[UUID] = mapped_column(
        ForeignKey("purchase_requests.id"), nullable=False,
    )
    line_number: Mapped[int]
    budget_request_item_id: Mapped[UUID] = mapped_column(
        ForeignKey("budget_request_items.id"), nullable=False,
    )
    item_id: Mapped[UUID]
    quantity: Mapped[Decimal] = mapped_column(default=Decimal("0"))
    unit_price: Mapped[Decimal] = mapped_column(default=Decimal("0"))
    line_total: Mapped[Decimal] = mapped_column(default=Decimal("0"))
    budget_control_status: Mapped[str | None] = mapped_column(String(10), nullable=True)
    budget_control_detail: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    purchase_request: Mapped["PurchaseRequestModel"] = relationship(
        "PurchaseRequestModel",
        back_populates="lines",
    )

    def to_dto(self):
        from supply_modules.procurement.models import PurchaseRequestLine

        return PurchaseRequestLine(
            id=self.id,
            purchase_request_id=self.purchase_request_id,
            line_number=self.line_number,
            budget_request_item_id=self.budget_request_item_id,
            item_id=self.item_id,
            quantity=self.quantity,
            unit_price=self.unit_price,
            line_total=self.line_total,
            budget_control_status=self.budget_control_status,
            budget_control_detail=self.budget_control_detail,
        )

    def __repr__(self) -> str:
        return f"<PurchaseRequestLineModel #{self.line_number} qty={self.quantity}>"


# ---------------------------------------------------------------------------
# PurchaseOrderModel
# ---------------------------------------------------------------------------


class PurchaseOrderModel(ClaimableMixin, TrackedBase):
    """
    A purchase order sent to a vendor.

    Guarantees:
        - ``po_number`` is unique.
        - ``purchase_request_id`` references the originating, converted PR.
        - ``status`` follows DRAFT -> PENDING -> APPROVED -> SENT ->
          PARTIAL|COMPLETED, or CANCELLED before any receipt.
    """

    __tablename__ = "purchase_orders"

    __table_args__ = (
        UniqueConstraint("po_number", name="uq_purchase_order_number"),
        Index("idx_po_vendor", "vendor_id"),
        Index("idx_po_status", "status"),
        Index("idx_po_pr", "purchase_request_id"),
    )

    po_number: Mapped[str] = mapped_column(String(50), nullable=False)
    purchase_request_id: Mapped[UUID] = mapped_column(
        ForeignKey("purchase_requests.id"), nullable=False,
    )
    vendor_id: Mapped[UUID]
    contract_id: Mapped[UUID | None]
    budget_quarter: Mapped[int]
    total_amount: Mapped[Decimal] = mapped_column(default=Decimal("0"))
    status: Mapped[str] = mapped_column(String(50), nullable=False, default="DRAFT")

    approved_at: Mapped[datetime | None]
    approved_by: Mapped[UUID | None]
    sent_date: Mapped[datetime | None]
    sent_by: Mapped[UUID | None]
    committed_amount: Mapped[Decimal | None]
    commitment_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    cancelled_at: Mapped[datetime | None]
    cancelled_by: Mapped[UUID | None]
    cancel_reason: Mapped[str | None] = mapped_column(String(1000), nullable=True)

    lines: Mapped[list["PurchaseOrderLineModel"]] = relationship(
        "PurchaseOrderLineModel",
        back_populates="purchase_order",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="PurchaseOrderLineModel.line_number",
    )

    def to_dto(self):
        from supply_modules.procurement.models import POStatus, PurchaseOrder

        return PurchaseOrder(
            id=self.id,
            po_number=self.po_number,
            purchase_request_id=self.purchase_request_id,
            vendor_id=self.vendor_id,
            budget_quarter=self.budget_quarter,
            total_amount=self.total_amount,
            status=POStatus(self.status),
            contract_id=self.contract_id,
            approved_at=self.approved_at,
            approved_by=self.approved_by,
            sent_date=self.sent_date,
            committed_amount=self.committed_amount,
            commitment_id=self.commitment_id,
            cancelled_at=self.cancelled_at,
            cancel_reason=self.cancel_reason,
            version=self.version,
            lines=tuple(line.to_dto() for line in self.lines),
        )

    def __repr__(self) -> str:
        return f"<PurchaseOrderModel {self.po_number} [{self.status}]>"


class PurchaseOrderLineModel(TrackedBase):
    """
    A line item on a purchase order.

    Guarantees:
        - 0 <= quantity_received <= quantity_ordered.
        - (purchase_order_id, line_number) is unique.
    """

    __tablename__ = "purchase_order_lines"

    __table_args__ = (
        UniqueConstraint(
            "purchase_order_id", "line_number",
            name="uq_po_line_number",
        ),
        CheckConstraint(
            "quantity_received >= 0 AND quantity_received <= quantity_ordered",
            name="chk_po_line_received_within_ordered",
        ),
        Index("idx_po_line_po", "purchase_order_id"),
    )

    purchase_order_id: Mapped[UUID] = mapped_column(
        ForeignKey("purchase_orders.id"), nullable=False,
    )
    line_number: Mapped[int]
    item_id: Mapped[UUID]
    budget_request_item_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("budget_request_items.id"), nullable=True,
    )
    purchase_request_line_id: Mapped[UUID | None]
    quantity_ordered: Mapped[Decimal] = mapped_column(default=Decimal("0"))
    quantity_received: Mapped[Decimal] = mapped_column(default=Decimal("0"))
    unit_price: Mapped[Decimal] = mapped_column(default=Decimal("0"))
    line_total: Mapped[Decimal] = mapped_column(default=Decimal("0"))

    purchase_order: Mapped["PurchaseOrderModel"] = relationship(
        "PurchaseOrderModel",
        back_populates="lines",
    )

    @property
    def quantity_remaining(self) -> Decimal:
        return max(self.quantity_ordered - self.quantity_received, Decimal("0"))

    def to_dto(self):
        from supply_modules.procurement.models import PurchaseOrderLine

        return PurchaseOrderLine(
            id=self.id,
            purchase_order_id=self.purchase_order_id,
            line_number=self.line_number,
            item_id=self.item_id,
            budget_request_item_id=self.budget_request_item_id,
            quantity_ordered=self.quantity_ordered,
            quantity_received=self.quantity_received,
            unit_price=self.unit_price,
            line_total=self.line_total,
            purchase_request_line_id=self.purchase_request_line_id,
        )

    def __repr__(self) -> str:
        return (
            f"<PurchaseOrderLineModel #{self.line_number} "
            f"{self.quantity_received}/{self.quantity_ordered}>"
        )


# ---------------------------------------------------------------------------
# ReceiptModel
# ---------------------------------------------------------------------------


class ReceiptModel(ClaimableMixin, TrackedBase):
    """
    A goods receipt against a purchase order.

    Guarantees:
        - ``receipt_number`` is unique.
        - ``status`` follows DRAFT -> INSPECTING -> ACCEPTED -> POSTED,
          or REJECTED before posting.
        - Posting creates inventory effects exactly once.
    """

    __tablename__ = "receipts"

    __table_args__ = (
        UniqueConstraint("receipt_number", name="uq_receipt_number"),
        Index("idx_receipt_po", "purchase_order_id"),
        Index("idx_receipt_status", "status"),
    )

    receipt_number: Mapped[str] = mapped_column(String(50), nullable=False)
    purchase_order_id: Mapped[UUID] = mapped_column(
        ForeignKey("purchase_orders.id"), nullable=False,
    )
    location_id: Mapped[UUID]
    receipt_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(String(50), nullable=False, default="DRAFT")
    posted_at: Mapped[datetime | None]
    posted_by: Mapped[UUID | None]
    rejected_at: Mapped[datetime | None]
    rejected_by: Mapped[UUID | None]
    rejection_reason: Mapped[str | None] = mapped_column(String(1000), nullable=True)

    lines: Mapped[list["ReceiptLineModel"]] = relationship(
        "ReceiptLineModel",
        back_populates="receipt",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="ReceiptLineModel.line_number",
    )
    inspectors: Mapped[list["ReceiptInspectorModel"]] = relationship(
        "ReceiptInspectorModel",
        back_populates="receipt",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def to_dto(self):
        from supply_modules.procurement.models import Receipt, ReceiptStatus

        return Receipt(
            id=self.id,
            receipt_number=self.receipt_number,
            purchase_order_id=self.purchase_order_id,
            location_id=self.location_id,
            status=ReceiptStatus(self.status),
            posted_at=self.posted_at,
            posted_by=self.posted_by,
            rejection_reason=self.rejection_reason,
            version=self.version,
            inspector_ids=tuple(i.inspector_id for i in self.inspectors),
            lines=tuple(line.to_dto() for line in self.lines),
        )

    def __repr__(self) -> str:
        return f"<ReceiptModel {self.receipt_number} [{self.status}]>"


class ReceiptLineModel(TrackedBase):
    """A received line, tied to one purchase order line."""

    __tablename__ = "receipt_lines"

    __table_args__ = (
        UniqueConstraint("receipt_id", "line_number", name="uq_receipt_line_number"),
        CheckConstraint(
            "quantity_accepted >= 0 AND quantity_accepted <= quantity_received",
            name="chk_receipt_line_accepted_within_received",
        ),
        Index("idx_receipt_line_receipt", "receipt_id"),
        Index("idx_receipt_line_po_line", "purchase_order_line_id"),
    )

    receipt_id: Mapped[UUID] = mapped_column(
        ForeignKey("receipts.id"), nullable=False,
    )
    line_number: Mapped[int]
    purchase_order_line_id: Mapped[UUID] = mapped_column(
        ForeignKey("purchase_order_lines.id"), nullable=False,
    )
    quantity_received: Mapped[Decimal] = mapped_column(default=Decimal("0"))
    quantity_accepted: Mapped[Decimal] = mapped_column(default=Decimal("0"))
    lot_number: Mapped[str | None] = mapped_column(String(50), nullable=True)
    expiry_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    unit_cost: Mapped[Decimal | None]

    receipt: Mapped["ReceiptModel"] = relationship(
        "ReceiptModel",
        back_populates="lines",
    )

    def to_dto(self):
        from supply_modules.procurement.models import ReceiptLine

        return ReceiptLine(
            id=self.id,
            receipt_id=self.receipt_id,
            purchase_order_line_id=self.purchase_order_line_id,
            quantity_received=self.quantity_received,
            quantity_accepted=self.quantity_accepted,
            lot_number=self.lot_number,
            expiry_date=self.expiry_date,
            unit_cost=self.unit_cost,
        )

    def __repr__(self) -> str:
        return (
            f"<ReceiptLineModel #{self.line_number} "
            f"accepted={self.quantity_accepted}/{self.quantity_received}>"
        )


class ReceiptInspectorModel(TrackedBase):
    """A member of the inspection committee for a receipt."""

    __tablename__ = "receipt_inspectors"

    __table_args__ = (
        UniqueConstraint("receipt_id", "inspector_id", name="uq_receipt_inspector"),
    )

    receipt_id: Mapped[UUID] = mapped_column(
        ForeignKey("receipts.id"), nullable=False,
    )
    inspector_id: Mapped[UUID]

    receipt: Mapped["ReceiptModel"] = relationship(
        "ReceiptModel",
        back_populates="inspectors",
    )

    def __repr__(self) -> str:
        return f"<ReceiptInspectorModel {self.inspector_id}>"
