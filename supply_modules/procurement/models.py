"""
Procurement Domain Models.

The nouns of procurement: purchase requests, purchase orders, receipts.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from supply_kernel.logging_config import get_logger

logger = get_logger("modules.procurement.models")


class PRStatus(Enum):
    """Purchase request lifecycle states."""
    DRAFT = "DRAFT"
    SUBMITTED = "SUBMITTED"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    CONVERTED = "CONVERTED"  # to PO


class ReservationState(Enum):
    """State of the budget reservation held by a purchase request."""
    NONE = "NONE"
    HELD = "HELD"
    RELEASED = "RELEASED"
    EXPIRED = "EXPIRED"
    COMMITTED = "COMMITTED"  # converted into a PO commitment


class POStatus(Enum):
    """Purchase order lifecycle states."""
    DRAFT = "DRAFT"
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    SENT = "SENT"
    PARTIAL = "PARTIAL"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class ReceiptStatus(Enum):
    """Receipt processing states."""
    DRAFT = "DRAFT"
    INSPECTING = "INSPECTING"
    ACCEPTED = "ACCEPTED"
    POSTED = "POSTED"
    REJECTED = "REJECTED"


@dataclass(frozen=True)
class PurchaseRequestLine:
    """A line item on a purchase request."""
    id: UUID
    purchase_request_id: UUID
    line_number: int
    budget_request_item_id: UUID
    item_id: UUID
    quantity: Decimal = Decimal("0")
    unit_price: Decimal = Decimal("0")
    line_total: Decimal = Decimal("0")
    budget_control_status: str | None = None
    budget_control_detail: dict[str, Any] | None = None


@dataclass(frozen=True)
class PurchaseRequest:
    """A purchase request (PR)."""
    id: UUID
    pr_number: str
    requester_id: UUID
    fiscal_year: int
    budget_quarter: int
    total_amount: Decimal = Decimal("0")
    status: PRStatus = PRStatus.DRAFT
    department_id: UUID | None = None
    budget_type_id: UUID | None = None
    submitted_at: datetime | None = None
    submitted_by: UUID | None = None
    approved_at: datetime | None = None
    approved_by: UUID | None = None
    rejected_at: datetime | None = None
    rejected_by: UUID | None = None
    rejection_reason: str | None = None
    reservation_state: ReservationState = ReservationState.NONE
    reservation_id: str | None = None
    reservation_expires_at: datetime | None = None
    converted_po_id: UUID | None = None
    version: int = 0
    lines: tuple[PurchaseRequestLine, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class PurchaseOrderLine:
    """A line item on a purchase order."""
    id: UUID
    purchase_order_id: UUID
    line_number: int
    item_id: UUID
    budget_request_item_id: UUID | None = None
    quantity_ordered: Decimal = Decimal("0")
    quantity_received: Decimal = Decimal("0")
    unit_price: Decimal = Decimal("0")
    line_total: Decimal = Decimal("0")
    purchase_request_line_id: UUID | None = None

    def __post_init__(self):
        if self.quantity_received > self.quantity_ordered:
            logger.warning(
                "po_line_over_receipt",
                extra={
                    "po_line_id": str(self.id),
                    "quantity_ordered": str(self.quantity_ordered),
                    "quantity_received": str(self.quantity_received),
                },
            )
            raise ValueError(
                f"quantity_received ({self.quantity_received}) "
                f"cannot exceed quantity_ordered ({self.quantity_ordered})"
            )

    @property
    def quantity_remaining(self) -> Decimal:
        return max(self.quantity_ordered - self.quantity_received, Decimal("0"))


@dataclass(frozen=True)
class PurchaseOrder:
    """A purchase order (PO)."""
    id: UUID
    po_number: str
    purchase_request_id: UUID
    vendor_id: UUID
    budget_quarter: int
    total_amount: Decimal = Decimal("0")
    status: POStatus = POStatus.DRAFT
    contract_id: UUID | None = None
    approved_at: datetime | None = None
    approved_by: UUID | None = None
    sent_date: datetime | None = None
    committed_amount: Decimal | None = None
    commitment_id: str | None = None
    cancelled_at: datetime | None = None
    cancel_reason: str | None = None
    version: int = 0
    lines: tuple[PurchaseOrderLine, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class ReceiptLine:
    """A received line on a receipt, tied to one PO line."""
    id: UUID
    receipt_id: UUID
    purchase_order_line_id: UUID
    quantity_received: Decimal = Decimal("0")
    quantity_accepted: Decimal = Decimal("0")
    lot_number: str | None = None
    expiry_date: date | None = None
    unit_cost: Decimal | None = None


@dataclass(frozen=True)
class Receipt:
    """A goods receipt against a purchase order."""
    id: UUID
    receipt_number: str
    purchase_order_id: UUID
    location_id: UUID
    status: ReceiptStatus = ReceiptStatus.DRAFT
    posted_at: datetime | None = None
    posted_by: UUID | None = None
    rejection_reason: str | None = None
    version: int = 0
    inspector_ids: tuple[UUID, ...] = field(default_factory=tuple)
    lines: tuple[ReceiptLine, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class ValidationIssue:
    """
    One reason a receipt cannot be posted.

    ``code`` is machine-readable (``INSUFFICIENT_INSPECTORS``,
    ``OVER_RECEIPT``); ``message`` is ready for display.
    """
    code: str
    message: str
    receipt_line_id: UUID | None = None
    detail: dict[str, Any] = field(default_factory=dict)
