"""
SQLAlchemy ORM persistence models for the Budget module.

Responsibility
--------------
Persist budget request items: the quarterly plan, the quantities already
purchased against it, and the per-item control settings read by
``BudgetControlEvaluator``.

Architecture position
---------------------
**Modules layer** -- ORM models consumed by ``RequisitionService`` (read)
and ``ReceiptService`` (purchased quantity updates).  Inherits from
``TrackedBase``.

Invariants enforced
-------------------
* All quantities and prices use ``Decimal`` (Numeric(38,9)) -- NEVER float.
* Control types are stored as String(10): NONE / SOFT / HARD.
* ``qN_purchased_qty`` is only advanced by receipt posting.
"""

from decimal import Decimal
from uuid import UUID

from sqlalchemy import Index, String
from sqlalchemy.orm import Mapped, mapped_column

from supply_engines.budget_control import BudgetItemSnapshot, ControlType
from supply_kernel.db.base import TrackedBase

# ---------------------------------------------------------------------------
# BudgetRequestItemModel
# ---------------------------------------------------------------------------


class BudgetRequestItemModel(TrackedBase):
    """
    A budget request item with quarterly planned and purchased quantities.

    Maps to the ``BudgetRequestItem`` DTO in ``supply_modules.budget.models``.
    """

    __tablename__ = "budget_request_items"

    __table_args__ = (
        Index("idx_budget_item_item", "item_id"),
        Index("idx_budget_item_year_dept", "fiscal_year", "department_id"),
    )

    item_id: Mapped[UUID]
    fiscal_year: Mapped[int]
    department_id: Mapped[UUID | None]
    budget_request_id: Mapped[UUID | None]
    budget_type_id: Mapped[UUID | None]
    unit_price: Mapped[Decimal] = mapped_column(default=Decimal("0"))

    q1_planned_qty: Mapped[Decimal] = mapped_column(default=Decimal("0"))
    q2_planned_qty: Mapped[Decimal] = mapped_column(default=Decimal("0"))
    q3_planned_qty: Mapped[Decimal] = mapped_column(default=Decimal("0"))
    q4_planned_qty: Mapped[Decimal] = mapped_column(default=Decimal("0"))
    q1_purchased_qty: Mapped[Decimal] = mapped_column(default=Decimal("0"))
    q2_purchased_qty: Mapped[Decimal] = mapped_column(default=Decimal("0"))
    q3_purchased_qty: Mapped[Decimal] = mapped_column(default=Decimal("0"))
    q4_purchased_qty: Mapped[Decimal] = mapped_column(default=Decimal("0"))

    quantity_control_type: Mapped[str] = mapped_column(
        String(10), nullable=False, default=ControlType.SOFT.value,
    )
    quantity_variance_percent: Mapped[Decimal] = mapped_column(default=Decimal("10"))
    price_control_type: Mapped[str] = mapped_column(
        String(10), nullable=False, default=ControlType.SOFT.value,
    )
    price_variance_percent: Mapped[Decimal] = mapped_column(default=Decimal("15"))

    @staticmethod
    def purchased_column(quarter: int) -> str:
        if quarter not in (1, 2, 3, 4):
            raise ValueError(f"Quarter must be 1-4, got {quarter}")
        return f"q{quarter}_purchased_qty"

    def to_snapshot(self) -> BudgetItemSnapshot:
        """Engine input for budget control evaluation."""
        return BudgetItemSnapshot(
            id=self.id,
            budget_request_id=self.budget_request_id,
            item_id=self.item_id,
            planned_qty=(
                self.q1_planned_qty or Decimal("0"),
                self.q2_planned_qty or Decimal("0"),
                self.q3_planned_qty or Decimal("0"),
                self.q4_planned_qty or Decimal("0"),
            ),
            purchased_qty=(
                self.q1_purchased_qty or Decimal("0"),
                self.q2_purchased_qty or Decimal("0"),
                self.q3_purchased_qty or Decimal("0"),
                self.q4_purchased_qty or Decimal("0"),
            ),
            unit_price=self.unit_price or Decimal("0"),
            quantity_control_type=ControlType(self.quantity_control_type),
            quantity_variance_percent=self.quantity_variance_percent,
            price_control_type=ControlType(self.price_control_type),
            price_variance_percent=self.price_variance_percent,
        )

    def to_dto(self):
        from supply_modules.budget.models import BudgetRequestItem

        return BudgetRequestItem(
            id=self.id,
            item_id=self.item_id,
            fiscal_year=self.fiscal_year,
            department_id=self.department_id,
            budget_request_id=self.budget_request_id,
            budget_type_id=self.budget_type_id,
            unit_price=self.unit_price,
            q1_planned_qty=self.q1_planned_qty,
            q2_planned_qty=self.q2_planned_qty,
            q3_planned_qty=self.q3_planned_qty,
            q4_planned_qty=self.q4_planned_qty,
            q1_purchased_qty=self.q1_purchased_qty,
            q2_purchased_qty=self.q2_purchased_qty,
            q3_purchased_qty=self.q3_purchased_qty,
            q4_purchased_qty=self.q4_purchased_qty,
            quantity_control_type=ControlType(self.quantity_control_type),
            quantity_variance_percent=self.quantity_variance_percent,
            price_control_type=ControlType(self.price_control_type),
            price_variance_percent=self.price_variance_percent,
        )

    def __repr__(self) -> str:
        return f"<BudgetRequestItemModel {self.item_id} FY{self.fiscal_year}>"
