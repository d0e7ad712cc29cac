"""
Budget Domain Models.

The nouns of item-level budgeting: budget request items with quarterly plans.
"""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from uuid import UUID

from supply_engines.budget_control import ControlType


@dataclass(frozen=True)
class BudgetRequestItem:
    """One item line of an approved departmental budget request."""
    id: UUID
    item_id: UUID
    fiscal_year: int
    department_id: UUID | None = None
    budget_request_id: UUID | None = None
    budget_type_id: UUID | None = None
    unit_price: Decimal = Decimal("0")
    q1_planned_qty: Decimal = Decimal("0")
    q2_planned_qty: Decimal = Decimal("0")
    q3_planned_qty: Decimal = Decimal("0")
    q4_planned_qty: Decimal = Decimal("0")
    q1_purchased_qty: Decimal = Decimal("0")
    q2_purchased_qty: Decimal = Decimal("0")
    q3_purchased_qty: Decimal = Decimal("0")
    q4_purchased_qty: Decimal = Decimal("0")
    quantity_control_type: ControlType = ControlType.SOFT
    quantity_variance_percent: Decimal = Decimal("10")
    price_control_type: ControlType = ControlType.SOFT
    price_variance_percent: Decimal = Decimal("15")

    def planned_for(self, quarter: int) -> Decimal:
        return getattr(self, f"q{quarter}_planned_qty")

    def purchased_for(self, quarter: int) -> Decimal:
        return getattr(self, f"q{quarter}_purchased_qty")

    def remaining_for(self, quarter: int) -> Decimal:
        return self.planned_for(quarter) - self.purchased_for(quarter)


def fiscal_quarter(on_date: date, fiscal_year_start_month: int = 10) -> int:
    """
    Fiscal quarter (1-4) containing ``on_date``.

    With the default October start, October-December is Q1 and
    July-September is Q4.
    """
    if not 1 <= fiscal_year_start_month <= 12:
        raise ValueError(
            f"fiscal_year_start_month must be 1-12, got {fiscal_year_start_month}"
        )
    offset = (on_date.month - fiscal_year_start_month) % 12
    return offset // 3 + 1


def fiscal_year_of(on_date: date, fiscal_year_start_month: int = 10) -> int:
    """Fiscal year label for ``on_date`` (named after the year it ends in)."""
    if fiscal_year_start_month == 1 or on_date.month < fiscal_year_start_month:
        return on_date.year
    return on_date.year + 1
