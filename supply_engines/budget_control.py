"""
supply_engines.budget_control -- Item-level budget control evaluation.

Responsibility:
    Decide whether a requested quantity and unit price for one budget request
    item in one fiscal quarter is allowed, warned about, or blocked, and
    produce the audit detail that is stored with each requisition line.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import supply_kernel (exceptions, decimal helpers, logging).
    Consumed by RequisitionService.submit().

Invariants enforced:
    - Purity: identical inputs produce identical outputs; no clock, no I/O.
    - Decimal-only arithmetic.
    - allowed == (quantity_status != BLOCKED and price_status != BLOCKED).
    - A NONE control type always yields OK on that axis.

Failure modes:
    - ItemNotFoundError if ``item`` is None.
    - ValidationError if ``quarter`` is not 1..4.

Formulas:
    remaining      = planned[q] - purchased[q]
    qty_diff       = 100                          if remaining == 0 and requested > 0
                   = 0                            if remaining == 0
                   = (requested - remaining) / remaining * 100
    price_diff     = 0                            if planned_price == 0
                   = (requested - planned) / planned * 100

    Axis status: NONE -> OK; |diff| <= tolerance -> OK; SOFT -> WARNING;
    HARD -> BLOCKED.  Comparison uses the unrounded diff; the detail shows
    it rounded half-up to two places.

    When the quarter is already over-purchased (remaining < 0) the plain
    formula still applies, so the sign of the diff flips with the
    denominator.  Any positive request then lands far outside tolerance.

Usage:
    from supply_engines.budget_control import BudgetControlEvaluator

    result = BudgetControlEvaluator().evaluate(
        item=snapshot,
        requested_qty=Decimal("1200"),
        requested_price=Decimal("50"),
        quarter=2,
    )
    if not result.allowed:
        ...
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from supply_engines.tracer import traced_engine
from supply_kernel.db.types import round_percent
from supply_kernel.exceptions import ItemNotFoundError, ValidationError
from supply_kernel.logging_config import get_logger

logger = get_logger("engines.budget_control")

_HUNDRED = Decimal("100")
_ZERO = Decimal("0")

QUARTERS = (1, 2, 3, 4)


class ControlType(str, Enum):
    """How strictly an axis (quantity or price) is enforced."""

    NONE = "NONE"
    SOFT = "SOFT"  # warn, allow
    HARD = "HARD"  # block


class ControlStatus(str, Enum):
    """Outcome of evaluating one axis."""

    OK = "OK"
    WARNING = "WARNING"
    BLOCKED = "BLOCKED"


@dataclass(frozen=True)
class BudgetItemSnapshot:
    """
    The planning data of one budget request item, as read at evaluation time.

    ``planned_qty`` and ``purchased_qty`` are indexed by quarter - 1.
    """

    id: UUID
    budget_request_id: UUID | None
    item_id: UUID
    planned_qty: tuple[Decimal, Decimal, Decimal, Decimal]
    purchased_qty: tuple[Decimal, Decimal, Decimal, Decimal]
    unit_price: Decimal = _ZERO
    quantity_control_type: ControlType = ControlType.SOFT
    quantity_variance_percent: Decimal = Decimal("10")
    price_control_type: ControlType = ControlType.SOFT
    price_variance_percent: Decimal = Decimal("15")


@dataclass(frozen=True)
class BudgetControlResult:
    """
    Result of a budget control evaluation.

    ``detail`` mirrors what is persisted with the requisition line: a
    ``quantity`` block, a ``price`` block, the item references and the
    quarter.
    """

    allowed: bool
    quantity_status: ControlStatus
    price_status: ControlStatus
    detail: dict[str, Any] = field(default_factory=dict)

    @property
    def is_blocked(self) -> bool:
        return not self.allowed

    @property
    def has_warning(self) -> bool:
        return ControlStatus.WARNING in (self.quantity_status, self.price_status)

    @property
    def shortage(self) -> Decimal:
        """Quantity requested beyond what remains in the quarter (never negative)."""
        return self.detail.get("quantity", {}).get("shortage", _ZERO)

    def detail_for_storage(self) -> dict[str, Any]:
        """Detail with Decimals and UUIDs as strings, ready for a JSON column."""
        return _jsonable(self.detail)


def _jsonable(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, (Decimal, UUID)):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    return value


def _axis_status(
    control_type: ControlType, diff_percent: Decimal, tolerance: Decimal,
) -> ControlStatus:
    if control_type == ControlType.NONE:
        return ControlStatus.OK
    if abs(diff_percent) <= tolerance:
        return ControlStatus.OK
    if control_type == ControlType.SOFT:
        return ControlStatus.WARNING
    return ControlStatus.BLOCKED


def quantity_diff_percent(requested: Decimal, remaining: Decimal) -> Decimal:
    """Percentage by which ``requested`` exceeds ``remaining``."""
    if remaining == _ZERO:
        return _HUNDRED if requested > _ZERO else _ZERO
    return (requested - remaining) / remaining * _HUNDRED


def price_diff_percent(requested: Decimal, planned: Decimal) -> Decimal:
    """Percentage by which ``requested`` deviates from ``planned``."""
    if planned == _ZERO:
        return _ZERO
    return (requested - planned) / planned * _HUNDRED


class BudgetControlEvaluator:
    """
    Pure evaluator for item-level budget control.

    Contract:
        No I/O, no database access, fully deterministic.
        The caller loads the item and passes a ``BudgetItemSnapshot``.
    Guarantees:
        - Never mutates the snapshot.
        - ``detail["quantity"]["shortage"] == max(requested - remaining, 0)``.
    """

    @traced_engine(
        "budget_control", "1.0",
        fingerprint_fields=("item", "requested_qty", "requested_price", "quarter"),
    )
    def evaluate(
        self,
        item: BudgetItemSnapshot | None,
        requested_qty: Decimal,
        requested_price: Decimal,
        quarter: int,
    ) -> BudgetControlResult:
        """
        Evaluate quantity and price control for one item and quarter.

        Raises:
            ItemNotFoundError: ``item`` is None.
            ValidationError: ``quarter`` is outside 1..4.
        """
        if item is None:
            raise ItemNotFoundError(None)
        if quarter not in QUARTERS:
            raise ValidationError(
                f"Quarter must be 1-4, got {quarter}",
                detail={"quarter": quarter},
            )

        planned = item.planned_qty[quarter - 1]
        purchased = item.purchased_qty[quarter - 1]
        remaining = planned - purchased
        planned_price = item.unit_price or _ZERO

        qty_diff = quantity_diff_percent(requested_qty, remaining)
        price_diff = price_diff_percent(requested_price, planned_price)

        qty_status = _axis_status(
            item.quantity_control_type, qty_diff, item.quantity_variance_percent,
        )
        price_status = _axis_status(
            item.price_control_type, price_diff, item.price_variance_percent,
        )
        allowed = (
            qty_status != ControlStatus.BLOCKED
            and price_status != ControlStatus.BLOCKED
        )

        detail = {
            "quantity": {
                "planned": planned,
                "purchased": purchased,
                "remaining": remaining,
                "requested": requested_qty,
                "diff_percent": round_percent(qty_diff),
                "tolerance": item.quantity_variance_percent,
                "control_type": item.quantity_control_type.value,
                "exceeded": abs(qty_diff) > item.quantity_variance_percent,
                "shortage": max(requested_qty - remaining, _ZERO),
            },
            "price": {
                "planned": planned_price,
                "requested": requested_price,
                "diff_percent": round_percent(price_diff),
                "tolerance": item.price_variance_percent,
                "control_type": item.price_control_type.value,
                "exceeded": abs(price_diff) > item.price_variance_percent,
            },
            "item": {
                "id": item.id,
                "budget_request_id": item.budget_request_id,
                "item_id": item.item_id,
            },
            "quarter": quarter,
        }

        logger.debug(
            "budget_control_evaluated",
            extra={
                "budget_request_item_id": str(item.id),
                "quarter": quarter,
                "quantity_status": qty_status.value,
                "price_status": price_status.value,
                "allowed": allowed,
            },
        )

        return BudgetControlResult(
            allowed=allowed,
            quantity_status=qty_status,
            price_status=price_status,
            detail=detail,
        )
