"""
Module: supply_kernel.db.types
Responsibility: Decimal coercion and rounding helpers for money, quantities
    and percentages, plus the UTC normalization of datetimes read back.
Architecture position: Kernel > DB.  May be imported by every layer.

Invariants enforced:
    CRITICAL: No floats anywhere.  Money and quantities use Decimal with
    explicit precision; round_money() / round_percent() are the sanctioned
    rounding functions.
"""

from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal

MONEY_DECIMAL_PLACES = 2
PERCENT_DECIMAL_PLACES = 2
DEFAULT_ROUNDING = ROUND_HALF_UP


def to_decimal(value) -> Decimal:
    """Coerce str/int/Decimal input to Decimal (floats go through str)."""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def round_money(value: Decimal, decimal_places: int = MONEY_DECIMAL_PLACES) -> Decimal:
    """Round a monetary value half-up to ``decimal_places``."""
    quantizer = Decimal(10) ** -decimal_places
    return value.quantize(quantizer, rounding=DEFAULT_ROUNDING)


def round_percent(value: Decimal) -> Decimal:
    """Round a percentage half-up to two places (as the audit detail shows it)."""
    return round_money(value, PERCENT_DECIMAL_PLACES)


def as_utc(value: datetime | None) -> datetime | None:
    """
    Treat a naive datetime read back from the database as UTC.

    SQLite drops the offset of ``DateTime(timezone=True)`` columns; every
    value this engine writes is UTC, so comparisons with ``Clock.now()`` stay
    valid on both backends.
    """
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)
