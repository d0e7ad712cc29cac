"""
Module: supply_engines
Responsibility:
    Package entrypoint re-exporting the pure calculation engines.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import supply_kernel.  MUST NOT import supply_services or
    supply_modules.
"""

from supply_engines.budget_control import (
    BudgetControlEvaluator,
    BudgetControlResult,
    BudgetItemSnapshot,
    ControlStatus,
    ControlType,
)

__all__ = [
    "BudgetControlEvaluator",
    "BudgetControlResult",
    "BudgetItemSnapshot",
    "ControlStatus",
    "ControlType",
]
