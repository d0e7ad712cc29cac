"""
Budget Module (``supply_modules.budget``).

Quarterly planned quantities, purchased quantities and control settings per
budget request item.  Read by budget control at PR submission; purchased
quantities are advanced only by receipt posting.
"""

from supply_modules.budget.models import BudgetRequestItem, fiscal_quarter

__all__ = ["BudgetRequestItem", "fiscal_quarter"]
