"""
Contracts Module (``supply_modules.contracts``).

Vendor contracts and their per-item prices.  Read-only from the workflow
core: the contract pricing cache resolves PO line prices from here.
"""

from supply_modules.contracts.catalog import SqlContractCatalog
from supply_modules.contracts.models import Contract, ContractItem, ContractStatus

__all__ = ["Contract", "ContractItem", "ContractStatus", "SqlContractCatalog"]
