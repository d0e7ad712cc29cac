"""
Contract Domain Models.
"""

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from uuid import UUID


class ContractStatus(Enum):
    """Contract lifecycle states (maintained outside the workflow core)."""
    DRAFT = "DRAFT"
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


@dataclass(frozen=True)
class ContractItem:
    """The agreed price of one item under a contract."""
    id: UUID
    contract_id: UUID
    item_id: UUID
    contract_price: Decimal


@dataclass(frozen=True)
class Contract:
    """A pricing agreement with one vendor."""
    id: UUID
    contract_number: str
    vendor_id: UUID
    status: ContractStatus
    start_date: date
    end_date: date
    items: tuple[ContractItem, ...] = field(default_factory=tuple)

    def is_effective_on(self, on_date: date) -> bool:
        return (
            self.status == ContractStatus.ACTIVE
            and self.start_date <= on_date <= self.end_date
        )
