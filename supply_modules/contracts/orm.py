"""
SQLAlchemy ORM persistence models for the Contracts module.

Responsibility
--------------
Persist vendor contracts and per-item contract prices.  Queried by
``SqlContractCatalog`` behind the contract pricing cache.

Invariants enforced
-------------------
* ``contract_price`` is Decimal (Numeric(38,9)) -- NEVER float.
* One price per (contract, item).
"""

from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import Date, ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from supply_kernel.db.base import TrackedBase


class ContractModel(TrackedBase):
    """A vendor contract with an effective date range."""

    __tablename__ = "contracts"

    __table_args__ = (
        UniqueConstraint("contract_number", name="uq_contract_number"),
        Index("idx_contract_vendor_status", "vendor_id", "status"),
    )

    contract_number: Mapped[str] = mapped_column(String(50), nullable=False)
    vendor_id: Mapped[UUID]
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="ACTIVE")
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)

    items: Mapped[list["ContractItemModel"]] = relationship(
        "ContractItemModel",
        back_populates="contract",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def to_dto(self):
        from supply_modules.contracts.models import Contract, ContractStatus

        return Contract(
            id=self.id,
            contract_number=self.contract_number,
            vendor_id=self.vendor_id,
            status=ContractStatus(self.status),
            start_date=self.start_date,
            end_date=self.end_date,
            items=tuple(item.to_dto() for item in self.items),
        )

    def __repr__(self) -> str:
        return f"<ContractModel {self.contract_number} [{self.status}]>"


class ContractItemModel(TrackedBase):
    """The contract price of one item."""

    __tablename__ = "contract_items"

    __table_args__ = (
        UniqueConstraint("contract_id", "item_id", name="uq_contract_item"),
        Index("idx_contract_item_item", "item_id"),
    )

    contract_id: Mapped[UUID] = mapped_column(
        ForeignKey("contracts.id"), nullable=False,
    )
    item_id: Mapped[UUID]
    contract_price: Mapped[Decimal]

    contract: Mapped["ContractModel"] = relationship(
        "ContractModel",
        back_populates="items",
    )

    def to_dto(self):
        from supply_modules.contracts.models import ContractItem

        return ContractItem(
            id=self.id,
            contract_id=self.contract_id,
            item_id=self.item_id,
            contract_price=self.contract_price,
        )
