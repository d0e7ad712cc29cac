"""
SQL-backed contract catalog (``supply_modules.contracts.catalog``).

Implements the ``ContractCatalog`` protocol consumed by
``supply_services.contract_pricing.ContractPricingCache``.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from supply_modules.contracts.models import ContractStatus
from supply_modules.contracts.orm import ContractItemModel, ContractModel


class SqlContractCatalog:
    """
    ``ContractCatalog`` backed by the contracts tables.

    Opens a short session per lookup from the given factory, because the
    pricing cache outlives any single unit of work.  When several active
    contracts cover the date, the most recently started one wins.
    """

    def __init__(self, session_factory: sessionmaker[Session]):
        self._session_factory = session_factory

    def find_active_price(
        self, vendor_id: UUID, item_id: UUID, on_date: date,
    ) -> Decimal | None:
        stmt = (
            select(ContractItemModel.contract_price)
            .join(ContractModel, ContractItemModel.contract_id == ContractModel.id)
            .where(
                ContractModel.vendor_id == vendor_id,
                ContractModel.status == ContractStatus.ACTIVE.value,
                ContractModel.start_date <= on_date,
                ContractModel.end_date >= on_date,
                ContractItemModel.item_id == item_id,
            )
            .order_by(ContractModel.start_date.desc())
            .limit(1)
        )
        with self._session_factory() as session:
            return session.execute(stmt).scalar_one_or_none()
