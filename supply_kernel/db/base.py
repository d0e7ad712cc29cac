"""
Declarative ORM base for every persisted workflow row.

Column conventions shared by all tables:

* ``id`` is a uuid4 stored as ``String(36)`` so the same schema runs on
  PostgreSQL and SQLite.
* ``Decimal`` maps to ``Numeric(38, 9)``.  Money and quantities are never float.
* ``datetime`` maps to ``DateTime(timezone=True)`` and is always written in UTC.
* ``TrackedBase`` adds the audit columns; ``created_by_id`` is required.
* ``ClaimableMixin`` adds the claim columns of the orchestrated entities
  (purchase requests, purchase orders, receipts).

Nothing here imports from services or modules.
"""

from datetime import datetime
from decimal import Decimal
from typing import ClassVar
from uuid import UUID, uuid4

from sqlalchemy import BigInteger, DateTime, Numeric, String, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


class UUIDString(TypeDecorator):
    """UUID in Python, ``String(36)`` in the database."""

    impl = String(36)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        return None if value is None else str(value)

    def process_result_value(self, value, dialect):
        return None if value is None else UUID(value)


class Base(DeclarativeBase):
    type_annotation_map: ClassVar[dict] = {
        Decimal: Numeric(38, 9),
        datetime: DateTime(timezone=True),
        UUID: UUIDString(),
        int: BigInteger,
    }

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)


class TrackedBase(Base):
    """Abstract base carrying who created / last changed a row, and when."""

    __abstract__ = True

    created_at: Mapped[datetime] = mapped_column(server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        server_default=func.now(), onupdate=func.now(),
    )
    created_by_id: Mapped[UUID]
    updated_by_id: Mapped[UUID | None]


class ClaimableMixin:
    """
    Claim columns written only by the ``TransactionCoordinator``.

    ``pending_operation`` is NULL while the entity is idle and names the one
    in-flight mutating operation otherwise.  It is set by a compare-and-swap
    UPDATE (``WHERE pending_operation IS NULL``) that also bumps ``version``;
    orchestrators never assign these columns.
    """

    version: Mapped[int] = mapped_column(default=0)
    pending_operation: Mapped[str | None] = mapped_column(String(50))
    pending_since: Mapped[datetime | None]
