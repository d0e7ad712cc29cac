"""Database layer - engine, base classes, rounding helpers, and immutability listeners."""

from supply_kernel.db.base import Base, ClaimableMixin, TrackedBase
from supply_kernel.db.engine import create_tables, get_session, get_session_factory
from supply_kernel.db.types import as_utc, round_money

__all__ = [
    "Base",
    "ClaimableMixin",
    "TrackedBase",
    "as_utc",
    "create_tables",
    "get_session",
    "get_session_factory",
    "round_money",
]
