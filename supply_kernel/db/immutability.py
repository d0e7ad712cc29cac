"""
ORM-Level Immutability Enforcement.

===============================================================================
HOW IT WORKS
===============================================================================

SQLAlchemy fires events before UPDATE/DELETE operations reach the database.
Models declared immutable get listeners that intercept these events:

    session.flush()
         |
         v
    [before_update event] --> _check_update() --> ImmutabilityViolationError
         |
         v
    [before_delete event] --> _check_delete() --> ImmutabilityViolationError
         |
         v
    SQL sent to database (only if checks pass)

If a check fails, ImmutabilityViolationError is raised, the flush aborts and
the surrounding unit of work rolls back.

===============================================================================
PROTECTED ENTITIES
===============================================================================

Entity                | Mutable columns                  | Why
----------------------|----------------------------------|------------------------------
InventoryLot          | quantity_remaining (+ audit)     | Traceable batch; dispense only
InventoryTransaction  | none (+ audit)                   | Append-only stock audit log

Audit metadata columns (updated_at, updated_by_id) are always allowed to
change; they are not inventory data.
"""

from sqlalchemy import event, inspect

from supply_kernel.exceptions import ImmutabilityViolationError
from supply_kernel.logging_config import get_logger

logger = get_logger("db.immutability")

_AUDIT_COLUMNS = frozenset({"updated_at", "updated_by_id"})

_registered: set[type] = set()


def _changed_columns(target) -> set[str]:
    state = inspect(target)
    changed = set()
    for attr in state.mapper.column_attrs:
        hist = state.attrs[attr.key].history
        if hist.has_changes():
            changed.add(attr.key)
    return changed


def _make_update_check(allowed: frozenset[str]):
    def _check_update(mapper, connection, target):
        forbidden = _changed_columns(target) - allowed - _AUDIT_COLUMNS
        if forbidden:
            logger.error(
                "immutability_violation_update",
                extra={
                    "entity_type": type(target).__name__,
                    "entity_id": str(target.id),
                    "columns": sorted(forbidden),
                },
            )
            raise ImmutabilityViolationError(
                entity_type=type(target).__name__,
                entity_id=str(target.id),
                reason=f"columns {sorted(forbidden)} are immutable",
            )

    return _check_update


def _check_delete(mapper, connection, target):
    logger.error(
        "immutability_violation_delete",
        extra={"entity_type": type(target).__name__, "entity_id": str(target.id)},
    )
    raise ImmutabilityViolationError(
        entity_type=type(target).__name__,
        entity_id=str(target.id),
        reason="records are append-only and cannot be deleted",
    )


def register_immutable(model: type, mutable_columns: tuple[str, ...] = ()) -> None:
    """
    Protect ``model`` against UPDATE (except ``mutable_columns``) and DELETE.

    Idempotent: registering the same model twice is harmless.
    """
    if model in _registered:
        return
    update_check = _make_update_check(frozenset(mutable_columns))
    event.listen(model, "before_update", update_check)
    event.listen(model, "before_delete", _check_delete)
    _registered.add(model)
