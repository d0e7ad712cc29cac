"""
Module ORM Registry (``supply_modules._orm_registry``).

Responsibility
--------------
Ensure all SQLAlchemy ORM models are imported so that ``Base.metadata``
contains their table definitions before tables are created.

Architecture position
---------------------
**Modules layer** -- utility.  Called by ``supply_kernel.db.engine.create_tables``
and by ``tests/conftest.py``.

Usage
-----
    from supply_modules._orm_registry import import_all_orm_models
    import_all_orm_models()
"""


def import_all_orm_models() -> None:
    """Import every ``*.orm`` module to register ORM models.

    Budget items come first because PR and PO lines reference them.
    This function is idempotent -- repeated calls are harmless.
    """
    # fmt: off
    import supply_modules.budget.orm  # noqa: F401
    import supply_modules.contracts.orm  # noqa: F401
    import supply_modules.procurement.orm  # noqa: F401
    import supply_modules.inventory.orm  # noqa: F401
    import supply_services.orm  # noqa: F401  # workflow sagas
    # fmt: on
