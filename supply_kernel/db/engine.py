"""
Database engine and session factory for the supply workflow engine.

One engine per process, created by ``init_engine_from_url``.  Orchestrators
receive sessions from the caller; long-lived collaborators (the SQL contract
catalog behind the pricing cache) take the factory and open a short session
per lookup.

PostgreSQL runs at READ COMMITTED behind a pre-pinged pool.  Workflow
entities are serialized by compare-and-swap claims
(``supply_services.transaction_coordinator``), not by the isolation level,
so SQLite works for tests and local runs.
"""

import atexit

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool

from supply_kernel.logging_config import configure_logging, get_logger

logger = get_logger("db.engine")

_engine: Engine | None = None
_session_factory: sessionmaker[Session] | None = None

_NOT_INITIALIZED = "Database engine not initialized; call init_engine_from_url() first"


def init_engine_from_url(
    database_url: str,
    echo: bool = False,
    pool_size: int = 20,
    max_overflow: int = 10,
    pool_recycle: int = 1800,
) -> Engine:
    """
    Create the process engine and session factory, replacing any previous one.

    ``sqlite`` URLs get a thread-shareable connection with a 30s busy
    timeout; anything else gets a ``QueuePool`` sized by ``pool_size``.
    Sessions keep attribute values after commit so orchestrators can build
    DTOs from committed rows without a reload.
    """
    global _engine, _session_factory

    reset_engine()
    if database_url.startswith("sqlite"):
        _engine = create_engine(
            database_url,
            echo=echo,
            connect_args={"check_same_thread": False, "timeout": 30},
        )
    else:
        _engine = create_engine(
            database_url,
            echo=echo,
            poolclass=QueuePool,
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_pre_ping=True,
            pool_recycle=pool_recycle,
            isolation_level="READ COMMITTED",
        )
    _session_factory = sessionmaker(bind=_engine, expire_on_commit=False)

    configure_logging()
    logger.info(
        "engine_initialized",
        extra={"dialect": _engine.dialect.name, "pool_size": pool_size},
    )
    return _engine


def get_engine() -> Engine:
    if _engine is None:
        raise RuntimeError(_NOT_INITIALIZED)
    return _engine


def get_session_factory() -> sessionmaker[Session]:
    if _session_factory is None:
        raise RuntimeError(_NOT_INITIALIZED)
    return _session_factory


def get_session() -> Session:
    """A new session from the process factory; the caller closes it."""
    return get_session_factory()()


def create_tables() -> None:
    """Create every table of the kernel, module and service ORM models."""
    from supply_kernel.db.base import Base
    from supply_modules._orm_registry import import_all_orm_models

    import_all_orm_models()
    Base.metadata.create_all(get_engine())
    logger.info("tables_created", extra={"table_count": len(Base.metadata.tables)})


def drop_tables() -> None:
    """Drop every table.  Test teardown only."""
    from supply_kernel.db.base import Base

    Base.metadata.drop_all(get_engine())


def reset_engine() -> None:
    """Dispose the engine and forget the session factory."""
    global _engine, _session_factory

    if _engine is not None:
        _engine.dispose()
    _engine = None
    _session_factory = None


atexit.register(reset_engine)
