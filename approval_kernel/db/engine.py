"""
Module: approval_kernel.db.engine
Responsibility: Build SQLAlchemy engines and session factories, and create or
    drop the schema.  Nothing here is held at module level: callers own the
    engine they build and hand the session factory to the services that need
    it.
Architecture position: Kernel > DB.  May import from db/base.py.  MUST NOT
    import from services/ or selectors/ (create_tables imports the ORM
    registry lazily so every mapped table is known to the metadata).

Invariants enforced:
    - PostgreSQL sessions run at READ COMMITTED; per-request serialization is
      provided by the optimistic version column on approval_requests, not by
      the isolation level.
    - SQLite (tests, local runs) gets a busy timeout and cross-thread access so
      the escalation ticker and delivery workers can share a file database.
    - Session factories never expire instances on commit, so DTOs can be built
      from a model after its transaction closes.
"""

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from approval_kernel.logging_config import get_logger

logger = get_logger("db.engine")


def build_engine(database_url: str, echo: bool = False, **pool_kwargs) -> Engine:
    """
    Create an Engine with backend-appropriate options.

    SQLite URLs get ``check_same_thread=False`` and a busy timeout; every
    other backend gets a pre-pinged pool at READ COMMITTED.
    """
    if database_url.startswith("sqlite"):
        engine = create_engine(
            database_url,
            echo=echo,
            connect_args={"check_same_thread": False, "timeout": 30},
        )
    else:
        pool_kwargs.setdefault("pool_size", 20)
        pool_kwargs.setdefault("max_overflow", 10)
        pool_kwargs.setdefault("pool_pre_ping", True)
        pool_kwargs.setdefault("pool_recycle", 1800)
        engine = create_engine(
            database_url,
            echo=echo,
            isolation_level="READ COMMITTED",
            **pool_kwargs,
        )

    logger.info("engine_built", extra={"dialect": engine.dialect.name, "echo": echo})
    return engine


def build_session_factory(engine: Engine) -> sessionmaker[Session]:
    """
    Session factory bound to ``engine``.

    Services receive the factory (not a session) because every optimistic
    write attempt needs a fresh session.
    """
    return sessionmaker(bind=engine, expire_on_commit=False)


def create_tables(engine: Engine) -> None:
    """Create every mapped table (kernel and dispatch)."""
    from approval_kernel.db.base import Base
    from approval_kernel.db.orm_registry import import_all_orm_models

    import_all_orm_models()
    Base.metadata.create_all(engine)


def drop_tables(engine: Engine) -> None:
    """Drop all tables. Use with caution - primarily for testing."""
    from approval_kernel.db.base import Base
    from approval_kernel.db.orm_registry import import_all_orm_models

    import_all_orm_models()
    Base.metadata.drop_all(engine)
