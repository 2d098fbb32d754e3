"""
Module: escrow_kernel.db.engine
Responsibility: SQLAlchemy engine initialization, session factory management,
    and transactional scope utilities.  Single point of database connection
    configuration.
Architecture position: Kernel > DB.  May import from db/base.py.
    create_tables/drop_tables import the model registry so that
    Base.metadata is complete.

Invariants enforced:
    - PostgreSQL runs at READ COMMITTED with explicit row locks
      (SELECT ... FOR UPDATE) on escrow accounts.
    - SQLite runs every transaction as BEGIN IMMEDIATE, making each writer
      exclusive; savepoints are issued by SQLAlchemy rather than the
      pysqlite driver so that SAVEPOINT-guarded inserts work.
    - Services never commit; session_scope() owns commit-or-rollback.

Failure modes:
    - RuntimeError if get_engine/get_session is called
      before init_engine_from_url().
    - OperationalError ("database is locked") on SQLite when a writer holds
      the database longer than the busy timeout.
"""

import atexit
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

from escrow_kernel.logging_config import configure_logging, get_logger

logger = get_logger("db.engine")

_engine: Engine | None = None
_SessionFactory: sessionmaker[Session] | None = None

DEFAULT_DATABASE_URL = "sqlite+pysqlite:///:memory:"


def _install_sqlite_transaction_hooks(engine: Engine) -> None:
    """Take transaction control away from pysqlite.

    pysqlite's implicit BEGIN breaks SAVEPOINT semantics; emitting our own
    BEGIN IMMEDIATE also serializes writers across connections.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def build_engine(
    database_url: str = DEFAULT_DATABASE_URL,
    echo: bool = False,
    pool_size: int = 20,
    max_overflow: int = 10,
    pool_pre_ping: bool = True,
    pool_timeout: int = 30,
    pool_recycle: int = 1800,
) -> Engine:
    """
    Create a configured engine without installing it as the module engine.

    Args:
        database_url: SQLAlchemy URL.  PostgreSQL for deployment; SQLite
            (file or in-memory) for development and tests.
        echo: If True, log all SQL statements.
        pool_size: Connections kept in the pool (server databases only).
        max_overflow: Max connections beyond pool_size.
        pool_pre_ping: Test connections before use.
        pool_timeout: Seconds to wait for a pooled connection (and the
            SQLite busy timeout).
        pool_recycle: Seconds after which a connection is recycled.
    """
    url = make_url(database_url)

    if url.get_backend_name() == "sqlite":
        in_memory = url.database in (None, "", ":memory:")
        kwargs: dict = {
            "connect_args": {"check_same_thread": False, "timeout": pool_timeout},
        }
        if in_memory:
            kwargs["poolclass"] = StaticPool
        engine = create_engine(url, echo=echo, **kwargs)
        _install_sqlite_transaction_hooks(engine)
        return engine

    return create_engine(
        url,
        echo=echo,
        poolclass=QueuePool,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=pool_pre_ping,
        pool_timeout=pool_timeout,
        pool_recycle=pool_recycle,
        isolation_level="READ COMMITTED",
    )


def init_engine_from_url(
    database_url: str = DEFAULT_DATABASE_URL,
    echo: bool = False,
    **engine_options,
) -> Engine:
    """
    Initialize the module engine and session factory from a database URL.

    Postconditions: Module-level _engine and _SessionFactory are initialized.
        A second call replaces the first.

    Keyword arguments other than ``echo`` are passed to ``build_engine``.

    Returns:
        SQLAlchemy Engine instance.
    """
    global _engine, _SessionFactory

    _engine = build_engine(database_url, echo=echo, **engine_options)
    _SessionFactory = sessionmaker(bind=_engine, expire_on_commit=False)

    configure_logging()
    logger.info(
        "engine_initialized",
        extra={
            "dialect": _engine.dialect.name,
            "echo": echo,
        },
    )

    return _engine


def get_engine() -> Engine:
    """
    Get the current engine instance.

    Raises:
        RuntimeError: If engine has not been initialized.
    """
    if _engine is None:
        raise RuntimeError("Engine not initialized. Call init_engine_from_url() first.")
    return _engine


def get_session() -> Session:
    """
    Get a new session instance.

    Raises:
        RuntimeError: If engine has not been initialized.
    """
    if _SessionFactory is None:
        raise RuntimeError("Engine not initialized. Call init_engine_from_url() first.")
    return _SessionFactory()


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    """
    Provide a transactional scope around a series of operations.

    Postconditions: On normal exit, session is committed and closed.
        On exception, session is rolled back and closed, and the exception
        is re-raised.

    Usage:
        with session_scope() as session:
            EscrowService(session, ...).fund(account_id, amount, reference)
    """
    session = get_session()
    logger.debug("transaction_started")
    try:
        yield session
        session.commit()
        logger.debug("transaction_committed")
    except Exception:
        session.rollback()
        logger.warning("transaction_rolled_back", exc_info=True)
        raise
    finally:
        session.close()


def create_tables() -> None:
    """
    Create all tables defined in the models.

    Raises:
        RuntimeError: If engine is not initialized.
    """
    from escrow_kernel.db.base import Base
    from escrow_kernel.models import import_all_models

    import_all_models()
    engine = get_engine()
    Base.metadata.create_all(engine)
    logger.info("tables_created", extra={"table_count": len(Base.metadata.tables)})


def drop_tables() -> None:
    """Drop all tables. Primarily for testing."""
    from escrow_kernel.db.base import Base
    from escrow_kernel.models import import_all_models

    import_all_models()
    Base.metadata.drop_all(get_engine())


def reset_engine() -> None:
    """Reset the engine and session factory."""
    global _engine, _SessionFactory

    if _engine is not None:
        _engine.dispose()
        _engine = None

    _SessionFactory = None


def _atexit_dispose():
    """Dispose the engine on process exit to release pooled connections."""
    if _engine is not None:
        _engine.dispose()


atexit.register(_atexit_dispose)
