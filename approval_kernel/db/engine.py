"""
approval_kernel.db.engine -- Engine, session factory and the unit-of-work scope.

One process-wide engine is created by ``init_engine_from_url``.  Every
transaction in the approval core is a ``session_scope``: commit on a
clean exit, rollback on any exception.  A decision's history row and the
counter update it justifies therefore land together or not at all.

Backends:
    PostgreSQL (``postgresql+psycopg://...``) runs at READ COMMITTED.  Lost
    updates are caught by the version columns on mutable rows, not by the
    isolation level.

    SQLite (``sqlite:///path``) is supported for development and tests.
    pysqlite's own transaction handling is switched off and every
    transaction opens with BEGIN IMMEDIATE, so writers queue on the
    database lock (up to ``pool_timeout`` seconds) and SAVEPOINTs work.

Calling ``get_engine``, ``get_session`` or ``get_session_factory`` before
``init_engine_from_url`` raises RuntimeError.
"""

import atexit
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool

from approval_kernel.logging_config import configure_logging, get_logger

logger = get_logger("db.engine")

_engine: Engine | None = None
_SessionFactory: sessionmaker[Session] | None = None

_NOT_INITIALIZED = "database engine not initialized; call init_engine_from_url() first"


def _begin_immediate_on(engine: Engine, busy_timeout_ms: int) -> None:
    @event.listens_for(engine, "connect")
    def _configure_connection(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        try:
            cursor.execute(f"PRAGMA busy_timeout = {busy_timeout_ms}")
            cursor.execute("PRAGMA foreign_keys = ON")
        finally:
            cursor.close()

    @event.listens_for(engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def init_engine_from_url(
    database_url: str,
    echo: bool = False,
    pool_size: int = 20,
    max_overflow: int = 10,
    pool_pre_ping: bool = True,
    pool_timeout: int = 30,
    pool_recycle: int = 1800,
) -> Engine:
    """(Re)create the process-wide engine and session factory.

    A second call replaces the first engine without disposing it; call
    ``reset_engine`` first to release its connections.
    """
    global _engine, _SessionFactory

    dialect = make_url(database_url).get_backend_name()
    options: dict[str, Any] = {
        "echo": echo,
        "poolclass": QueuePool,
        "pool_size": pool_size,
        "max_overflow": max_overflow,
        "pool_timeout": pool_timeout,
    }
    if dialect == "sqlite":
        options["connect_args"] = {"check_same_thread": False, "timeout": pool_timeout}
    else:
        options.update(
            pool_pre_ping=pool_pre_ping,
            pool_recycle=pool_recycle,
            isolation_level="READ COMMITTED",
        )

    _engine = create_engine(database_url, **options)
    if dialect == "sqlite":
        _begin_immediate_on(_engine, busy_timeout_ms=pool_timeout * 1000)
    _SessionFactory = sessionmaker(bind=_engine, expire_on_commit=False)

    configure_logging()
    logger.info(
        "engine_initialized",
        extra={"dialect": dialect, "pool_size": pool_size, "max_overflow": max_overflow},
    )
    return _engine


def get_engine() -> Engine:
    if _engine is None:
        raise RuntimeError(_NOT_INITIALIZED)
    return _engine


def get_session_factory() -> sessionmaker[Session]:
    if _SessionFactory is None:
        raise RuntimeError(_NOT_INITIALIZED)
    return _SessionFactory


def get_session() -> Session:
    return get_session_factory()()


@contextmanager
def session_scope(factory: sessionmaker[Session] | None = None) -> Iterator[Session]:
    """One unit of work.

    Uses ``factory`` when given, otherwise the process-wide factory.
    Commits and closes on success; rolls back, closes and re-raises on error.

        with session_scope(factory) as session:
            ApproverDirectory(session).add(config_id, reference)
    """
    session = factory() if factory is not None else get_session()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        logger.debug("transaction_rolled_back", exc_info=True)
        raise
    finally:
        session.close()


def _metadata():
    from approval_kernel.db.base import Base
    import approval_kernel.models  # noqa: F401  (registers every table)

    return Base.metadata


def create_tables() -> None:
    _metadata().create_all(get_engine())


def drop_tables() -> None:
    """Drop every approval table.  Tests and local resets only."""
    _metadata().drop_all(get_engine())


def reset_engine() -> None:
    """Dispose the engine and forget the session factory."""
    global _engine, _SessionFactory
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionFactory = None


@atexit.register
def _dispose_at_exit() -> None:
    if _engine is not None:
        _engine.dispose()
