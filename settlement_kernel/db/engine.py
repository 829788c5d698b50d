"""
Database engine and sessions.

The CLI calls ``init_engine_from_url`` once per process and then opens one
``session_scope`` per pass.  Tests build private engines with
``build_engine`` and never touch the module-level one.

SQLite needs two adjustments to behave like PostgreSQL for the batch
executor: pysqlite's implicit transaction handling is switched off and an
explicit BEGIN is emitted, otherwise ``Session.begin_nested`` does not get
a real SAVEPOINT.
"""

from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from settlement_kernel.logging_config import get_logger

logger = get_logger("db.engine")

_IN_MEMORY_URLS = ("sqlite://", "sqlite:///:memory:")

_engine: Engine | None = None
_sessions: sessionmaker[Session] | None = None


def _sqlite_engine(url: str, echo: bool) -> Engine:
    options: dict = {"connect_args": {"check_same_thread": False}}
    if url in _IN_MEMORY_URLS:
        # Every session must see the same in-memory database
        options["poolclass"] = StaticPool
    engine = create_engine(url, echo=echo, **options)

    @event.listens_for(engine, "connect")
    def _connect(dbapi_connection, _record):
        dbapi_connection.isolation_level = None
        dbapi_connection.execute("PRAGMA foreign_keys=ON")

    @event.listens_for(engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN")

    return engine


def build_engine(database_url: str, echo: bool = False) -> Engine:
    if database_url.startswith("sqlite"):
        return _sqlite_engine(database_url, echo)
    return create_engine(
        database_url,
        echo=echo,
        isolation_level="READ COMMITTED",
        pool_pre_ping=True,
        pool_recycle=1800,
        pool_size=5,
        max_overflow=5,
    )


def init_engine_from_url(database_url: str, echo: bool = False) -> Engine:
    """Install the process-wide engine, replacing any earlier one."""
    global _engine, _sessions
    reset_engine()
    _engine = build_engine(database_url, echo=echo)
    _sessions = sessionmaker(bind=_engine, expire_on_commit=False)
    logger.info("engine_initialized", extra={"dialect": _engine.dialect.name})
    return _engine


def _require_init() -> None:
    if _engine is None or _sessions is None:
        raise RuntimeError("Engine not initialized. Call init_engine_from_url() first.")


def get_engine() -> Engine:
    _require_init()
    return _engine


def get_session() -> Session:
    _require_init()
    return _sessions()


@contextmanager
def session_scope() -> Iterator[Session]:
    """Session committed on a clean exit, rolled back if the block raises."""
    session = get_session()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        logger.warning("transaction_rolled_back", exc_info=True)
        raise
    finally:
        session.close()


def create_tables(engine: Engine | None = None) -> None:
    from settlement_kernel.db.base import Base
    from settlement_modules._orm_registry import import_all_orm_models

    import_all_orm_models()
    Base.metadata.create_all(engine or get_engine())


def reset_engine() -> None:
    global _engine, _sessions
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _sessions = None
