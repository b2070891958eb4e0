"""
Module: chunk_kernel.db.engine
Responsibility: Process-wide SQLAlchemy engine and session factory for hosts
    that keep job state in a relational store.  Transaction scopes are not
    opened here; ``chunk_batch.services.transactions`` owns them.
Architecture position: Kernel > DB.  Imports only from chunk_kernel.
    MUST NOT import from chunk_batch: callers import their models before
    calling create_tables().

Invariants enforced:
    - One engine and one session factory per process (module level);
      init_engine_from_url() replaces both.
    - In-memory SQLite URLs share a single connection (StaticPool) so every
      session sees the same database.

Failure modes:
    - RuntimeError if get_engine/get_session_factory/create_tables is called
      before init_engine_from_url().
"""

import atexit

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from chunk_kernel.db.base import Base
from chunk_kernel.logging_config import configure_logging, get_logger

logger = get_logger("db.engine")

_IN_MEMORY_SQLITE = ("sqlite://", "sqlite:///:memory:")

_engine: Engine | None = None
_session_factory: sessionmaker[Session] | None = None


def init_engine_from_url(
    database_url: str,
    echo: bool = False,
    pool_size: int = 10,
    max_overflow: int = 5,
    sqlite_timeout: float = 30.0,
) -> Engine:
    """
    Create the process engine and session factory.

    SQLite engines allow cross-thread use (concurrent steps) and wait up to
    ``sqlite_timeout`` seconds for the database write lock.  Server
    databases get a pre-pinged pool of ``pool_size`` + ``max_overflow``.
    """
    global _engine, _session_factory

    reset_engine()
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False, "timeout": sqlite_timeout}
        if database_url in _IN_MEMORY_SQLITE:
            _engine = create_engine(
                database_url, echo=echo, connect_args=connect_args,
                poolclass=StaticPool,
            )
        else:
            _engine = create_engine(database_url, echo=echo, connect_args=connect_args)
    else:
        _engine = create_engine(
            database_url,
            echo=echo,
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_pre_ping=True,
        )

    _session_factory = sessionmaker(bind=_engine, expire_on_commit=False)

    configure_logging()
    logger.info("engine_initialized", extra={"dialect": _engine.dialect.name})
    return _engine


def get_engine() -> Engine:
    if _engine is None:
        raise RuntimeError("Engine not initialized. Call init_engine_from_url() first.")
    return _engine


def get_session_factory() -> sessionmaker[Session]:
    """Session factory for SessionTransactionManager and paging readers."""
    if _session_factory is None:
        raise RuntimeError("Engine not initialized. Call init_engine_from_url() first.")
    return _session_factory


def create_tables() -> None:
    """Create every table registered on Base.metadata so far."""
    Base.metadata.create_all(get_engine())


def drop_tables() -> None:
    """Drop every registered table.  Tests only."""
    Base.metadata.drop_all(get_engine())


def reset_engine() -> None:
    """Dispose the engine and forget the session factory."""
    global _engine, _session_factory

    if _engine is not None:
        _engine.dispose()
    _engine = None
    _session_factory = None


atexit.register(reset_engine)
