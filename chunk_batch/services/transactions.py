"""
Transaction scopes for chunk commits.

Contract:
    ``TransactionManager.scope()`` is a context manager around exactly one
    commit unit.  The chunk executor opens one scope per chunk and calls the
    writer and the checkpoint update inside it, so both become visible
    together or not at all.

    ``SessionTransactionManager`` binds one SQLAlchemy Session to the
    current context while a scope is open.  Components that run inside the
    scope (``SqlAlchemyItemWriter``, ``SqlAlchemyJobRepository``) call
    ``scope()`` themselves and transparently *join* the outer scope; when no
    outer scope exists they get a short transaction of their own.

    ``InMemoryTransactionManager`` is the default for in-process steps.  Its
    scope collects deferred publish actions (``on_commit``); in-memory
    writers enlist there, so a chunk whose checkpoint update fails is never
    visible in the sink.

Invariants enforced:
    - The scope commits only if the body returns normally.
    - The session is rolled back and closed on every exit path.
    - Deferred actions run only after the outermost in-memory scope exits
      normally, and never run on any exception.
    - Context binding is per thread / per task (ContextVar), so concurrent
      steps never share a session.
"""

from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Callable, ContextManager, Iterator, Protocol

from sqlalchemy.orm import Session

from chunk_kernel.exceptions import NoActiveTransactionError
from chunk_kernel.logging_config import get_logger

logger = get_logger("batch.transactions")

_active_session: ContextVar[Session | None] = ContextVar(
    "chunk_batch_active_session", default=None,
)


def current_session(component: str = "component") -> Session:
    """Return the session bound by the innermost open scope.

    Raises:
        NoActiveTransactionError: If no SessionTransactionManager scope is open.
    """
    session = _active_session.get()
    if session is None:
        raise NoActiveTransactionError(component)
    return session


class TransactionManager(Protocol):
    """Opens commit units."""

    def scope(self) -> ContextManager[Any]:
        ...


class SessionTransactionManager:
    """Session-per-scope transaction manager over a sessionmaker."""

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    @contextmanager
    def scope(self) -> Iterator[Session]:
        outer = _active_session.get()
        if outer is not None:
            # Join: the outermost scope owns commit/rollback.
            yield outer
            return

        session = self._session_factory()
        token = _active_session.set(session)
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            logger.debug("transaction_rolled_back", exc_info=True)
            raise
        finally:
            _active_session.reset(token)
            session.close()

    @property
    def session_factory(self) -> Callable[[], Session]:
        return self._session_factory


# =============================================================================
# In-memory
# =============================================================================

_active_unit: ContextVar[InMemoryUnit | None] = ContextVar(
    "chunk_batch_active_unit", default=None,
)


class InMemoryUnit:
    """Publish actions deferred until the enclosing scope commits."""

    def __init__(self) -> None:
        self._actions: list[Callable[[], None]] = []

    def on_commit(self, action: Callable[[], None]) -> None:
        self._actions.append(action)

    def publish(self) -> None:
        for action in self._actions:
            action()
        self._actions.clear()


def current_unit() -> InMemoryUnit | None:
    """Return the unit of the innermost open in-memory scope, if any."""
    return _active_unit.get()


class InMemoryTransactionManager:
    """Scope for in-process sinks and the in-memory job repository.

    Writers call ``current_unit().on_commit(...)`` instead of mutating their
    sink directly; the actions run when the outermost scope exits cleanly
    and are dropped when it raises.
    """

    @contextmanager
    def scope(self) -> Iterator[InMemoryUnit]:
        outer = _active_unit.get()
        if outer is not None:
            yield outer
            return

        unit = InMemoryUnit()
        token = _active_unit.set(unit)
        try:
            yield unit
        except Exception:
            logger.debug("transaction_rolled_back", exc_info=True)
            raise
        finally:
            _active_unit.reset(token)
        unit.publish()
