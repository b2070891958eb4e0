"""
Item writer implementations.

``SqlAlchemyItemWriter`` joins the chunk executor's session scope and
``ListItemWriter`` enlists with the in-memory scope, so either sink changes
only together with the step checkpoint.
"""

from __future__ import annotations

import threading
from typing import Any, Callable, Iterable, Sequence

from chunk_batch.services.transactions import TransactionManager, current_unit
from chunk_kernel.logging_config import get_logger

logger = get_logger("batch.writers")


class ListItemWriter:
    """Appends each chunk to an in-memory list, all-or-nothing.

    ``chunks`` keeps the chunk boundaries as the writer saw them.  Inside an
    in-memory scope the chunk is published when the scope commits; outside
    any scope it is appended immediately.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.chunks: list[tuple[Any, ...]] = []

    def write(self, items: Sequence[Any]) -> None:
        chunk = tuple(items)
        unit = current_unit()
        if unit is None:
            self._append(chunk)
        else:
            unit.on_commit(lambda: self._append(chunk))

    def _append(self, chunk: tuple[Any, ...]) -> None:
        with self._lock:
            self.chunks.append(chunk)

    @property
    def items(self) -> list[Any]:
        with self._lock:
            return [item for chunk in self.chunks for item in chunk]


class LoggingItemWriter:
    """Logs every item of the chunk at INFO.  Writes nothing."""

    def __init__(self, logger_name: str = "batch.writers.logging"):
        self._logger = get_logger(logger_name)

    def write(self, items: Sequence[Any]) -> None:
        for item in items:
            self._logger.info("item_written", extra={"item": repr(item)})


class SqlAlchemyItemWriter:
    """Adds each item (optionally mapped to an ORM instance) to the session.

    Args:
        transaction_manager: Manager whose scope the executor opens around
            the write.  Usually the same SessionTransactionManager given to
            the step and the job repository.
        mapper: Optional callable turning a processed item into an ORM
            instance.  Defaults to adding the item itself.
    """

    def __init__(
        self,
        transaction_manager: TransactionManager,
        mapper: Callable[[Any], Any] | None = None,
    ):
        self._tx = transaction_manager
        self._mapper = mapper

    def write(self, items: Sequence[Any]) -> None:
        rows = [self._mapper(item) for item in items] if self._mapper else list(items)
        with self._tx.scope() as session:
            session.add_all(rows)
            # Surface constraint violations here, inside the write.
            session.flush()


class CompositeItemWriter:
    """Delegates each chunk to several writers in order.

    Atomicity across delegates holds only when they share the executor's
    transaction scope.
    """

    def __init__(self, writers: Iterable[Any]):
        self._writers = tuple(writers)

    def write(self, items: Sequence[Any]) -> None:
        for writer in self._writers:
            writer.write(items)
