"""
Paged reader implementations.

``InMemoryPagedReader``
    Serves a caller-supplied sequence ordered by a key function.  Useful for
    small reference data and tests.

``SqlAlchemyPagingItemReader``
    Keyset paging over an ORM ``select()``: the caller supplies the base
    statement (entity and filters, e.g. ``amount >= 2000``) and the key
    column; the reader appends ``key > :after_key ORDER BY key LIMIT
    :page_size``.  Keyset paging (rather than OFFSET) keeps pages stable
    while the writer inserts into other tables, and lets a restart resume
    from the checkpoint key alone.
"""

from __future__ import annotations

import bisect
from typing import Any, Callable, Iterable

from sqlalchemy import Select
from sqlalchemy.orm import InstrumentedAttribute, Session

from chunk_batch.domain.types import EMPTY_PAGE, Page, PageEntry
from chunk_kernel.logging_config import get_logger

logger = get_logger("batch.readers")


class InMemoryPagedReader:
    """Pages over an in-memory collection sorted by ``key``."""

    def __init__(self, items: Iterable[Any], key: Callable[[Any], Any]):
        ordered = sorted(items, key=key)
        self._keys = [key(item) for item in ordered]
        self._items = ordered
        for previous, current in zip(self._keys, self._keys[1:]):
            if previous == current:
                raise ValueError(f"Duplicate key {current!r} in reader input")

    def fetch_page(self, after_key: Any, page_size: int) -> Page:
        if page_size <= 0:
            raise ValueError("page_size must be positive")
        start = 0 if after_key is None else bisect.bisect_right(self._keys, after_key)
        stop = start + page_size
        if start >= len(self._items):
            return EMPTY_PAGE
        return Page(
            tuple(
                PageEntry(k, item)
                for k, item in zip(self._keys[start:stop], self._items[start:stop])
            )
        )


class SqlAlchemyPagingItemReader:
    """Keyset-paged reader over an ORM statement.

    Each page runs in its own short-lived session so reads never hold a
    transaction open across chunk commits.  Rows are expunged before the
    session closes; processors receive detached ORM objects.

    Args:
        session_factory: Callable returning a new Session.
        statement: Base ``select()`` of the entity, including any filters.
        key_column: Mapped attribute used for ordering and resumption
            (usually the primary key).
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        statement: Select,
        key_column: InstrumentedAttribute,
    ):
        self._session_factory = session_factory
        self._statement = statement
        self._key_column = key_column
        self._key_name = key_column.key

    def fetch_page(self, after_key: Any, page_size: int) -> Page:
        if page_size <= 0:
            raise ValueError("page_size must be positive")

        stmt = self._statement
        if after_key is not None:
            stmt = stmt.where(self._key_column > after_key)
        stmt = stmt.order_by(self._key_column).limit(page_size)

        session = self._session_factory()
        try:
            rows = session.execute(stmt).scalars().all()
            for row in rows:
                session.expunge(row)
        finally:
            session.close()

        logger.debug(
            "page_fetched",
            extra={"after_key": after_key, "page_size": page_size, "rows": len(rows)},
        )
        if not rows:
            return EMPTY_PAGE
        return Page(tuple(PageEntry(getattr(row, self._key_name), row) for row in rows))
