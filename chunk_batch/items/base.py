"""
Item contracts: paged reader, item processor, item writer (Protocols).

Contract:
    ``PagedItemReader`` -- ``fetch_page(after_key, page_size) -> Page``.
    ``ItemProcessor``   -- ``process(item) -> item | None`` (None = skip).
    ``ItemWriter``      -- ``write(items) -> None`` (raise = failure).

Architecture:
    chunk_batch/items.  Imports only chunk_batch.domain and stdlib.  Hosts
    implement these against their own storage and pass the instances to a
    ``Step`` at construction time.

Non-goals:
    - Implementations do NOT manage transactions -- the chunk executor owns
      the scope around each write.
    - Implementations do NOT retry -- the executor applies the step's
      failure_threshold / retry_limit.
"""

from __future__ import annotations

from typing import Any, Protocol, Sequence, runtime_checkable

from chunk_batch.domain.types import Page


@runtime_checkable
class PagedItemReader(Protocol):
    """Reads the source in key order, one page at a time.

    Contract:
        - ``page_size > 0``.
        - ``after_key`` is the largest key returned so far, or ``None``.
        - Returns an empty Page exactly when no record with key > after_key
          exists.  Exhaustion is not an error.
        - Keys are strictly increasing across calls in one cursor lineage.
        - Read-only: never mutates the sink.
    """

    def fetch_page(self, after_key: Any, page_size: int) -> Page:
        ...


@runtime_checkable
class ItemProcessor(Protocol):
    """Transforms one record.

    Contract:
        - Pure function of its input.
        - Return the (possibly transformed) item to keep it.
        - Return ``None`` to skip it: it is dropped from the chunk and
          counted in ``skip_count``.
        - Raise to fail: the executor wraps the error in ``ProcessError``
          and aborts the in-progress chunk.
    """

    def process(self, item: Any) -> Any | None:
        ...


@runtime_checkable
class ItemWriter(Protocol):
    """Persists one chunk.

    Contract:
        - Atomic from the engine's perspective: on return all items are
          persisted, on raise none are observable.
        - The only component that mutates the sink.
    """

    def write(self, items: Sequence[Any]) -> None:
        ...
