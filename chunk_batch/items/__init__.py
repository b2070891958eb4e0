"""
chunk_batch.items -- reader/processor/writer contracts and implementations.

base.py has ZERO ORM imports; readers.py and writers.py provide the
SQLAlchemy-backed implementations alongside in-memory ones.
"""

from chunk_batch.items.base import ItemProcessor, ItemWriter, PagedItemReader
from chunk_batch.items.processors import (
    CompositeItemProcessor,
    FilteringItemProcessor,
    FunctionItemProcessor,
    PassThroughItemProcessor,
)
from chunk_batch.items.readers import InMemoryPagedReader, SqlAlchemyPagingItemReader
from chunk_batch.items.writers import (
    CompositeItemWriter,
    ListItemWriter,
    LoggingItemWriter,
    SqlAlchemyItemWriter,
)

__all__ = [
    "CompositeItemProcessor",
    "CompositeItemWriter",
    "FilteringItemProcessor",
    "FunctionItemProcessor",
    "InMemoryPagedReader",
    "ItemProcessor",
    "ItemWriter",
    "ListItemWriter",
    "LoggingItemWriter",
    "PagedItemReader",
    "PassThroughItemProcessor",
    "SqlAlchemyItemWriter",
    "SqlAlchemyPagingItemReader",
]
