"""
Module: chunk_kernel.db.base
Responsibility: Declarative base classes for the engine's ORM models (job and
    step executions) and for caller-defined source/sink tables.
Architecture position: Kernel > DB.  Lowest-level import target for models.
    MUST NOT import from chunk_batch or chunk_config.

Invariants enforced:
    - UUID primary keys by default: every model inherits a uuid4-generated
      primary key unless it redeclares ``id`` (source tables that page by an
      integer key do).
    - Timestamps are timezone-aware (type_annotation_map).
"""

from datetime import datetime
from typing import ClassVar
from uuid import UUID as PyUUID, uuid4

from sqlalchemy import DateTime, String, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


class UUIDString(TypeDecorator):
    """
    UUID type stored as String(36) for cross-database portability.

    Converts between Python UUID objects and their 36-character string
    representation so SQLite and PostgreSQL store the same value.
    """

    impl = String(36)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None:
            return str(value)
        return None

    def process_result_value(self, value, dialect):
        if value is not None:
            return PyUUID(value)
        return None


class Base(DeclarativeBase):
    """
    Declarative base for all SQLAlchemy models.

    Guarantees:
        - id is a uuid4-generated UUID stored as String(36) unless overridden.
        - datetime maps to DateTime(timezone=True).
    """

    type_annotation_map: ClassVar[dict] = {
        datetime: DateTime(timezone=True),
        PyUUID: UUIDString(),
    }

    id: Mapped[PyUUID] = mapped_column(
        UUIDString(),
        primary_key=True,
        default=uuid4,
    )


class TrackedBase(Base):
    """
    Abstract base with row timestamps.

    ``created_at`` is set on INSERT; ``updated_at`` also refreshes on every
    UPDATE.  Both are row metadata, separate from the execution timestamps
    the engine records from its injected clock.
    """

    __abstract__ = True

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


# Re-export UUID for convenience
UUID = PyUUID
